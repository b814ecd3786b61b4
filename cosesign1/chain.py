# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import base64
import binascii
import re
from typing import Iterable, List, Tuple

from cryptography.x509 import Certificate, load_der_x509_certificate
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.serialization import Encoding

from cosesign1.errors import ChainMissing, FormatError

Pem = str

PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----(?P<body>.*?)-----END (?P=label)-----",
    re.DOTALL,
)

CERTIFICATE_LABELS = ("CERTIFICATE", "X509 CERTIFICATE")


def pem_blocks(pem: Pem) -> List[Tuple[str, bytes]]:
    """
    Decode every PEM block of the input, in order, as (label, DER) pairs.
    Base64 bodies may or may not be wrapped.
    """
    blocks = []
    for match in PEM_BLOCK.finditer(pem):
        body = "".join(match.group("body").split())
        try:
            der = base64.b64decode(body, validate=True)
        except binascii.Error as exc:
            raise FormatError(
                f"Invalid base64 in {match.group('label')} PEM block"
            ) from exc
        blocks.append((match.group("label"), der))
    return blocks


def der_to_certificate(der: bytes) -> Certificate:
    try:
        return load_der_x509_certificate(der, default_backend())
    except ValueError as exc:
        raise FormatError("Certificate parser failed", str(exc)) from exc


def der_to_certificates(ders: Iterable[bytes]) -> List[Certificate]:
    return [der_to_certificate(der) for der in ders]


def pem_to_certificates(chain_pem: Pem) -> List[Certificate]:
    """
    Parse all CERTIFICATE blocks of a PEM chain, in file order.
    Other blocks (keys, parameters) are ignored. A single unparseable
    certificate fails the whole chain.
    """
    return [
        der_to_certificate(der)
        for label, der in pem_blocks(chain_pem)
        if label in CERTIFICATE_LABELS
    ]


def certificates_to_der(certs: Iterable[Certificate]) -> List[bytes]:
    return [cert.public_bytes(Encoding.DER) for cert in certs]


def certificate_to_base64(cert: Certificate) -> str:
    return base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii")


def certificate_to_pem(cert: Certificate) -> Pem:
    """
    Returns a PEM of the form:

    -----BEGIN CERTIFICATE-----
    single line base64 standard encoded raw DER certificate
    -----END CERTIFICATE-----

    No line breaks are inserted in the base64 body, string comparisons
    against it need to take that into account.
    """
    return (
        "-----BEGIN CERTIFICATE-----\n"
        + certificate_to_base64(cert)
        + "\n-----END CERTIFICATE-----\n"
    )


def certificates_to_pem(certs: Iterable[Certificate]) -> Pem:
    return "".join(certificate_to_pem(cert) for cert in certs)


def split_chain(
    chain: List[Certificate],
) -> Tuple[Certificate, List[Certificate], Certificate]:
    """
    Split an ordered chain into (leaf, intermediates, root) by position only:
    index 0 is the leaf, the last index the root, anything in between an
    intermediate. A single certificate is both leaf and root.
    """
    if not chain:
        raise ChainMissing("Empty certificate chain")
    return chain[0], list(chain[1:-1]), chain[-1]
