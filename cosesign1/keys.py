# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import base64
from typing import Callable, List

from loguru import logger as LOG
from pyasn1.codec.der import decoder as der_decoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.types import (
    PrivateKeyTypes,
    PublicKeyTypes,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_der_private_key,
    load_der_public_key,
)

from cosesign1.chain import Pem, pem_blocks
from cosesign1.errors import KeyParseError

SEQUENCE_TYPES = (univ.Sequence, univ.SequenceOf)


def _top_level_sequence(der: bytes):
    try:
        value, rest = der_decoder.decode(der)
    except PyAsn1Error as exc:
        raise KeyParseError("Not a DER structure", str(exc)) from exc
    if rest:
        raise KeyParseError("Trailing data after DER structure")
    if not isinstance(value, SEQUENCE_TYPES):
        raise KeyParseError("DER structure is not a SEQUENCE")
    return value


def _load_private(der: bytes) -> PrivateKeyTypes:
    try:
        return load_der_private_key(der, None, default_backend())
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyParseError("Private key loading failed", str(exc)) from exc


def _load_public(der: bytes) -> PublicKeyTypes:
    try:
        return load_der_public_key(der, default_backend())
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise KeyParseError("Public key loading failed", str(exc)) from exc


def parse_ec_private_key(der: bytes) -> PrivateKeyTypes:
    """
    RFC 5915 ECPrivateKey: SEQUENCE { version 1, privateKey OCTET STRING, ... }
    """
    seq = _top_level_sequence(der)
    if (
        len(seq) < 2
        or not isinstance(seq[0], univ.Integer)
        or int(seq[0]) != 1
        or not isinstance(seq[1], univ.OctetString)
    ):
        raise KeyParseError("Not an EC private key")
    key = _load_private(der)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise KeyParseError("Not an EC private key")
    return key


def parse_pkcs8_private_key(der: bytes) -> PrivateKeyTypes:
    """
    RFC 5208/5958 PrivateKeyInfo: SEQUENCE { version, AlgorithmIdentifier, OCTET STRING, ... }
    """
    seq = _top_level_sequence(der)
    if (
        len(seq) < 3
        or not isinstance(seq[0], univ.Integer)
        or int(seq[0]) not in (0, 1)
        or not isinstance(seq[1], SEQUENCE_TYPES)
        or not isinstance(seq[2], univ.OctetString)
    ):
        raise KeyParseError("Not a PKCS8 private key")
    return _load_private(der)


def parse_pkcs1_private_key(der: bytes) -> PrivateKeyTypes:
    """
    RFC 8017 RSAPrivateKey: SEQUENCE { version, n, e, d, p, q, dp, dq, qinv, ... }
    """
    seq = _top_level_sequence(der)
    if len(seq) < 9 or not all(isinstance(seq[i], univ.Integer) for i in range(9)):
        raise KeyParseError("Not a PKCS1 private key")
    key = _load_private(der)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyParseError("Not a PKCS1 private key")
    return key


def parse_pkcs1_public_key(der: bytes) -> PublicKeyTypes:
    """
    RFC 8017 RSAPublicKey: SEQUENCE { modulus, publicExponent }
    """
    seq = _top_level_sequence(der)
    if len(seq) != 2 or not all(isinstance(seq[i], univ.Integer) for i in range(2)):
        raise KeyParseError("Not a PKCS1 public key")
    return _load_public(der)


def parse_pkix_public_key(der: bytes) -> PublicKeyTypes:
    """
    RFC 5280 SubjectPublicKeyInfo: SEQUENCE { AlgorithmIdentifier, BIT STRING }
    """
    seq = _top_level_sequence(der)
    if (
        len(seq) != 2
        or not isinstance(seq[0], SEQUENCE_TYPES)
        or not isinstance(seq[1], univ.BitString)
    ):
        raise KeyParseError("Not a PKIX public key")
    return _load_public(der)


# Order matters, the first encoding that parses wins
PRIVATE_KEY_PARSERS: List[Callable[[bytes], PrivateKeyTypes]] = [
    parse_ec_private_key,
    parse_pkcs8_private_key,
    parse_pkcs1_private_key,
]

PUBLIC_KEY_PARSERS: List[Callable[[bytes], PublicKeyTypes]] = [
    parse_pkcs1_public_key,
    parse_pkix_public_key,
]


def _parse_with_fallback(der: bytes, parsers, what: str):
    last_error = KeyParseError(f"No {what} parser available")
    for parser in parsers:
        try:
            key = parser(der)
        except KeyParseError as exc:
            last_error = exc
            continue
        LOG.debug(f"Parsed {what} with {parser.__name__}")
        return key
    # Report the last failure rather than the first, callers rely on the message
    raise last_error


def parse_private_key(der: bytes) -> PrivateKeyTypes:
    """
    Parse a DER private key, trying EC, then PKCS8, then PKCS1 encodings.
    If none of them parses, the error of the last attempt is raised.
    """
    return _parse_with_fallback(der, PRIVATE_KEY_PARSERS, "private key")


def parse_public_key(der: bytes) -> PublicKeyTypes:
    """
    Parse a DER public key, trying PKCS1 then PKIX (SubjectPublicKeyInfo).
    """
    return _parse_with_fallback(der, PUBLIC_KEY_PARSERS, "public key")


def _first_der(pem: Pem, kind: str) -> bytes:
    for label, der in pem_blocks(pem):
        if label.endswith(kind) and not label.startswith("ENCRYPTED"):
            return der
    raise KeyParseError(f"No {kind} PEM block found")


def parse_private_key_pem(key_pem: Pem) -> PrivateKeyTypes:
    return parse_private_key(_first_der(key_pem, "PRIVATE KEY"))


def parse_public_key_pem(key_pem: Pem) -> PublicKeyTypes:
    return parse_public_key(_first_der(key_pem, "PUBLIC KEY"))


def public_key_to_der(key: PublicKeyTypes) -> bytes:
    return key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def public_key_to_base64(key: PublicKeyTypes) -> str:
    return base64.b64encode(public_key_to_der(key)).decode("ascii")


def public_key_to_pem(key: PublicKeyTypes) -> Pem:
    # Single line body, same as certificate_to_pem()
    return (
        "-----BEGIN PUBLIC KEY-----\n"
        + public_key_to_base64(key)
        + "\n-----END PUBLIC KEY-----\n"
    )
