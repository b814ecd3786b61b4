# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from collections.abc import Mapping
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Optional, Tuple, Union

import cbor2  # type: ignore
import pycose.headers  # type: ignore
from cryptography.x509 import Certificate
from loguru import logger as LOG

from cosesign1.certs import MAX_CHAIN_LENGTH, verify_certificate_chain
from cosesign1.chain import (
    Pem,
    certificate_to_base64,
    certificates_to_der,
    certificates_to_pem,
    der_to_certificates,
    pem_to_certificates,
)
from cosesign1.errors import (
    AlgorithmInvalidType,
    AlgorithmMissing,
    ChainInvalidType,
    ChainMissing,
    ChainTooLong,
    FormatError,
    UnsupportedAlgorithm,
)
from cosesign1.keys import (
    parse_private_key_pem,
    parse_public_key_pem,
    public_key_to_base64,
)
from cosesign1.signing import (
    Algorithm,
    SaltType,
    Signer,
    Verifier,
    algorithm_from_identifier,
    algorithm_from_string,
)

COSE_SIGN1_TAG = 18

HEADER_LABEL_ALG = pycose.headers.Algorithm.identifier
HEADER_LABEL_CONTENT_TYPE = pycose.headers.ContentType.identifier
# draft-ietf-cose-x509
HEADER_LABEL_X5CHAIN = 33
HEADER_LABEL_ISSUER = "iss"
HEADER_LABEL_FEED = "feed"

# cbor2 >= 6 decodes arrays as tuples and maps as immutable mappings
ARRAY_TYPES = (list, tuple)


def loads_exact(data: bytes) -> Any:
    """
    Decode exactly one CBOR data item, rejecting any bytes left after it.
    """
    fp = BytesIO(data)
    value = cbor2.CBORDecoder(fp).decode()
    trailing = len(data) - fp.tell()
    if trailing:
        raise ValueError(f"{trailing} byte(s) of trailing data after CBOR item")
    return value


@dataclass(frozen=True)
class X5ChainSingle:
    der: bytes


@dataclass(frozen=True)
class X5ChainArray:
    ders: Tuple[bytes, ...]


X5Chain = Union[X5ChainSingle, X5ChainArray]


def x5chain_ders(x5chain: X5Chain) -> Tuple[bytes, ...]:
    if isinstance(x5chain, X5ChainSingle):
        return (x5chain.der,)
    return x5chain.ders


@dataclass(frozen=True)
class ProtectedHeader:
    algorithm: Algorithm
    x5chain: X5Chain
    content_type: Optional[str] = None
    issuer: Optional[str] = None
    feed: Optional[str] = None


@dataclass(frozen=True)
class Sign1Message:
    protected: ProtectedHeader
    protected_raw: bytes
    unprotected: Mapping
    payload: bytes
    signature: bytes


@dataclass(frozen=True)
class UnpackedMessage:
    issuer: Optional[str]
    feed: Optional[str]
    content_type: str
    payload: bytes
    leaf_public_key_b64: str
    leaf_cert_b64: str
    chain_pem: Pem
    cert_chain: Tuple[Certificate, ...]


def decode_x5chain(value: Any) -> X5Chain:
    """
    The x5chain header carries a single DER certificate as a byte string,
    or a leaf-first chain as a non-empty array of byte strings. Anything
    else is rejected.
    """
    if isinstance(value, bytes):
        return X5ChainSingle(value)
    if (
        isinstance(value, ARRAY_TYPES)
        and value
        and all(isinstance(element, bytes) for element in value)
    ):
        return X5ChainArray(tuple(value))
    raise ChainInvalidType(f"x5chain has invalid type {type(value).__name__}")


def encode_x5chain(ders) -> Union[bytes, list]:
    ders = list(ders)
    if len(ders) == 1:
        return ders[0]
    return ders


def _decode_algorithm(value: Any) -> Algorithm:
    try:
        # bool is an int in Python, but never an algorithm
        if isinstance(value, int) and not isinstance(value, bool):
            return algorithm_from_identifier(value)
        if isinstance(value, str):
            return algorithm_from_string(value)
    except UnsupportedAlgorithm as exc:
        raise AlgorithmInvalidType(exc.message) from exc
    raise AlgorithmInvalidType(f"alg has invalid type {type(value).__name__}")


def _optional_string(header: dict, label) -> Optional[str]:
    value = header.get(label)
    return value if isinstance(value, str) else None


def decode_protected_header(protected_raw: bytes) -> ProtectedHeader:
    if protected_raw:
        try:
            header = loads_exact(protected_raw)
        except (cbor2.CBORDecodeError, ValueError) as exc:
            raise FormatError("Protected header is not valid CBOR", str(exc)) from exc
    else:
        header = {}
    if not isinstance(header, Mapping):
        raise FormatError("Protected header is not a map")

    if HEADER_LABEL_ALG not in header:
        raise AlgorithmMissing("Protected header has no alg")
    algorithm = _decode_algorithm(header[HEADER_LABEL_ALG])
    LOG.debug(f"COSE Sign1 algorithm {algorithm.name} ({algorithm.value})")

    if HEADER_LABEL_X5CHAIN not in header:
        raise ChainMissing("Protected header has no x5chain")
    x5chain = decode_x5chain(header[HEADER_LABEL_X5CHAIN])

    return ProtectedHeader(
        algorithm=algorithm,
        x5chain=x5chain,
        content_type=_optional_string(header, HEADER_LABEL_CONTENT_TYPE),
        issuer=_optional_string(header, HEADER_LABEL_ISSUER),
        feed=_optional_string(header, HEADER_LABEL_FEED),
    )


def decode(raw: bytes) -> Sign1Message:
    """
    Decode a (possibly tagged) COSE_Sign1 structure:

    COSE_Sign1 = [
        protected : bstr .cbor header_map,
        unprotected : header_map,
        payload : bstr,
        signature : bstr
    ]

    Detached payloads are not supported.
    """
    try:
        value = loads_exact(raw)
    except (cbor2.CBORDecodeError, ValueError) as exc:
        raise FormatError("Not a valid CBOR document", str(exc)) from exc

    if isinstance(value, cbor2.CBORTag):
        if value.tag != COSE_SIGN1_TAG:
            raise FormatError(f"Unexpected CBOR tag {value.tag}")
        value = value.value

    if not isinstance(value, ARRAY_TYPES) or len(value) != 4:
        raise FormatError("Not a COSE_Sign1 structure")
    protected_raw, unprotected, payload, signature = value
    if not isinstance(protected_raw, bytes):
        raise FormatError("Protected header is not a byte string")
    if not isinstance(unprotected, Mapping):
        raise FormatError("Unprotected header is not a map")
    if payload is None:
        raise FormatError("Detached payloads are not supported")
    if not isinstance(payload, bytes):
        raise FormatError("Payload is not a byte string")
    if not isinstance(signature, bytes) or not signature:
        raise FormatError("Missing signature")

    return Sign1Message(
        protected=decode_protected_header(protected_raw),
        protected_raw=protected_raw,
        unprotected=unprotected,
        payload=payload,
        signature=signature,
    )


def encode_protected_header(
    algorithm: Algorithm,
    chain_ders,
    content_type: Optional[str] = None,
    issuer: Optional[str] = None,
    feed: Optional[str] = None,
) -> bytes:
    header: Dict[Any, Any] = {
        HEADER_LABEL_ALG: algorithm.value,
        HEADER_LABEL_X5CHAIN: encode_x5chain(chain_ders),
    }
    if content_type:
        header[HEADER_LABEL_CONTENT_TYPE] = content_type
    if issuer:
        header[HEADER_LABEL_ISSUER] = issuer
    if feed:
        header[HEADER_LABEL_FEED] = feed
    return cbor2.dumps(header, canonical=True)


def sig_structure(protected_raw: bytes, payload: bytes) -> bytes:
    return cbor2.dumps(["Signature1", protected_raw, b"", payload], canonical=True)


def encode(
    protected_raw: bytes,
    payload: bytes,
    signature: bytes,
    unprotected: Optional[dict] = None,
) -> bytes:
    return cbor2.dumps(
        cbor2.CBORTag(
            COSE_SIGN1_TAG, [protected_raw, unprotected or {}, payload, signature]
        ),
        canonical=True,
    )


def create_cose_sign1(
    payload: bytes,
    issuer: Optional[str],
    feed: Optional[str],
    content_type: str,
    chain_pem: Pem,
    key_pem: Pem,
    salt: SaltType = SaltType.RAND,
    algorithm: Algorithm = Algorithm.PS384,
    verbose: bool = False,
) -> bytes:
    """
    Sign payload with the private key of the leaf of chain_pem, embedding the
    chain in the protected header. With SaltType.ZERO the output is
    reproducible for identical inputs.
    """
    chain = pem_to_certificates(chain_pem)
    if not chain:
        raise ChainMissing("No certificates in chain PEM")
    if len(chain) > MAX_CHAIN_LENGTH:
        raise ChainTooLong(f"Unreasonable number of certificates ({len(chain)})")
    key = parse_private_key_pem(key_pem)
    signer = Signer(algorithm, key)

    protected_raw = encode_protected_header(
        algorithm, certificates_to_der(chain), content_type, issuer, feed
    )
    if verbose:
        LOG.debug(f"Protected header: {protected_raw.hex()}")
    signature = signer.sign(sig_structure(protected_raw, payload), salt)
    return encode(protected_raw, payload, signature)


def _embedded_chain(msg: Sign1Message):
    ders = x5chain_ders(msg.protected.x5chain)
    if len(ders) > MAX_CHAIN_LENGTH:
        raise ChainTooLong(
            f"Unreasonable number of certificates ({len(ders)}) in COSE_Sign1 document"
        )
    return der_to_certificates(ders)


def unpack_and_validate_cose_sign1(
    raw: bytes,
    public_key_pem: Optional[Pem] = None,
    root_ca_pem: Optional[Pem] = None,
    ignore_expiry: bool = False,
    verbose: bool = False,
) -> UnpackedMessage:
    """
    Decode a COSE_Sign1 document and check it: the embedded chain must verify
    (against root_ca_pem when given, otherwise its own last certificate) and
    the signature must verify with the leaf key, or with public_key_pem when
    given. An UnpackedMessage is only returned when every check passed.
    """
    msg = decode(raw)
    chain = _embedded_chain(msg)
    chain_pem = certificates_to_pem(chain)
    LOG.debug(f"Certificate chain:\n{chain_pem}")

    trusted_roots = pem_to_certificates(root_ca_pem) if root_ca_pem else None
    verify_certificate_chain(
        chain,
        trusted_roots=trusted_roots,
        ignore_expiry=ignore_expiry,
        verbose=verbose,
    )

    if msg.protected.content_type is None:
        raise FormatError("Protected header has no content type")

    leaf = chain[0]
    if public_key_pem:
        key = parse_public_key_pem(public_key_pem)
        LOG.debug(f"Checking signature with supplied {type(key).__name__}")
    else:
        key = leaf.public_key()
    Verifier(msg.protected.algorithm, key).verify(
        sig_structure(msg.protected_raw, msg.payload), msg.signature
    )

    return UnpackedMessage(
        issuer=msg.protected.issuer,
        feed=msg.protected.feed,
        content_type=msg.protected.content_type,
        payload=msg.payload,
        leaf_public_key_b64=public_key_to_base64(leaf.public_key()),
        leaf_cert_b64=certificate_to_base64(leaf),
        chain_pem=chain_pem,
        cert_chain=tuple(chain),
    )


def print_chain(raw: bytes) -> Pem:
    """
    PEM rendering of the chain embedded in a COSE_Sign1 document. Nothing
    is verified.
    """
    return certificates_to_pem(_embedded_chain(decode(raw)))
