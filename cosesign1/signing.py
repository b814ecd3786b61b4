# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from enum import Enum

from pycose.algorithms import Es256, Es384, Es512, Ps256, Ps384, Ps512  # type: ignore
from pycose.algorithms import EdDSA as CoseEdDSA  # type: ignore
from Crypto.Hash import SHA256, SHA384, SHA512  # type: ignore
from Crypto.PublicKey import RSA  # type: ignore
from Crypto.Signature import pss  # type: ignore
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)

from cosesign1.errors import (
    AlgorithmError,
    SignatureError,
    UnsupportedAlgorithm as UnsupportedAlgorithmError,
    VerificationFailed,
)


class Algorithm(Enum):
    """
    Signing algorithms supported in the alg protected header, valued by
    their COSE identifier.
    """

    PS256 = Ps256.identifier
    PS384 = Ps384.identifier
    PS512 = Ps512.identifier
    ES256 = Es256.identifier
    ES384 = Es384.identifier
    ES512 = Es512.identifier
    EdDSA = CoseEdDSA.identifier

    def hash_algorithm(self) -> hashes.HashAlgorithm:
        return {
            Algorithm.PS256: hashes.SHA256(),
            Algorithm.PS384: hashes.SHA384(),
            Algorithm.PS512: hashes.SHA512(),
            Algorithm.ES256: hashes.SHA256(),
            Algorithm.ES384: hashes.SHA384(),
            Algorithm.ES512: hashes.SHA512(),
        }[self]

    def is_rsa_pss(self):
        return self in (Algorithm.PS256, Algorithm.PS384, Algorithm.PS512)

    def is_ecdsa(self):
        return self in (Algorithm.ES256, Algorithm.ES384, Algorithm.ES512)


# pycryptodome hashes, for PSS signatures with a caller-chosen salt
PSS_HASH_MODULES = {
    Algorithm.PS256: SHA256,
    Algorithm.PS384: SHA384,
    Algorithm.PS512: SHA512,
}


ALGORITHM_ALIASES = {"ED25519": Algorithm.EdDSA}

# go-cose (and RFC 9053) tie each ECDSA algorithm to one curve
ECDSA_CURVES = {
    Algorithm.ES256: ec.SECP256R1.name,
    Algorithm.ES384: ec.SECP384R1.name,
    Algorithm.ES512: ec.SECP521R1.name,
}


def algorithm_from_string(name: str) -> Algorithm:
    upper = name.upper()
    for alg in Algorithm:
        if alg.name.upper() == upper:
            return alg
    if upper in ALGORITHM_ALIASES:
        return ALGORITHM_ALIASES[upper]
    raise UnsupportedAlgorithmError(f"Unsupported algorithm {name}")


def algorithm_from_identifier(identifier: int) -> Algorithm:
    try:
        return Algorithm(identifier)
    except ValueError as exc:
        raise UnsupportedAlgorithmError(
            f"Unsupported algorithm identifier {identifier}"
        ) from exc


class SaltType(Enum):
    """
    RAND draws signature randomness from the system CSPRNG. ZERO makes
    signatures reproducible: RSA-PSS with an all-zero salt, RFC 6979
    deterministic ECDSA, and EdDSA which is deterministic anyway.
    """

    RAND = "rand"
    ZERO = "zero"


def _ecdsa_coordinate_size(curve: ec.EllipticCurve) -> int:
    return (curve.key_size + 7) // 8


def _check_key(algorithm: Algorithm, key, private: bool):
    if algorithm.is_rsa_pss():
        expected = rsa.RSAPrivateKey if private else rsa.RSAPublicKey
    elif algorithm.is_ecdsa():
        expected = ec.EllipticCurvePrivateKey if private else ec.EllipticCurvePublicKey
    else:
        expected = ed25519.Ed25519PrivateKey if private else ed25519.Ed25519PublicKey
    if not isinstance(key, expected):
        raise AlgorithmError(
            f"Key of type {type(key).__name__} cannot be used with {algorithm.name}"
        )
    if algorithm.is_ecdsa() and key.curve.name != ECDSA_CURVES[algorithm]:
        raise AlgorithmError(
            f"Curve {key.curve.name} cannot be used with {algorithm.name}"
        )


class Signer:
    """
    Produces raw COSE signatures (RFC 9053 formats) over a Sig_structure.
    """

    def __init__(self, algorithm: Algorithm, key):
        _check_key(algorithm, key, private=True)
        self.algorithm = algorithm
        self.key = key

    def _sign_pss_zero_salt(self, to_be_signed: bytes) -> bytes:
        # RFC 8230 salt length (hash length), every salt byte zero
        rsa_key = RSA.import_key(
            self.key.private_bytes(Encoding.DER, PrivateFormat.PKCS8, NoEncryption())
        )
        digest = PSS_HASH_MODULES[self.algorithm].new(to_be_signed)
        return pss.new(rsa_key, rand_func=lambda n: b"\x00" * n).sign(digest)

    def sign(self, to_be_signed: bytes, salt: SaltType = SaltType.RAND) -> bytes:
        try:
            if self.algorithm.is_rsa_pss():
                if salt == SaltType.ZERO:
                    return self._sign_pss_zero_salt(to_be_signed)
                hash_alg = self.algorithm.hash_algorithm()
                return self.key.sign(
                    to_be_signed,
                    padding.PSS(
                        mgf=padding.MGF1(hash_alg),
                        salt_length=padding.PSS.DIGEST_LENGTH,
                    ),
                    hash_alg,
                )
            if self.algorithm.is_ecdsa():
                signature = self.key.sign(
                    to_be_signed,
                    ec.ECDSA(
                        self.algorithm.hash_algorithm(),
                        deterministic_signing=salt == SaltType.ZERO,
                    ),
                )
                # COSE carries r || s, not the DER encoding
                r, s = decode_dss_signature(signature)
                n = _ecdsa_coordinate_size(self.key.curve)
                return r.to_bytes(n, byteorder="big") + s.to_bytes(n, byteorder="big")
            return self.key.sign(to_be_signed)
        except UnsupportedAlgorithm as exc:
            raise SignatureError(
                f"Signing with {self.algorithm.name} failed", str(exc)
            ) from exc


class Verifier:
    def __init__(self, algorithm: Algorithm, key):
        _check_key(algorithm, key, private=False)
        self.algorithm = algorithm
        self.key = key

    def verify(self, to_be_signed: bytes, signature: bytes):
        try:
            if self.algorithm.is_rsa_pss():
                hash_alg = self.algorithm.hash_algorithm()
                self.key.verify(
                    signature,
                    to_be_signed,
                    padding.PSS(
                        mgf=padding.MGF1(hash_alg),
                        salt_length=padding.PSS.DIGEST_LENGTH,
                    ),
                    hash_alg,
                )
            elif self.algorithm.is_ecdsa():
                n = _ecdsa_coordinate_size(self.key.curve)
                if len(signature) != 2 * n:
                    raise VerificationFailed(
                        f"Invalid {self.algorithm.name} signature length {len(signature)}"
                    )
                r = int.from_bytes(signature[:n], byteorder="big")
                s = int.from_bytes(signature[n:], byteorder="big")
                self.key.verify(
                    encode_dss_signature(r, s),
                    to_be_signed,
                    ec.ECDSA(self.algorithm.hash_algorithm()),
                )
            else:
                self.key.verify(signature, to_be_signed)
        except InvalidSignature as exc:
            raise VerificationFailed("Signature verification failed") from exc
