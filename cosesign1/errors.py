# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Optional


class CoseSign1Error(Exception):
    """Base class for errors raised while creating or checking claims documents"""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Only populated in verbose mode, may contain library error text
        self.detail = detail

    def __str__(self):
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class FormatError(CoseSign1Error):
    """Malformed CBOR, PEM, DER or DID input"""


class AlgorithmError(CoseSign1Error):
    """Missing, unsupported or mismatched algorithm"""


class AlgorithmMissing(AlgorithmError):
    """The protected header carries no alg"""


class AlgorithmInvalidType(AlgorithmError):
    """The protected header alg is not a supported signing algorithm"""


class UnsupportedAlgorithm(AlgorithmError):
    """The algorithm name or hash algorithm is not supported"""


class ChainError(CoseSign1Error):
    """Missing, too short, too long or cryptographically invalid certificate chain"""


class ChainMissing(ChainError):
    """No certificate chain was provided"""


class ChainInvalidType(ChainError):
    """x5chain is neither a byte string nor an array of byte strings"""


class ChainTooShort(ChainError):
    """The chain has fewer certificates than the operation requires"""


class ChainTooLong(ChainError):
    """The chain has more certificates than any reasonable chain would"""


class ChainVerificationFailed(ChainError):
    """No valid path from the leaf to a trusted root"""


class SignatureError(CoseSign1Error):
    """Signature could not be produced or verified"""


class VerificationFailed(SignatureError):
    """The signature does not verify against the key"""


class KeyParseError(CoseSign1Error):
    """No supported key encoding could be parsed"""


class PolicyError(CoseSign1Error):
    """did:x509 creation or evaluation failure"""


class InvalidPolicy(PolicyError):
    """A did:x509 policy clause is malformed"""


class IndexOutOfBounds(PolicyError):
    """The fingerprint index does not designate a non-leaf certificate of the chain"""


class UnsupportedMethod(PolicyError):
    """The DID is not a did:x509"""


class UnsupportedVersion(PolicyError):
    """The did:x509 version is not 0"""


class UnexpectedFingerprint(PolicyError):
    """No CA certificate of the chain matches the DID fingerprint"""


class DuplicateField(PolicyError):
    """A subject policy names the same field twice"""


class SubjectMismatch(PolicyError):
    """The leaf subject does not carry the expected value"""


class SanNotFound(PolicyError):
    """The leaf has no matching subject alternative name"""


class EkuNotFound(PolicyError):
    """The leaf has no matching extended key usage"""


class IssuerNotFound(PolicyError):
    """The leaf has no matching Fulcio issuer extension"""


class UnsupportedPolicy(PolicyError):
    """Unknown did:x509 policy name"""


class IncompatibleKeyUsage(PolicyError):
    """The leaf key usage allows neither digital signature nor key agreement"""
