# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

"""
did:x509 identifiers, see https://github.com/microsoft/did-x509/blob/main/specification.md

    did:x509:0:sha256:WE4P5dd8DnLHSkyHaIjhp4udlkF9LqoKwCvu9gl38jk::subject:C:US:ST:California:O:GitHub%2C%20Inc.
    did:x509:0:sha256:I5ni_nuWegx4NiLaeGabiz36bDUhDDiHEFl8HXMA_4o::eku:1.3.6.1.4.1.311.76.59.1.2

The fingerprint binds the DID to one CA certificate of the chain, the
policies (separated by "::") are matched against the leaf certificate.
"""

import base64
import json
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
from urllib.parse import quote, unquote_plus

from jwcrypto import jwk  # type: ignore
from loguru import logger as LOG

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509 import Certificate
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID, ObjectIdentifier

from cosesign1.certs import get_extension, verify_certificate_chain
from cosesign1.chain import Pem, pem_to_certificates
from cosesign1.errors import (
    ChainMissing,
    ChainTooShort,
    DuplicateField,
    EkuNotFound,
    FormatError,
    IncompatibleKeyUsage,
    IndexOutOfBounds,
    InvalidPolicy,
    IssuerNotFound,
    SanNotFound,
    SubjectMismatch,
    UnexpectedFingerprint,
    UnsupportedAlgorithm,
    UnsupportedMethod,
    UnsupportedPolicy,
    UnsupportedVersion,
)

DID_METHOD = "x509"
DID_VERSION = "0"

FINGERPRINT_ALGORITHMS = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# RFC 5280 4.2.1.12 and vendor usages with a well-known name
KNOWN_EKU_OIDS = frozenset(
    oid.dotted_string
    for oid in (
        ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE,
        ExtendedKeyUsageOID.SERVER_AUTH,
        ExtendedKeyUsageOID.CLIENT_AUTH,
        ExtendedKeyUsageOID.CODE_SIGNING,
        ExtendedKeyUsageOID.EMAIL_PROTECTION,
        ObjectIdentifier("1.3.6.1.5.5.7.3.5"),  # IPSec end system
        ObjectIdentifier("1.3.6.1.5.5.7.3.6"),  # IPSec tunnel
        ObjectIdentifier("1.3.6.1.5.5.7.3.7"),  # IPSec user
        ExtendedKeyUsageOID.TIME_STAMPING,
        ExtendedKeyUsageOID.OCSP_SIGNING,
        ObjectIdentifier("1.3.6.1.4.1.311.10.3.3"),  # Microsoft server gated crypto
        ObjectIdentifier("2.16.840.1.113730.4.1"),  # Netscape server gated crypto
        ObjectIdentifier("1.3.6.1.4.1.311.2.1.22"),  # Microsoft commercial code signing
        ObjectIdentifier("1.3.6.1.4.1.311.61.1.1"),  # Microsoft kernel code signing
    )
)

FULCIO_ISSUER_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.1")

SUBJECT_FIELD_OIDS = {
    "C": NameOID.COUNTRY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "L": NameOID.LOCALITY_NAME,
    "S": NameOID.STATE_OR_PROVINCE_NAME,
    "STREET": NameOID.STREET_ADDRESS,
    "POSTALCODE": NameOID.POSTAL_CODE,
    "SERIALNUMBER": NameOID.SERIAL_NUMBER,
    "CN": NameOID.COMMON_NAME,
}

SUBJECT_FIELD_ALIASES = {"ST": "S"}

SAN_TYPES = {
    "dns": x509.DNSName,
    "email": x509.RFC822Name,
    "ipaddress": x509.IPAddress,
    "uri": x509.UniformResourceIdentifier,
}

VERIFICATION_METHOD_SUFFIX = "#key-1"

OID_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)+$")
BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


@dataclass(frozen=True)
class SubjectPolicy:
    # (field, value) pairs, fields upper-cased and de-aliased
    fields: Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class SanPolicy:
    san_type: str
    value: str


@dataclass(frozen=True)
class EkuPolicy:
    oid: str


@dataclass(frozen=True)
class FulcioIssuerPolicy:
    # Full issuer URL, including the https:// prefix
    issuer: str


Policy = Union[SubjectPolicy, SanPolicy, EkuPolicy, FulcioIssuerPolicy]


@dataclass(frozen=True)
class DidDescriptor:
    version: str
    fingerprint_algorithm: str
    fingerprint: str
    policies: Tuple[Policy, ...]


@dataclass(frozen=True)
class DidDocument:
    id: str
    verification_method_id: str
    public_key_jwk: dict
    assertion_method: Optional[str]
    key_agreement: Optional[str]

    def to_json(self) -> dict:
        doc = {
            "@context": "https://www.w3.org/ns/did/v1",
            "id": self.id,
            "verificationMethod": [
                {
                    "id": self.verification_method_id,
                    "type": "JsonWebKey2020",
                    "controller": self.id,
                    "publicKeyJwk": self.public_key_jwk,
                }
            ],
        }
        if self.assertion_method:
            doc["assertionMethod"] = [self.assertion_method]
        if self.key_agreement:
            doc["keyAgreement"] = [self.key_agreement]
        return doc

    def dumps(self, indent=2) -> str:
        return json.dumps(self.to_json(), indent=indent)


def fingerprint(cert: Certificate, algorithm: str = "sha256") -> str:
    """
    Unpadded base64url digest of the DER encoding of cert.
    """
    if algorithm not in FINGERPRINT_ALGORITHMS:
        raise UnsupportedAlgorithm(f"Unsupported hash algorithm {algorithm}")
    digest = cert.fingerprint(FINGERPRINT_ALGORITHMS[algorithm]())
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def escape(value: str) -> str:
    return quote(value, safe="")


def unescape(value: str) -> str:
    # unquote_plus() leaves malformed escapes as they are, they are invalid here
    if BAD_ESCAPE.search(value):
        raise InvalidPolicy(f"Invalid escape sequence in '{value}'")
    return unquote_plus(value)


def _subject_policy(args: List[str]) -> SubjectPolicy:
    if not args or len(args) % 2 != 0:
        raise InvalidPolicy("subject policy requires key-value pairs")
    fields = []
    seen = set()
    for key, value in zip(args[0::2], args[1::2]):
        field = key.upper()
        field = SUBJECT_FIELD_ALIASES.get(field, field)
        if field in seen:
            raise DuplicateField(f"Duplicate subject field '{field}'")
        seen.add(field)
        fields.append((field, unescape(value)))
    return SubjectPolicy(tuple(fields))


def _san_policy(args: List[str]) -> SanPolicy:
    if len(args) != 2:
        raise InvalidPolicy("san policy requires exactly one SAN type and value")
    san_type, value = args
    if san_type not in SAN_TYPES:
        raise InvalidPolicy(f"Unknown SAN type: {san_type}")
    return SanPolicy(san_type, unescape(value))


def _eku_policy(args: List[str]) -> EkuPolicy:
    if len(args) != 1:
        raise InvalidPolicy("eku policy requires exactly one EKU")
    if not OID_PATTERN.match(args[0]):
        raise InvalidPolicy(f"Invalid OID: {args[0]}")
    return EkuPolicy(args[0])


def _fulcio_issuer_policy(args: List[str]) -> FulcioIssuerPolicy:
    if len(args) != 1:
        raise InvalidPolicy("fulcio-issuer policy requires exactly one issuer")
    return FulcioIssuerPolicy("https://" + unescape(args[0]))


POLICY_PARSERS = {
    "subject": _subject_policy,
    "san": _san_policy,
    "eku": _eku_policy,
    "fulcio-issuer": _fulcio_issuer_policy,
}


def parse_policy(clause: str) -> Policy:
    name, *args = clause.split(":")
    if not args:
        raise InvalidPolicy(f"Invalid policy '{clause}'")
    if name not in POLICY_PARSERS:
        raise UnsupportedPolicy(f"Unsupported did:x509 policy name '{name}'")
    return POLICY_PARSERS[name](args)


def parse_did(did: str) -> DidDescriptor:
    top_tokens = did.split("::")
    pretokens = top_tokens[0].split(":")
    if len(pretokens) < 3 or pretokens[0] != "did" or pretokens[1] != DID_METHOD:
        raise UnsupportedMethod("Unsupported DID method, expected did:x509")
    if pretokens[2] != DID_VERSION:
        raise UnsupportedVersion(f"Unsupported did:x509 version {pretokens[2]}")
    if len(pretokens) != 5:
        raise FormatError("Invalid did:x509 fingerprint section")
    if len(top_tokens) < 2:
        raise InvalidPolicy("did:x509 requires at least one policy")

    _, _, version, fingerprint_algorithm, ca_fingerprint = pretokens
    if fingerprint_algorithm not in FINGERPRINT_ALGORITHMS:
        raise UnsupportedAlgorithm(
            f"Unsupported hash algorithm {fingerprint_algorithm}"
        )

    return DidDescriptor(
        version=version,
        fingerprint_algorithm=fingerprint_algorithm,
        fingerprint=ca_fingerprint,
        policies=tuple(parse_policy(clause) for clause in top_tokens[1:]),
    )


def subject_values(cert: Certificate, field: str) -> List[str]:
    if field in SUBJECT_FIELD_OIDS:
        attributes = cert.subject.get_attributes_for_oid(SUBJECT_FIELD_OIDS[field])
    else:
        # Any other attribute, by OID (e.g. 0.9.2342.19200300.100.1.25)
        attributes = [
            attribute
            for attribute in cert.subject
            if attribute.oid.dotted_string == field
        ]
    return [a.value for a in attributes if isinstance(a.value, str)]


def extended_key_usages(cert: Certificate) -> List[str]:
    eku = get_extension(cert, x509.ExtendedKeyUsage)
    if eku is None:
        return []
    return [oid.dotted_string for oid in eku]


def check_subject(policy: SubjectPolicy, leaf: Certificate):
    for field, value in policy.fields:
        if value not in subject_values(leaf, field):
            raise SubjectMismatch(f"Invalid subject value: {field}={value}")


def check_san(policy: SanPolicy, leaf: Certificate):
    san = get_extension(leaf, x509.SubjectAlternativeName)
    if san is not None:
        names = san.get_values_for_type(SAN_TYPES[policy.san_type])
        if policy.value in (str(name) for name in names):
            return
    raise SanNotFound(f"SAN not found: {policy.san_type}:{policy.value}")


def check_eku(policy: EkuPolicy, leaf: Certificate):
    if policy.oid not in extended_key_usages(leaf):
        raise EkuNotFound(f"EKU not found: {policy.oid}")


def check_fulcio_issuer(policy: FulcioIssuerPolicy, leaf: Certificate):
    expected = policy.issuer.encode("utf-8")
    for ext in leaf.extensions:
        if (
            ext.oid == FULCIO_ISSUER_OID
            and isinstance(ext.value, x509.UnrecognizedExtension)
            and ext.value.value == expected
        ):
            return
    raise IssuerNotFound(f"Invalid fulcio-issuer: {policy.issuer}")


POLICY_CHECKS = {
    SubjectPolicy: check_subject,
    SanPolicy: check_san,
    EkuPolicy: check_eku,
    FulcioIssuerPolicy: check_fulcio_issuer,
}


def evaluate_policy(policy: Policy, leaf: Certificate):
    POLICY_CHECKS[type(policy)](policy, leaf)


def check_fingerprint(path: List[Certificate], descriptor: DidDescriptor):
    expected = {
        fingerprint(cert, descriptor.fingerprint_algorithm) for cert in path[1:]
    }
    if descriptor.fingerprint not in expected:
        raise UnexpectedFingerprint(
            f"Unexpected certificate fingerprint {descriptor.fingerprint}"
        )


def create_did_document(did: str, leaf: Certificate) -> DidDocument:
    key_usage = get_extension(leaf, x509.KeyUsage)
    include_assertion_method = key_usage is None or key_usage.digital_signature
    include_key_agreement = key_usage is None or key_usage.key_agreement
    if not include_assertion_method and not include_key_agreement:
        raise IncompatibleKeyUsage(
            "Leaf certificate key usage must include digital signature or key agreement"
        )

    verification_method_id = did + VERIFICATION_METHOD_SUFFIX
    return DidDocument(
        id=did,
        verification_method_id=verification_method_id,
        public_key_jwk=jwk.JWK.from_pyca(leaf.public_key()).export_public(
            as_dict=True
        ),
        assertion_method=verification_method_id if include_assertion_method else None,
        key_agreement=verification_method_id if include_key_agreement else None,
    )


def resolve(
    chain_pem: Pem, did: str, ignore_expiry: bool = True, verbose: bool = False
) -> DidDocument:
    """
    Resolve did against the PEM certificate chain, whose last certificate
    is taken as the trusted root. Every valid path through the chain must
    carry a CA certificate with the DID fingerprint, and its leaf must
    satisfy every policy of the DID.
    """
    chain = pem_to_certificates(chain_pem)
    if not chain:
        raise ChainMissing("No certificate chain")
    if len(chain) < 2:
        raise ChainTooShort("did:x509 requires at least two certificates")

    paths = verify_certificate_chain(
        chain, ignore_expiry=ignore_expiry, verbose=verbose
    )
    descriptor = parse_did(did)
    LOG.debug(
        f"Resolving {did} ({len(descriptor.policies)} policies) over {len(paths)} path(s)"
    )

    for path in paths:
        check_fingerprint(path, descriptor)
        for policy in descriptor.policies:
            evaluate_policy(policy, path[0])

    document = create_did_document(did, chain[0])
    if verbose:
        LOG.debug(f"DID document:\n{document.dumps()}")
    return document


def _common_name_clause(leaf: Certificate) -> str:
    names = subject_values(leaf, "CN")
    if not names:
        raise InvalidPolicy("Leaf certificate has no common name")
    return f"subject:CN:{escape(names[0])}"


def _eku_clause(leaf: Certificate) -> str:
    ekus = extended_key_usages(leaf)
    if not ekus:
        raise InvalidPolicy("Leaf certificate has no extended key usage")
    # A dedicated (unknown) usage identifies the signer better than e.g. code signing
    unknown = [oid for oid in ekus if oid not in KNOWN_EKU_OIDS]
    return f"eku:{(unknown or ekus)[0]}"


def _custom_clause(clause: str) -> str:
    tokens = clause.split(":")
    if tokens[0] == "subject":
        if len(tokens) < 3:
            raise InvalidPolicy(f"Invalid 'subject' policy '{clause}'")
        for i in range(2, len(tokens), 2):
            tokens[i] = escape(tokens[i])
    return ":".join(tokens)


BUILTIN_POLICIES = {
    "CN": _common_name_clause,
    "EKU": _eku_clause,
}


def policy_clauses(policy: str, leaf: Certificate) -> List[str]:
    """
    Expand a policy name into did:x509 policy clauses. "CN" and "EKU"
    (in any case) are derived from the leaf certificate, anything else is
    taken as literal clauses, with subject values escaped.
    """
    builtin = BUILTIN_POLICIES.get(policy.upper())
    if builtin is not None:
        return [builtin(leaf)]
    if not policy:
        raise InvalidPolicy("Empty policy")
    return [_custom_clause(clause) for clause in policy.split("::")]


def make_did(
    fingerprint_algorithm: str,
    fingerprint_index: int,
    chain_pem: Pem,
    policy: str,
    strict: bool = True,
    verbose: bool = False,
) -> str:
    """
    Build a did:x509 for the chain, fingerprinting chain[fingerprint_index].
    In strict mode the DID is resolved against the same chain before being
    returned.
    """
    if fingerprint_algorithm not in FINGERPRINT_ALGORITHMS:
        raise UnsupportedAlgorithm(
            f"Unsupported hash algorithm {fingerprint_algorithm}"
        )

    chain = pem_to_certificates(chain_pem)
    if not chain:
        raise ChainMissing("No certificate chain")
    if fingerprint_index < 1 or fingerprint_index >= len(chain):
        raise IndexOutOfBounds(
            f"Fingerprint index {fingerprint_index} out of bounds [1, {len(chain) - 1}]"
        )

    ca_fingerprint = fingerprint(chain[fingerprint_index], fingerprint_algorithm)
    clauses = policy_clauses(policy, chain[0])
    did = f"did:{DID_METHOD}:{DID_VERSION}:{fingerprint_algorithm}:{ca_fingerprint}::" + "::".join(
        clauses
    )
    LOG.debug(f"Built {did}")

    if strict:
        resolve(chain_pem, did, ignore_expiry=True, verbose=verbose)
        LOG.debug("did:x509 resolved correctly")
    return did
