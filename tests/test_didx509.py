# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import base64
import datetime
import hashlib
import ipaddress
import json
import re

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID
from jwcrypto import jwk  # type: ignore

import pki
from cosesign1 import didx509, errors
from cosesign1.chain import certificates_to_pem
from cosesign1.signing import Algorithm

LEAF_CN = "Test Leaf (DO NOT TRUST)"
ESCAPED_LEAF_CN = "Test%20Leaf%20%28DO%20NOT%20TRUST%29"


def did_for(pki_, policy, index=1, algorithm="sha256"):
    """
    did:x509 with a literal policy section, no escaping applied.
    """
    return (
        f"did:x509:0:{algorithm}:"
        + didx509.fingerprint(pki_.certs[index], algorithm)
        + "::"
        + policy
    )


@pytest.fixture(scope="module")
def rich_pki():
    return pki.make_pki(
        extensions=[
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("example.com"),
                    x509.RFC822Name("signer@example.com"),
                    x509.UniformResourceIdentifier("https://example.com/policy"),
                    x509.IPAddress(ipaddress.ip_address("10.0.0.1")),
                ]
            ),
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.CODE_SIGNING, pki.CUSTOM_EKU_OID]
            ),
            x509.UnrecognizedExtension(
                pki.FULCIO_ISSUER_OID, b"https://github.com/login/oauth"
            ),
        ]
    )


def test_fingerprint(ec_pki):
    intermediate = ec_pki.certs[1]
    digest = hashlib.sha256(intermediate.public_bytes(Encoding.DER)).digest()
    expected = base64.urlsafe_b64encode(digest).decode().rstrip("=")
    assert didx509.fingerprint(intermediate, "sha256") == expected
    assert len(didx509.fingerprint(intermediate, "sha384")) == 64
    assert len(didx509.fingerprint(intermediate, "sha512")) == 86


def test_make_did_concrete_scenario(ec_pki):
    did = didx509.make_did("sha256", 1, ec_pki.chain_pem, "CN", strict=False)

    match = re.fullmatch(
        r"did:x509:0:sha256:([A-Za-z0-9_-]{22,43})::subject:CN:(.+)", did
    )
    assert match
    assert match.group(1) == didx509.fingerprint(ec_pki.certs[1], "sha256")
    assert match.group(2) == ESCAPED_LEAF_CN

    document = didx509.resolve(ec_pki.chain_pem, did)
    assert document.id == did


def test_make_did_every_index(long_pki):
    for index in range(1, len(long_pki.certs)):
        did = didx509.make_did("sha256", index, long_pki.chain_pem, "CN", strict=True)
        assert didx509.resolve(long_pki.chain_pem, did).id == did


@pytest.mark.parametrize("algorithm", ["sha256", "sha384", "sha512"])
def test_fingerprint_algorithms(ec_pki, algorithm):
    did = didx509.make_did(algorithm, 2, ec_pki.chain_pem, "cn")
    assert did.startswith(f"did:x509:0:{algorithm}:")
    assert didx509.resolve(ec_pki.chain_pem, did).id == did


def test_make_did_unsupported_algorithm(ec_pki):
    with pytest.raises(errors.UnsupportedAlgorithm):
        didx509.make_did("md5", 1, ec_pki.chain_pem, "CN")


@pytest.mark.parametrize("index", [0, -1, 3, 10])
def test_make_did_index_out_of_bounds(ec_pki, index):
    with pytest.raises(errors.IndexOutOfBounds):
        didx509.make_did("sha256", index, ec_pki.chain_pem, "CN")


def test_make_did_empty_chain():
    with pytest.raises(errors.ChainMissing):
        didx509.make_did("sha256", 1, "", "CN")


def test_substituted_leaf_fails(ec_pki):
    did = didx509.make_did("sha256", 1, ec_pki.chain_pem, "CN")
    impostor = ec_pki.with_leaf(pki.make_private_key(), pki.common_name("Impostor"))
    with pytest.raises(errors.SubjectMismatch):
        didx509.resolve(impostor.chain_pem, did)


@pytest.mark.parametrize(
    "policy",
    ["subject:CN:A:CN:B", "subject:CN:A:cn:A", "subject:ST:Washington:S:Washington"],
)
def test_duplicate_subject_field(ec_pki, policy):
    with pytest.raises(errors.DuplicateField):
        didx509.resolve(ec_pki.chain_pem, did_for(ec_pki, policy))


def test_custom_subject_policy(ec_pki):
    policy = "subject:C:US:ST:Washington:L:Redmond:O:Contoso, Inc.:OU:Container Platform"
    did = didx509.make_did("sha256", 1, ec_pki.chain_pem, policy)
    assert did.endswith(
        "::subject:C:US:ST:Washington:L:Redmond:O:Contoso%2C%20Inc.:OU:Container%20Platform"
    )
    assert didx509.resolve(ec_pki.chain_pem, did).id == did


def test_custom_policy_mismatch_is_strict(ec_pki):
    policy = "subject:CN:Someone Else"
    with pytest.raises(errors.SubjectMismatch):
        didx509.make_did("sha256", 1, ec_pki.chain_pem, policy, strict=True)
    did = didx509.make_did("sha256", 1, ec_pki.chain_pem, policy, strict=False)
    assert did.endswith("::subject:CN:Someone%20Else")


@pytest.mark.parametrize(
    "policy",
    [
        f"subject:CN:{ESCAPED_LEAF_CN}",
        "subject:CN:Test+Leaf+%28DO+NOT+TRUST%29",
        "subject:o:Contoso%2C%20Inc.",
        "subject:2.5.4.10:Contoso%2C%20Inc.",
        "subject:CN:Test%20Leaf%20%28DO%20NOT%20TRUST%29::subject:C:US",
    ],
)
def test_subject_policies(ec_pki, policy):
    assert didx509.resolve(ec_pki.chain_pem, did_for(ec_pki, policy))


@pytest.mark.parametrize(
    "policy,error",
    [
        ("subject:CN:Test%20Leaf", errors.SubjectMismatch),
        ("subject:C:GB", errors.SubjectMismatch),
        ("subject:STREET:Main", errors.SubjectMismatch),
        ("subject:2.5.4.99:x", errors.SubjectMismatch),
        ("subject:CN", errors.InvalidPolicy),
        ("subject:CN:x:O", errors.InvalidPolicy),
        ("subject:CN:100%", errors.InvalidPolicy),
        ("subject", errors.InvalidPolicy),
    ],
)
def test_subject_policy_failures(ec_pki, policy, error):
    with pytest.raises(error):
        didx509.resolve(ec_pki.chain_pem, did_for(ec_pki, policy))


@pytest.mark.parametrize(
    "policy",
    [
        "san:dns:example.com",
        "san:email:signer%40example.com",
        "san:uri:https%3A%2F%2Fexample.com%2Fpolicy",
        "san:ipaddress:10.0.0.1",
    ],
)
def test_san_policy(rich_pki, policy):
    assert didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, policy))


def test_san_policy_failures(rich_pki, ec_pki):
    with pytest.raises(errors.SanNotFound):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "san:dns:other.com"))
    with pytest.raises(errors.SanNotFound):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "san:email:example.com"))
    with pytest.raises(errors.SanNotFound):
        didx509.resolve(ec_pki.chain_pem, did_for(ec_pki, "san:dns:example.com"))
    with pytest.raises(errors.InvalidPolicy):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "san:x400:example.com"))
    with pytest.raises(errors.InvalidPolicy):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "san:dns"))


def test_eku_policy(rich_pki):
    did = didx509.make_did("sha256", 1, rich_pki.chain_pem, "EKU")
    # the dedicated usage is preferred over code signing
    assert did.endswith(f"::eku:{pki.CUSTOM_EKU_OID.dotted_string}")

    code_signing = did_for(rich_pki, "eku:1.3.6.1.5.5.7.3.3")
    assert didx509.resolve(rich_pki.chain_pem, code_signing)


def test_eku_policy_with_known_usage_only(ec_pki):
    signer = ec_pki.with_leaf(
        pki.make_private_key(),
        extensions=[x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING])],
    )
    did = didx509.make_did("sha256", 1, signer.chain_pem, "eku")
    assert did.endswith("::eku:1.3.6.1.5.5.7.3.3")


def test_eku_policy_failures(rich_pki, ec_pki):
    with pytest.raises(errors.EkuNotFound):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "eku:1.3.6.1.5.5.7.3.1"))
    with pytest.raises(errors.EkuNotFound):
        didx509.resolve(ec_pki.chain_pem, did_for(ec_pki, "eku:1.3.6.1.5.5.7.3.3"))
    with pytest.raises(errors.InvalidPolicy):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "eku:code-signing"))
    with pytest.raises(errors.InvalidPolicy):
        didx509.resolve(rich_pki.chain_pem, did_for(rich_pki, "eku:1.2:1.3"))
    with pytest.raises(errors.InvalidPolicy):
        didx509.make_did("sha256", 1, ec_pki.chain_pem, "EKU")


def test_fulcio_issuer_policy(rich_pki, ec_pki):
    did = did_for(rich_pki, "fulcio-issuer:github.com%2Flogin%2Foauth")
    assert didx509.resolve(rich_pki.chain_pem, did)

    with pytest.raises(errors.IssuerNotFound):
        didx509.resolve(
            rich_pki.chain_pem, did_for(rich_pki, "fulcio-issuer:accounts.google.com")
        )
    with pytest.raises(errors.IssuerNotFound):
        didx509.resolve(
            ec_pki.chain_pem, did_for(ec_pki, "fulcio-issuer:github.com%2Flogin%2Foauth")
        )
    with pytest.raises(errors.InvalidPolicy):
        didx509.resolve(
            rich_pki.chain_pem, did_for(rich_pki, "fulcio-issuer:github.com:extra")
        )


def test_all_policies_must_hold(rich_pki):
    did = did_for(
        rich_pki,
        f"subject:CN:{ESCAPED_LEAF_CN}::san:dns:example.com::eku:1.3.6.1.5.5.7.3.3",
    )
    assert didx509.resolve(rich_pki.chain_pem, did)

    with pytest.raises(errors.SanNotFound):
        didx509.resolve(
            rich_pki.chain_pem,
            did_for(rich_pki, f"subject:CN:{ESCAPED_LEAF_CN}::san:dns:other.com"),
        )


def test_unsupported_policy(ec_pki):
    with pytest.raises(errors.UnsupportedPolicy):
        didx509.resolve(ec_pki.chain_pem, did_for(ec_pki, "issuer:CN:Test"))


@pytest.mark.parametrize(
    "did,error",
    [
        ("did:web:example.com::subject:CN:x", errors.UnsupportedMethod),
        ("x509:0:sha256:abc::subject:CN:x", errors.UnsupportedMethod),
        ("did:x509:1:sha256:abc::subject:CN:x", errors.UnsupportedVersion),
        ("did:x509:0:md5:abc::subject:CN:x", errors.UnsupportedAlgorithm),
        ("did:x509:0:sha256::subject:CN:x", errors.FormatError),
        ("did:x509:0:sha256:abc", errors.InvalidPolicy),
    ],
)
def test_parse_did_failures(did, error):
    with pytest.raises(error):
        didx509.parse_did(did)


def test_parse_did():
    descriptor = didx509.parse_did(
        "did:x509:0:sha384:abc-_::subject:CN:A%20B:st:WA::san:uri:https%3A%2F%2Fx::eku:1.2.3::fulcio-issuer:x.com"
    )
    assert descriptor.version == "0"
    assert descriptor.fingerprint_algorithm == "sha384"
    assert descriptor.fingerprint == "abc-_"
    assert descriptor.policies == (
        didx509.SubjectPolicy((("CN", "A B"), ("S", "WA"))),
        didx509.SanPolicy("uri", "https://x"),
        didx509.EkuPolicy("1.2.3"),
        didx509.FulcioIssuerPolicy("https://x.com"),
    )


def test_unexpected_fingerprint(ec_pki):
    # the leaf can never be the fingerprinted certificate
    with pytest.raises(errors.UnexpectedFingerprint):
        didx509.resolve(
            ec_pki.chain_pem, did_for(ec_pki, f"subject:CN:{ESCAPED_LEAF_CN}", index=0)
        )
    other = pki.make_pki()
    with pytest.raises(errors.UnexpectedFingerprint):
        didx509.resolve(
            ec_pki.chain_pem, did_for(other, f"subject:CN:{ESCAPED_LEAF_CN}")
        )


def test_chain_too_short(ec_pki):
    did = did_for(ec_pki, f"subject:CN:{ESCAPED_LEAF_CN}")
    with pytest.raises(errors.ChainTooShort):
        didx509.resolve(certificates_to_pem(ec_pki.certs[:1]), did)
    with pytest.raises(errors.ChainMissing):
        didx509.resolve("", did)


def test_invalid_chain(ec_pki):
    did = did_for(ec_pki, f"subject:CN:{ESCAPED_LEAF_CN}")
    stranger = pki.make_pki().leaf
    with pytest.raises(errors.ChainVerificationFailed):
        didx509.resolve(certificates_to_pem([stranger] + ec_pki.certs[1:]), did)


def test_expired_leaf(ec_pki):
    expired = ec_pki.with_leaf(
        pki.make_private_key(),
        valid_from=pki.now() - datetime.timedelta(days=30),
        validity_days=10,
    )
    did = didx509.make_did("sha256", 1, expired.chain_pem, "CN")
    assert didx509.resolve(expired.chain_pem, did).id == did
    with pytest.raises(errors.ChainVerificationFailed):
        didx509.resolve(expired.chain_pem, did, ignore_expiry=False)


def test_did_document(ec_pki):
    did = didx509.make_did("sha256", 1, ec_pki.chain_pem, "CN")
    document = didx509.resolve(ec_pki.chain_pem, did)

    expected_jwk = jwk.JWK.from_pem(
        pki.public_key_pem(ec_pki.leaf_key).encode("ascii")
    ).export_public(as_dict=True)
    # from_pem() sets a thumbprint kid, the document carries none
    expected_jwk.pop("kid", None)
    assert document.public_key_jwk == expected_jwk
    assert document.public_key_jwk["kty"] == "EC"
    assert document.public_key_jwk["crv"] == "P-256"

    doc = json.loads(document.dumps())
    assert doc["@context"] == "https://www.w3.org/ns/did/v1"
    assert doc["id"] == did
    (method,) = doc["verificationMethod"]
    assert method == {
        "id": f"{did}#key-1",
        "type": "JsonWebKey2020",
        "controller": did,
        "publicKeyJwk": expected_jwk,
    }
    # no key usage extension on the leaf: both relationships
    assert doc["assertionMethod"] == [f"{did}#key-1"]
    assert doc["keyAgreement"] == [f"{did}#key-1"]


@pytest.mark.parametrize("algorithm", [Algorithm.PS256, Algorithm.EdDSA])
def test_did_document_key_types(algorithm):
    signer = pki.make_pki(pki.make_private_key(algorithm))
    did = didx509.make_did("sha256", 1, signer.chain_pem, "CN")
    document = didx509.resolve(signer.chain_pem, did)
    assert document.public_key_jwk["kty"] == {
        Algorithm.PS256: "RSA",
        Algorithm.EdDSA: "OKP",
    }[algorithm]


@pytest.mark.parametrize(
    "key_usage,assertion_method,key_agreement",
    [
        (pki.key_usage(digital_signature=True), True, False),
        (pki.key_usage(key_agreement=True), False, True),
        (pki.key_usage(digital_signature=True, key_agreement=True), True, True),
    ],
)
def test_did_document_key_usage(ec_pki, key_usage, assertion_method, key_agreement):
    signer = ec_pki.with_leaf(pki.make_private_key(), extensions=[key_usage])
    did = didx509.make_did("sha256", 1, signer.chain_pem, "CN")
    doc = didx509.resolve(signer.chain_pem, did).to_json()
    assert ("assertionMethod" in doc) == assertion_method
    assert ("keyAgreement" in doc) == key_agreement


def test_incompatible_key_usage(ec_pki):
    key_encipherment = x509.KeyUsage(
        digital_signature=False,
        content_commitment=False,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=False,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )
    signer = ec_pki.with_leaf(pki.make_private_key(), extensions=[key_encipherment])
    with pytest.raises(errors.IncompatibleKeyUsage):
        didx509.make_did("sha256", 1, signer.chain_pem, "CN")
    did = didx509.make_did("sha256", 1, signer.chain_pem, "CN", strict=False)
    with pytest.raises(errors.IncompatibleKeyUsage):
        didx509.resolve(signer.chain_pem, did)


def test_escaping():
    assert didx509.escape(LEAF_CN) == ESCAPED_LEAF_CN
    assert didx509.unescape(ESCAPED_LEAF_CN) == LEAF_CN
    assert didx509.unescape(didx509.escape("a:b+c d/e")) == "a:b+c d/e"
    with pytest.raises(errors.InvalidPolicy):
        didx509.unescape("%zz")
