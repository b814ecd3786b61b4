# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import base64

import pytest
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

import pki
from cosesign1 import errors, keys
from cosesign1.signing import Algorithm


def public_der(priv):
    return priv.public_key().public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )


@pytest.mark.parametrize(
    "algorithm,private_format,parser",
    [
        (Algorithm.ES256, PrivateFormat.TraditionalOpenSSL, "parse_ec_private_key"),
        (Algorithm.ES384, PrivateFormat.PKCS8, "parse_pkcs8_private_key"),
        (Algorithm.PS256, PrivateFormat.PKCS8, "parse_pkcs8_private_key"),
        (Algorithm.PS256, PrivateFormat.TraditionalOpenSSL, "parse_pkcs1_private_key"),
        (Algorithm.EdDSA, PrivateFormat.PKCS8, "parse_pkcs8_private_key"),
    ],
)
def test_parse_private_key(algorithm, private_format, parser):
    priv = pki.make_private_key(algorithm)
    der = priv.private_bytes(Encoding.DER, private_format, NoEncryption())

    parsed = keys.parse_private_key(der)
    assert public_der(parsed) == public_der(priv)

    # The encoding is accepted by the expected parser, and only that one
    for candidate in keys.PRIVATE_KEY_PARSERS:
        if candidate.__name__ == parser:
            candidate(der)
        else:
            with pytest.raises(errors.KeyParseError):
                candidate(der)


def test_parse_private_key_pem():
    priv = pki.make_private_key(Algorithm.ES256)
    for private_format in (PrivateFormat.PKCS8, PrivateFormat.TraditionalOpenSSL):
        parsed = keys.parse_private_key_pem(pki.private_key_pem(priv, private_format))
        assert public_der(parsed) == public_der(priv)


def test_unparseable_private_key_reports_last_error():
    with pytest.raises(errors.KeyParseError) as e:
        keys.parse_private_key(b"\x30\x03\x02\x01\x05")
    assert e.value.message == "Not a PKCS1 private key"


def test_private_key_pem_without_key():
    with pytest.raises(errors.KeyParseError):
        keys.parse_private_key_pem("no key in here")


@pytest.mark.parametrize(
    "public_format", [PublicFormat.PKCS1, PublicFormat.SubjectPublicKeyInfo]
)
def test_parse_rsa_public_key(public_format):
    priv = pki.make_private_key(Algorithm.PS256)
    der = priv.public_key().public_bytes(Encoding.DER, public_format)
    assert keys.public_key_to_der(keys.parse_public_key(der)) == public_der(priv)


@pytest.mark.parametrize("algorithm", [Algorithm.ES512, Algorithm.EdDSA])
def test_parse_pkix_public_key(algorithm):
    priv = pki.make_private_key(algorithm)
    pem = pki.public_key_pem(priv)
    assert keys.public_key_to_der(keys.parse_public_key_pem(pem)) == public_der(priv)


def test_unparseable_public_key():
    with pytest.raises(errors.KeyParseError) as e:
        keys.parse_public_key(b"\x04\x03abc")
    assert "DER" in e.value.message


def test_public_key_formatting():
    priv = pki.make_private_key(Algorithm.ES256)
    b64 = keys.public_key_to_base64(priv.public_key())
    assert base64.b64decode(b64) == public_der(priv)

    pem = keys.public_key_to_pem(priv.public_key())
    assert pem == f"-----BEGIN PUBLIC KEY-----\n{b64}\n-----END PUBLIC KEY-----\n"
    assert keys.public_key_to_der(keys.parse_public_key_pem(pem)) == public_der(priv)


def test_no_parsers_raises_key_parse_error():
    with pytest.raises(errors.KeyParseError):
        keys._parse_with_fallback(b"\x30\x00", [], "private key")
