# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import pytest
from cryptography.hazmat.primitives.serialization import Encoding

import pki
from cosesign1 import chain, errors


def test_pem_round_trip(long_pki):
    pem = chain.certificates_to_pem(long_pki.certs)
    assert chain.pem_to_certificates(pem) == long_pki.certs


def test_pem_has_single_line_body(ec_pki):
    pem = chain.certificate_to_pem(ec_pki.leaf)
    lines = pem.splitlines()
    assert lines[0] == "-----BEGIN CERTIFICATE-----"
    assert lines[1] == chain.certificate_to_base64(ec_pki.leaf)
    assert lines[2] == "-----END CERTIFICATE-----"
    assert len(lines) == 3


def test_wrapped_pem_is_accepted(ec_pki):
    # cryptography wraps base64 bodies at 64 characters
    pem = "".join(c.public_bytes(Encoding.PEM).decode("ascii") for c in ec_pki.certs)
    assert chain.pem_to_certificates(pem) == ec_pki.certs


def test_other_pem_blocks_are_ignored(ec_pki):
    pem = ec_pki.leaf_key_pem + "\n" + ec_pki.chain_pem
    assert chain.pem_to_certificates(pem) == ec_pki.certs


def test_no_certificates():
    assert chain.pem_to_certificates("") == []
    assert chain.pem_to_certificates(pki.private_key_pem(pki.make_private_key())) == []


def test_bad_certificate_fails_whole_chain(ec_pki):
    bad = "-----BEGIN CERTIFICATE-----\nMIIBkTCB+wIJAKHHIG\n-----END CERTIFICATE-----\n"
    with pytest.raises(errors.FormatError):
        chain.pem_to_certificates(ec_pki.chain_pem + bad)


def test_bad_base64_fails(ec_pki):
    bad = "-----BEGIN CERTIFICATE-----\nnot*base64\n-----END CERTIFICATE-----\n"
    with pytest.raises(errors.FormatError):
        chain.pem_to_certificates(bad + ec_pki.chain_pem)


def test_der_round_trip(ec_pki):
    ders = chain.certificates_to_der(ec_pki.certs)
    assert chain.der_to_certificates(ders) == ec_pki.certs


def test_split_chain(long_pki):
    leaf, intermediates, root = chain.split_chain(long_pki.certs)
    assert leaf == long_pki.certs[0]
    assert intermediates == long_pki.certs[1:4]
    assert root == long_pki.certs[4]


def test_split_single_certificate(ec_pki):
    leaf, intermediates, root = chain.split_chain(ec_pki.certs[:1])
    assert leaf == root == ec_pki.leaf
    assert intermediates == []


def test_split_empty_chain():
    with pytest.raises(errors.ChainMissing):
        chain.split_chain([])
