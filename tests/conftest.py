# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import pytest

import pki
from cosesign1.signing import Algorithm


@pytest.fixture(scope="session")
def ec_pki():
    return pki.make_pki(pki.make_private_key(Algorithm.ES256))


@pytest.fixture(scope="session")
def rsa_pki():
    return pki.make_pki(pki.make_private_key(Algorithm.PS256))


@pytest.fixture(scope="session")
def long_pki():
    return pki.make_pki(length=5)
