"""Shared fixtures for pctl tests."""

import json

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from pctl.config import RequestConfig

BASE_URL = "https://tenant.example.com"
TOKEN_URL = "https://tenant.example.com/am/oauth2/access_token"
SERVICE_ACCOUNT_ID = "3f1c2a8e-5b7d-4e2f-9a61-0c8d4b2e7f10"


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """Throwaway 2048-bit RSA key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwk_dict(rsa_key) -> dict:
    """Private JWK for rsa_key, as downloaded from the platform console."""
    data = RSAAlgorithm.to_jwk(rsa_key, as_dict=True)
    data["kid"] = "sa-key-1"
    data["use"] = "sig"
    return data


@pytest.fixture
def jwk_json(jwk_dict) -> str:
    return json.dumps(jwk_dict)


@pytest.fixture
def request_config(jwk_json) -> RequestConfig:
    return RequestConfig(
        service_account_id=SERVICE_ACCOUNT_ID,
        token_endpoint_base=BASE_URL,
        scope="fr:am:* fr:idm:*",
        jwk_source=jwk_json,
        platform=BASE_URL,
    )
