from __future__ import annotations

import time
from types import SimpleNamespace

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from identity_service.security.external import GoogleIdentityValidator

CLIENT_ID = "client-123.apps.googleusercontent.com"


class StaticJwksClient:
    def __init__(self, public_key, error: Exception | None = None) -> None:
        self._public_key = public_key
        self.error = error

    def get_signing_key_from_jwt(self, token: str):
        if self.error:
            raise self.error
        return SimpleNamespace(key=self._public_key)


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def jwks_client(private_key) -> StaticJwksClient:
    return StaticJwksClient(private_key.public_key())


@pytest.fixture()
def validator(jwks_client) -> GoogleIdentityValidator:
    return GoogleIdentityValidator(CLIENT_ID, jwks_client=jwks_client)


def _id_token(private_key, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": CLIENT_ID,
        "sub": "1098765",
        "email": "fed@x.com",
        "email_verified": True,
        "name": "Fed User",
        "picture": "https://lh3.googleusercontent.com/a/photo.jpg",
        "iat": now,
        "exp": now + 300,
    }
    claims.update(overrides)
    claims = {key: value for key, value in claims.items() if value is not None}
    return jwt.encode(claims, private_key, algorithm="RS256")


def test_valid_google_token_yields_claim(validator, private_key):
    claim = validator.validate(_id_token(private_key))

    assert claim is not None
    assert claim.provider == "google"
    assert claim.subject == "1098765"
    assert claim.email == "fed@x.com"
    assert claim.name == "Fed User"
    assert claim.picture_url == "https://lh3.googleusercontent.com/a/photo.jpg"


def test_bare_issuer_form_is_accepted(validator, private_key):
    assert validator.validate(_id_token(private_key, iss="accounts.google.com")) is not None


@pytest.mark.parametrize(
    "overrides",
    [
        {"aud": "another-client"},
        {"iss": "https://evil.example.com"},
        {"exp": int(time.time()) - 60},
        {"email": None},
        {"email_verified": False},
    ],
    ids=["audience", "issuer", "expired", "no-email", "unverified-email"],
)
def test_invalid_google_tokens_are_rejected(validator, private_key, overrides):
    assert validator.validate(_id_token(private_key, **overrides)) is None


def test_token_signed_by_unknown_key_is_rejected(validator):
    stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    assert validator.validate(_id_token(stranger)) is None


def test_unreachable_key_set_is_rejected(validator, jwks_client, private_key):
    jwks_client.error = jwt.PyJWKClientError("Fail to fetch data from the url")

    assert validator.validate(_id_token(private_key)) is None


def test_garbage_token_is_rejected(validator, jwks_client):
    jwks_client.error = jwt.DecodeError("Not enough segments")

    assert validator.validate("not-a-jwt") is None


def test_client_id_is_required():
    with pytest.raises(ValueError):
        GoogleIdentityValidator("")
