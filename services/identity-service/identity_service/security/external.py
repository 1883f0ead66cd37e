"""Verification of identity assertions issued by external providers."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient

from ..domain.contracts import IdentityClaim

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


class ExternalIdentityValidator(Protocol):
    """Contract for provider-specific ID token verification.

    Implementations return ``None`` on any failure so callers can answer with a
    single uniform error.
    """

    provider: str

    def validate(self, id_token: str) -> IdentityClaim | None: ...


class GoogleIdentityValidator:
    """Validates Google-issued OIDC ID tokens against Google's published JWKS."""

    provider = "google"

    def __init__(
        self,
        client_id: str,
        *,
        jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs",
        jwks_client: PyJWKClient | None = None,
        issuers: tuple[str, ...] = GOOGLE_ISSUERS,
    ) -> None:
        if not client_id:
            raise ValueError("Google client id is not configured")
        self._client_id = client_id
        self._issuers = issuers
        self._jwks_client = jwks_client or PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)

    def validate(self, id_token: str) -> IdentityClaim | None:
        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(id_token)
            claims: dict[str, Any] = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._client_id,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.PyJWTError as exc:
            logger.info("google id token rejected: %s", exc)
            return None
        except OSError as exc:
            logger.warning("google signing keys unavailable: %s", exc)
            return None

        if claims.get("iss") not in self._issuers:
            logger.info("google id token rejected: unexpected issuer %s", claims.get("iss"))
            return None
        email = claims.get("email")
        if not email:
            logger.info("google id token rejected: no email claim")
            return None
        if claims.get("email_verified") is False:
            logger.info("google id token rejected: email not verified by provider")
            return None

        return IdentityClaim(
            provider=self.provider,
            subject=str(claims["sub"]),
            email=email,
            name=claims.get("name"),
            picture_url=claims.get("picture"),
        )
