"""Utilities for issuing and validating application JWTs and opaque tokens."""

from __future__ import annotations

import base64
import hashlib
import secrets
import time
import uuid
from typing import Any, Callable

import jwt

from ..domain.account import Account

ALGORITHM = "HS256"
OPAQUE_TOKEN_BYTES = 64


class TokenSigner:
    """Signs short-lived access tokens with a shared HMAC secret."""

    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue_access_token(self, account: Account) -> tuple[str, int]:
        """Create a signed JWT representing an authenticated account.

        Parameters
        ----------
        account:
            Account whose identifier, email, and role are embedded as claims.

        Returns
        -------
        tuple[str, int]
            A tuple containing the encoded JWT string and its TTL (in seconds).
        """

        now = int(self._clock())
        payload: dict[str, Any] = {
            "sub": account.account_id,
            "email": account.email,
            "role": account.role.value,
            "jti": str(uuid.uuid4()),
            "iss": self._issuer,
            "iat": now,
            "exp": now + self._ttl_seconds,
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        return token, self._ttl_seconds

    def decode_access_token(self, token: str) -> dict[str, Any]:
        """Decode and verify a JWT returning its payload.

        Parameters
        ----------
        token:
            Encoded JWT issued by this service.

        Returns
        -------
        dict[str, Any]
            The decoded payload if signature, expiry, and issuer checks succeed.

        Raises
        ------
        jwt.PyJWTError
            Propagated when the token is invalid, expired, or signed by another issuer.
        """

        return jwt.decode(
            token,
            self._secret,
            algorithms=[ALGORITHM],
            issuer=self._issuer,
            options={"require": ["sub", "exp", "iat", "jti"]},
        )


def generate_opaque_token() -> str:
    """Return 64 cryptographically random bytes as standard base64 text."""
    return base64.b64encode(secrets.token_bytes(OPAQUE_TOKEN_BYTES)).decode("ascii")


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of an opaque token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
