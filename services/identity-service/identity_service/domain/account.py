from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "User"
    ADMIN = "Admin"


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its credential/token state.

    Token fields hold SHA-256 digests; raw token values never live on the aggregate.
    """

    account_id: str
    email: str
    name: str
    phone: str
    created_at: datetime
    role: Role = Role.USER
    tax_id: str | None = None
    password_cipher: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False
    email_verification_token_hash: str | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires_at: datetime | None = None
    refresh_token_hash: str | None = None
    refresh_token_expires_at: datetime | None = None

    @classmethod
    def new(
        cls,
        *,
        name: str,
        email: str,
        phone: str,
        created_at: datetime,
        tax_id: str | None = None,
        role: Role = Role.USER,
    ) -> "Account":
        """Build a fresh, unverified account with a new identifier."""
        if not name or not name.strip():
            raise ValueError("name is required")
        if not email or not email.strip():
            raise ValueError("email is required")
        return cls(
            account_id=str(uuid.uuid4()),
            email=email,
            name=name,
            phone=phone,
            created_at=created_at,
            role=role,
            tax_id=tax_id or None,
        )

    @property
    def is_federated_only(self) -> bool:
        return self.password_cipher is None

    def set_password_cipher(self, password_cipher: str) -> None:
        if not password_cipher:
            raise ValueError("password cipher must not be empty")
        self.password_cipher = password_cipher

    def set_avatar_url(self, avatar_url: str | None) -> None:
        if avatar_url and avatar_url.strip():
            self.avatar_url = avatar_url

    def begin_email_verification(self, token_hash: str) -> None:
        self.email_verification_token_hash = token_hash

    def mark_email_verified(self) -> None:
        # Verification is one-way; the pending token is consumed with it.
        self.email_verified = True
        self.email_verification_token_hash = None

    def begin_password_reset(self, token_hash: str, expires_at: datetime) -> None:
        self.password_reset_token_hash = token_hash
        self.password_reset_expires_at = expires_at

    def clear_password_reset(self) -> None:
        self.password_reset_token_hash = None
        self.password_reset_expires_at = None

    def password_reset_expired(self, now: datetime) -> bool:
        return self.password_reset_expires_at is None or self.password_reset_expires_at < now

    def rotate_refresh_token(self, token_hash: str, expires_at: datetime) -> None:
        """Replace the single active refresh token, invalidating any previous value."""
        self.refresh_token_hash = token_hash
        self.refresh_token_expires_at = expires_at

    def revoke_refresh_token(self) -> None:
        self.refresh_token_hash = None
        self.refresh_token_expires_at = None

    def refresh_token_expired(self, now: datetime) -> bool:
        return self.refresh_token_expires_at is None or self.refresh_token_expires_at < now
