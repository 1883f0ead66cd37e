"""Domain-level request and result contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class RegisterAccountInput:
    """Validated inputs required to register a password-backed account."""

    name: str
    email: str
    password: str
    phone: str
    tax_id: str | None = None


@dataclass(slots=True, frozen=True)
class IdentityClaim:
    """Identity asserted by an external provider after its token was verified."""

    provider: str
    subject: str
    email: str
    name: str | None = None
    picture_url: str | None = None


@dataclass(slots=True, frozen=True)
class AuthResult:
    """Outcome of workflows that answer with a message instead of credentials."""

    success: bool
    message: str

    @classmethod
    def ok(cls, message: str) -> "AuthResult":
        return cls(success=True, message=message)


@dataclass(slots=True, frozen=True)
class TokenPair:
    """Encapsulates the access/refresh token pair returned to API consumers."""

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int
