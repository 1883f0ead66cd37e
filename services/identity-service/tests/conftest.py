from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity_service.api import routes
from identity_service.config import Settings
from identity_service.domain.account import Account
from identity_service.domain.contracts import IdentityClaim
from identity_service.domain.errors import DuplicateAccountError
from identity_service.domain.service import AuthService
from identity_service.security.cipher import AesCbcCipher
from identity_service.security.rate_limiter import SlidingWindowRateLimiter
from identity_service.security.tokens import TokenSigner


class FakeUnitOfWork:
    """Stages changes against a FakeAccountRepository until the transaction commits."""

    def __init__(self, repository: "FakeAccountRepository") -> None:
        self._repository = repository
        self._pending: dict[str, Account] = {}
        self._audit: list[dict] = []

    def _view(self) -> dict[str, Account]:
        merged = dict(self._repository.accounts)
        merged.update(self._pending)
        return merged

    def _find(self, predicate: Callable[[Account], bool]) -> Account | None:
        for account in self._view().values():
            if predicate(account):
                return replace(account)
        return None

    def find_by_id(self, account_id: str) -> Account | None:
        return self._find(lambda a: a.account_id == account_id)

    def find_by_email(self, email: str) -> Account | None:
        normalized = email.strip().lower()
        return self._find(lambda a: a.email.strip().lower() == normalized)

    def find_by_verification_token(self, token_hash: str) -> Account | None:
        return self._find(lambda a: a.email_verification_token_hash == token_hash)

    def find_by_reset_token(self, token_hash: str) -> Account | None:
        return self._find(lambda a: a.password_reset_token_hash == token_hash)

    def find_by_refresh_token(self, token_hash: str) -> Account | None:
        return self._find(lambda a: a.refresh_token_hash == token_hash)

    def exists_by_email(self, email: str) -> bool:
        if self._repository.stale_existence_checks:
            return False
        return self.find_by_email(email) is not None

    def add(self, account: Account) -> None:
        for existing in self._view().values():
            if existing.email.strip().lower() == account.email.strip().lower():
                raise DuplicateAccountError("accounts_email_hash_key")
            if account.tax_id and existing.tax_id == account.tax_id:
                raise DuplicateAccountError("accounts_tax_id_key")
        self._pending[account.account_id] = replace(account)

    def save(self, account: Account) -> None:
        self._pending[account.account_id] = replace(account)

    def write_audit_event(self, *, account_id, event_type, actor, metadata=None) -> None:
        self._audit.append(
            {"account_id": account_id, "event_type": event_type, "actor": actor, "metadata": metadata or {}}
        )

    def commit(self) -> None:
        self._repository.accounts.update(self._pending)
        self._repository.audit_log.extend(self._audit)
        self._repository.writes += len(self._pending)


class FakeAccountRepository:
    """In-memory repository that serialises units of work like row locks would."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.audit_log: list[dict] = []
        self.writes = 0
        # Simulates a check-then-insert race: existence checks miss committed rows.
        self.stale_existence_checks = False
        self._lock = threading.RLock()

    @contextmanager
    def unit_of_work(self) -> Iterator[FakeUnitOfWork]:
        with self._lock:
            uow = FakeUnitOfWork(self)
            yield uow
            uow.commit()

    def only_account(self) -> Account:
        assert len(self.accounts) == 1
        return next(iter(self.accounts.values()))

    def event_types(self) -> list[str]:
        return [event["event_type"] for event in self.audit_log]


class RecordingNotifier:
    def __init__(self) -> None:
        self.verification: list[tuple[str, str, str]] = []
        self.password_reset: list[tuple[str, str, str]] = []
        self.fail = False

    def send_verification_email(self, to_email: str, name: str, link: str) -> None:
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.verification.append((to_email, name, link))

    def send_password_reset_email(self, to_email: str, name: str, link: str) -> None:
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.password_reset.append((to_email, name, link))


class StubIdentityValidator:
    provider = "google"

    def __init__(self) -> None:
        self.claims: dict[str, IdentityClaim] = {}

    def validate(self, id_token: str) -> IdentityClaim | None:
        return self.claims.get(id_token)


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret="identity-service-test-secret-0123456789",
        jwt_issuer="identity-tests",
        encryption_key="0123456789abcdef0123456789abcdef",
        encryption_iv="fedcba9876543210",
        frontend_base_url="https://app.example.com/",
        refresh_cookie_secure=False,
    )


@pytest.fixture
def repository() -> FakeAccountRepository:
    return FakeAccountRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def identity_validator() -> StubIdentityValidator:
    return StubIdentityValidator()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def cipher(settings: Settings) -> AesCbcCipher:
    return AesCbcCipher(settings.encryption_key, settings.encryption_iv)


@pytest.fixture
def signer(settings: Settings) -> TokenSigner:
    return TokenSigner(
        secret=settings.jwt_secret,
        issuer=settings.jwt_issuer,
        ttl_seconds=settings.access_token_ttl_seconds,
    )


@pytest.fixture
def service(
    repository, settings, cipher, signer, notifier, identity_validator, clock
) -> AuthService:
    return AuthService(
        repository,
        settings=settings,
        cipher=cipher,
        signer=signer,
        notifier=notifier,
        identity_validators=[identity_validator],
        clock=clock,
    )


@pytest.fixture
def api_client(service, settings, signer):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.auth_service = service
    app.state.settings = settings
    app.state.token_signer = signer
    app.state.rate_limiter = SlidingWindowRateLimiter(max_requests=100, window_seconds=60)

    with TestClient(app) as client:
        yield client
