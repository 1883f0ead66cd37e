"""Database repository for identity/account data."""

from __future__ import annotations

import hashlib
from contextlib import contextmanager
from typing import Any, Iterator

from psycopg import Cursor
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, Role
from .domain.errors import DuplicateAccountError

_ACCOUNT_COLUMNS = """
    account_id, email, name, phone, tax_id, password_cipher, role, avatar_url, created_at,
    email_verified, email_verification_token_hash, password_reset_token_hash,
    password_reset_expires_at, refresh_token_hash, refresh_token_expires_at
"""


def hash_email(email: str) -> bytes:
    """Normalise an email address and return its SHA-256 digest."""
    return hashlib.sha256(email.strip().lower().encode("utf-8")).digest()


class AccountUnitOfWork:
    """Account reads and writes bound to one open transaction.

    Every finder locks the matched row (``FOR UPDATE``) so concurrent flows on
    the same account serialise until this transaction ends.
    """

    def __init__(self, cursor: Cursor) -> None:
        self._cursor = cursor

    def find_by_id(self, account_id: str) -> Account | None:
        return self._find_one("account_id = %s", account_id)

    def find_by_email(self, email: str) -> Account | None:
        return self._find_one("email_hash = %s", hash_email(email))

    def find_by_verification_token(self, token_hash: str) -> Account | None:
        return self._find_one("email_verification_token_hash = %s", token_hash)

    def find_by_reset_token(self, token_hash: str) -> Account | None:
        return self._find_one("password_reset_token_hash = %s", token_hash)

    def find_by_refresh_token(self, token_hash: str) -> Account | None:
        return self._find_one("refresh_token_hash = %s", token_hash)

    def exists_by_email(self, email: str) -> bool:
        self._cursor.execute(
            "SELECT EXISTS (SELECT 1 FROM accounts WHERE email_hash = %s)",
            (hash_email(email),),
        )
        row = self._cursor.fetchone()
        return bool(row and row[0])

    def add(self, account: Account) -> None:
        """Insert a new account; uniqueness violations surface as ``DuplicateAccountError``."""
        try:
            self._cursor.execute(
                f"""
                INSERT INTO accounts (email_hash, updated_at, {_ACCOUNT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (hash_email(account.email), account.created_at, *self._values(account)),
            )
        except UniqueViolation as exc:
            raise DuplicateAccountError(exc.diag.constraint_name) from exc

    def save(self, account: Account) -> None:
        """Persist every mutable field of an existing account."""
        self._cursor.execute(
            """
            UPDATE accounts
            SET name = %s,
                phone = %s,
                tax_id = %s,
                password_cipher = %s,
                role = %s,
                avatar_url = %s,
                email_verified = %s,
                email_verification_token_hash = %s,
                password_reset_token_hash = %s,
                password_reset_expires_at = %s,
                refresh_token_hash = %s,
                refresh_token_expires_at = %s,
                updated_at = NOW()
            WHERE account_id = %s
            """,
            (
                account.name,
                account.phone,
                account.tax_id,
                account.password_cipher,
                account.role.value,
                account.avatar_url,
                account.email_verified,
                account.email_verification_token_hash,
                account.password_reset_token_hash,
                account.password_reset_expires_at,
                account.refresh_token_hash,
                account.refresh_token_expires_at,
                account.account_id,
            ),
        )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry inside the current transaction."""
        self._cursor.execute(
            """
            INSERT INTO identity_audit_log (account_id, event_type, actor, metadata)
            VALUES (%s, %s, %s, %s)
            """,
            (account_id, event_type, actor, Json(metadata or {})),
        )

    def _find_one(self, predicate: str, value: Any) -> Account | None:
        self._cursor.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {predicate} FOR UPDATE",
            (value,),
        )
        row = self._cursor.fetchone()
        if not row:
            return None
        return _map_record(row)

    @staticmethod
    def _values(account: Account) -> tuple[Any, ...]:
        return (
            account.account_id,
            account.email,
            account.name,
            account.phone,
            account.tax_id,
            account.password_cipher,
            account.role.value,
            account.avatar_url,
            account.created_at,
            account.email_verified,
            account.email_verification_token_hash,
            account.password_reset_token_hash,
            account.password_reset_expires_at,
            account.refresh_token_hash,
            account.refresh_token_expires_at,
        )


def _map_record(row: tuple) -> Account:
    """Convert a raw database tuple into the domain ``Account`` dataclass."""
    return Account(
        account_id=str(row[0]),
        email=row[1],
        name=row[2],
        phone=row[3],
        tax_id=row[4],
        password_cipher=row[5],
        role=Role(row[6]),
        avatar_url=row[7],
        created_at=row[8],
        email_verified=row[9],
        email_verification_token_hash=row[10],
        password_reset_token_hash=row[11],
        password_reset_expires_at=row[12],
        refresh_token_hash=row[13],
        refresh_token_expires_at=row[14],
    )


class AccountRepository:
    """Postgres-backed account persistence handing out one transaction per flow."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    @contextmanager
    def unit_of_work(self) -> Iterator[AccountUnitOfWork]:
        """Yield a unit of work that commits on success and rolls back on error."""
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=tuple_row) as cur:
                    yield AccountUnitOfWork(cur)
