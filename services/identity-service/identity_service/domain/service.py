"""Authentication service orchestrating credentials, token issuance, and auditing."""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator
from urllib.parse import quote_plus, unquote_plus

from .. import metrics
from ..config import Settings
from ..notifications import NotificationSink, redact_email
from ..repository import AccountRepository, AccountUnitOfWork
from ..security.cipher import AesCbcCipher
from ..security.external import ExternalIdentityValidator
from ..security.tokens import TokenSigner, generate_opaque_token, hash_token
from .account import Account
from .contracts import AuthResult, IdentityClaim, RegisterAccountInput, TokenPair
from .errors import (
    AccountNotFound,
    AuthError,
    DuplicateAccountError,
    ExpiredRefreshToken,
    ExpiredResetToken,
    InvalidCredentials,
    InvalidExternalToken,
    InvalidRefreshToken,
    InvalidResetToken,
    InvalidVerificationToken,
    PasswordChangeNotAllowed,
    UnsupportedProvider,
)

logger = logging.getLogger(__name__)

REGISTER_MESSAGE = "Si el correo es válido, recibirás un enlace de confirmación."
FORGOT_PASSWORD_MESSAGE = (
    "Si existe una cuenta con ese correo, se ha enviado un enlace para restablecer la contraseña."
)
EMAIL_VERIFIED_MESSAGE = "Email verificado exitosamente."
PASSWORD_RESET_MESSAGE = "Contraseña restablecida exitosamente."
PASSWORD_CHANGED_MESSAGE = "Contraseña actualizada exitosamente."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _secrets_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def _token_candidates(token: str) -> Iterator[str]:
    """Yield the URL-decoded form of ``token`` first, then the raw form when it differs."""
    decoded = unquote_plus(token)
    yield decoded
    if decoded != token:
        yield token


class AuthService:
    """Registration, login, token rotation, and recovery workflows.

    Each workflow runs inside a single repository unit of work; notifications
    are sent only after that transaction has committed and never affect the
    workflow's outcome.
    """

    def __init__(
        self,
        repository: AccountRepository,
        *,
        settings: Settings,
        cipher: AesCbcCipher,
        signer: TokenSigner,
        notifier: NotificationSink,
        identity_validators: Iterable[ExternalIdentityValidator] = (),
        clock: Callable[[], datetime] = _utcnow,
        token_factory: Callable[[], str] = generate_opaque_token,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._signer = signer
        self._notifier = notifier
        self._validators = {validator.provider.lower(): validator for validator in identity_validators}
        self._clock = clock
        self._token_factory = token_factory
        self._frontend_base_url = settings.frontend_base_url.rstrip("/")
        self._refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self._password_reset_ttl = timedelta(seconds=settings.password_reset_ttl_seconds)

    def register(self, payload: RegisterAccountInput) -> AuthResult:
        """Create an unverified account and send its verification link.

        The result is identical whether or not the email is already registered.
        """
        verification_token = self._token_factory()
        try:
            with self._repository.unit_of_work() as uow:
                if uow.exists_by_email(payload.email):
                    logger.info("registration ignored for existing email %s", redact_email(payload.email))
                    metrics.record("register", "existing")
                    return AuthResult.ok(REGISTER_MESSAGE)

                account = Account.new(
                    name=payload.name,
                    email=payload.email,
                    phone=payload.phone,
                    tax_id=payload.tax_id,
                    created_at=self._clock(),
                )
                account.set_password_cipher(self._cipher.encrypt(payload.password))
                account.begin_email_verification(hash_token(verification_token))
                uow.add(account)
                uow.write_audit_event(
                    account_id=account.account_id,
                    event_type="account.registered",
                    actor=account.account_id,
                )
        except DuplicateAccountError as exc:
            logger.info("registration collided on %s", exc.constraint)
            metrics.record("register", "existing")
            return AuthResult.ok(REGISTER_MESSAGE)

        metrics.record("register", "created")
        self._send_verification_link(account, verification_token)
        return AuthResult.ok(REGISTER_MESSAGE)

    def login(self, email: str, password: str) -> TokenPair:
        """Authenticate with email and password and issue a fresh token pair."""
        with self._repository.unit_of_work() as uow:
            account = uow.find_by_email(email)
            if account is None or account.is_federated_only:
                raise self._failure("login", InvalidCredentials())

            stored_password = self._cipher.decrypt(account.password_cipher)
            if not _secrets_equal(stored_password, password):
                raise self._failure("login", InvalidCredentials())

            tokens = self._issue_tokens(uow, account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="auth.login",
                actor=account.account_id,
            )

        metrics.record("login", "success")
        return tokens

    def external_login(self, provider: str, id_token: str) -> TokenPair:
        """Authenticate with a provider-issued ID token, creating the account on first use."""
        validator = self._validators.get((provider or "").lower())
        if validator is None:
            raise self._failure("external_login", UnsupportedProvider(provider))

        claim = validator.validate(id_token)
        if claim is None:
            raise self._failure("external_login", InvalidExternalToken())

        try:
            tokens = self._external_login(claim)
        except DuplicateAccountError:
            # A concurrent first login created the account; the retry finds it.
            logger.info("external account creation raced for %s", redact_email(claim.email))
            tokens = self._external_login(claim)

        metrics.record("external_login", "success")
        return tokens

    def _external_login(self, claim: IdentityClaim) -> TokenPair:
        with self._repository.unit_of_work() as uow:
            account = uow.find_by_email(claim.email)
            if account is None:
                account = Account.new(
                    name=(claim.name or "").strip() or claim.email,
                    email=claim.email,
                    phone="",
                    created_at=self._clock(),
                )
                account.set_avatar_url(claim.picture_url)
                account.mark_email_verified()
                uow.add(account)
                uow.write_audit_event(
                    account_id=account.account_id,
                    event_type="account.external_created",
                    actor=account.account_id,
                    metadata={"provider": claim.provider},
                )

            tokens = self._issue_tokens(uow, account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="auth.external_login",
                actor=account.account_id,
                metadata={"provider": claim.provider, "subject": claim.subject},
            )
        return tokens

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, rotating the stored refresh token.

        Parameters
        ----------
        refresh_token:
            Raw refresh token obtained from a previous login or refresh.
        """
        if not refresh_token:
            raise self._failure("refresh", InvalidRefreshToken())

        with self._repository.unit_of_work() as uow:
            account = uow.find_by_refresh_token(hash_token(refresh_token))
            if account is None:
                raise self._failure("refresh", InvalidRefreshToken())
            if account.refresh_token_expired(self._clock()):
                raise self._failure("refresh", ExpiredRefreshToken())

            tokens = self._issue_tokens(uow, account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="token.refreshed",
                actor=account.account_id,
            )

        metrics.record("refresh", "success")
        return tokens

    def logout(self, refresh_token: str | None) -> None:
        """Revoke the presented refresh token; unknown tokens are ignored."""
        if not refresh_token:
            return
        with self._repository.unit_of_work() as uow:
            account = uow.find_by_refresh_token(hash_token(refresh_token))
            if account is None:
                return
            account.revoke_refresh_token()
            uow.save(account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="token.revoked",
                actor=account.account_id,
            )
        metrics.record("logout", "success")

    def verify_email(self, token: str) -> AuthResult:
        """Consume an email verification token and mark the account verified."""
        with self._repository.unit_of_work() as uow:
            account = self._find_by_token(uow.find_by_verification_token, token)
            if account is None:
                raise self._failure("verify_email", InvalidVerificationToken())

            account.mark_email_verified()
            uow.save(account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="email.verified",
                actor=account.account_id,
            )

        metrics.record("verify_email", "success")
        return AuthResult.ok(EMAIL_VERIFIED_MESSAGE)

    def forgot_password(self, email: str) -> AuthResult:
        """Issue a one-hour reset token when the account exists; the answer never says whether it does."""
        reset_token = self._token_factory()
        recipient: Account | None = None
        with self._repository.unit_of_work() as uow:
            account = uow.find_by_email(email)
            if account is not None and account.is_federated_only:
                logger.info("password reset skipped for federated account %s", account.account_id)
            elif account is not None:
                account.begin_password_reset(hash_token(reset_token), self._clock() + self._password_reset_ttl)
                uow.save(account)
                uow.write_audit_event(
                    account_id=account.account_id,
                    event_type="password.reset_requested",
                    actor=account.account_id,
                )
                recipient = account

        if recipient is None:
            metrics.record("forgot_password", "ignored")
        else:
            metrics.record("forgot_password", "issued")
            self._send_password_reset_link(recipient, reset_token)
        return AuthResult.ok(FORGOT_PASSWORD_MESSAGE)

    def reset_password(self, token: str, new_password: str) -> AuthResult:
        """Replace the password using a reset token.

        An expired token is rejected but left stored until a new reset request
        overwrites it.
        """
        with self._repository.unit_of_work() as uow:
            account = self._find_by_token(uow.find_by_reset_token, token)
            if account is None or account.is_federated_only:
                raise self._failure("reset_password", InvalidResetToken())
            if account.password_reset_expired(self._clock()):
                raise self._failure("reset_password", ExpiredResetToken())

            account.set_password_cipher(self._cipher.encrypt(new_password))
            account.clear_password_reset()
            uow.save(account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="password.reset",
                actor=account.account_id,
            )

        metrics.record("reset_password", "success")
        return AuthResult.ok(PASSWORD_RESET_MESSAGE)

    def get_profile(self, account_id: str) -> Account:
        with self._repository.unit_of_work() as uow:
            account = uow.find_by_id(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def change_password(self, account_id: str, current_password: str, new_password: str) -> AuthResult:
        """Replace the password of a password-backed account after checking the current one."""
        with self._repository.unit_of_work() as uow:
            account = uow.find_by_id(account_id)
            if account is None:
                raise self._failure("change_password", AccountNotFound(account_id))
            if account.is_federated_only:
                raise self._failure("change_password", PasswordChangeNotAllowed())

            stored_password = self._cipher.decrypt(account.password_cipher)
            if not _secrets_equal(stored_password, current_password):
                raise self._failure(
                    "change_password", InvalidCredentials("La contraseña actual es incorrecta.")
                )

            account.set_password_cipher(self._cipher.encrypt(new_password))
            uow.save(account)
            uow.write_audit_event(
                account_id=account.account_id,
                event_type="password.changed",
                actor=account.account_id,
            )

        metrics.record("change_password", "success")
        return AuthResult.ok(PASSWORD_CHANGED_MESSAGE)

    def _issue_tokens(self, uow: AccountUnitOfWork, account: Account) -> TokenPair:
        access_token, access_expires_in = self._signer.issue_access_token(account)
        refresh_token = self._token_factory()
        account.rotate_refresh_token(hash_token(refresh_token), self._clock() + self._refresh_ttl)
        uow.save(account)
        return TokenPair(
            access_token=access_token,
            access_expires_in=access_expires_in,
            refresh_token=refresh_token,
            refresh_expires_in=int(self._refresh_ttl.total_seconds()),
        )

    @staticmethod
    def _find_by_token(finder: Callable[[str], Account | None], token: str) -> Account | None:
        if not token:
            return None
        for candidate in _token_candidates(token):
            account = finder(hash_token(candidate))
            if account is not None:
                return account
        return None

    @staticmethod
    def _failure(flow: str, error: AuthError) -> AuthError:
        metrics.record(flow, error.code.value)
        return error

    def _send_verification_link(self, account: Account, token: str) -> None:
        link = f"{self._frontend_base_url}/verify-email?token={quote_plus(token, safe='')}"
        try:
            self._notifier.send_verification_email(account.email, account.name, link)
        except Exception:
            logger.exception("verification email delivery failed for %s", redact_email(account.email))

    def _send_password_reset_link(self, account: Account, token: str) -> None:
        link = f"{self._frontend_base_url}/reset-password?token={quote_plus(token, safe='')}"
        try:
            self._notifier.send_password_reset_email(account.email, account.name, link)
        except Exception:
            logger.exception("password reset email delivery failed for %s", redact_email(account.email))
