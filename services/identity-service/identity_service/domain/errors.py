"""Typed failures raised by the authentication workflows."""

from __future__ import annotations

from enum import Enum


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    INVALID_EXTERNAL_TOKEN = "invalid_external_token"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    EXPIRED_REFRESH_TOKEN = "expired_refresh_token"
    INVALID_VERIFICATION_TOKEN = "invalid_verification_token"
    INVALID_RESET_TOKEN = "invalid_reset_token"
    EXPIRED_RESET_TOKEN = "expired_reset_token"
    DECRYPTION_FAILED = "decryption_failed"
    ACCOUNT_NOT_FOUND = "account_not_found"
    PASSWORD_CHANGE_NOT_ALLOWED = "password_change_not_allowed"


class AuthError(Exception):
    """Base class for domain failures; each subclass pins one ``AuthErrorCode``."""

    code: AuthErrorCode
    default_message: str = "Operación no válida."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = AuthErrorCode.INVALID_CREDENTIALS
    default_message = "Credenciales inválidas."


class UnsupportedProvider(AuthError):
    code = AuthErrorCode.UNSUPPORTED_PROVIDER
    default_message = "Proveedor no soportado."

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__()


class InvalidExternalToken(AuthError):
    code = AuthErrorCode.INVALID_EXTERNAL_TOKEN
    default_message = "Token externo inválido."


class InvalidRefreshToken(AuthError):
    code = AuthErrorCode.INVALID_REFRESH_TOKEN
    default_message = "Refresh token inválido."


class ExpiredRefreshToken(AuthError):
    code = AuthErrorCode.EXPIRED_REFRESH_TOKEN
    default_message = "Refresh token expirado."


class InvalidVerificationToken(AuthError):
    code = AuthErrorCode.INVALID_VERIFICATION_TOKEN
    default_message = "Token de verificación inválido."


class InvalidResetToken(AuthError):
    code = AuthErrorCode.INVALID_RESET_TOKEN
    default_message = "El token de restablecimiento no es válido."


class ExpiredResetToken(AuthError):
    code = AuthErrorCode.EXPIRED_RESET_TOKEN
    default_message = "El token de restablecimiento ha expirado."


class DecryptionFailed(AuthError):
    code = AuthErrorCode.DECRYPTION_FAILED
    default_message = "No se pudo descifrar el dato almacenado."


class AccountNotFound(AuthError):
    code = AuthErrorCode.ACCOUNT_NOT_FOUND
    default_message = "Usuario no encontrado."

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__()


class PasswordChangeNotAllowed(AuthError):
    code = AuthErrorCode.PASSWORD_CHANGE_NOT_ALLOWED
    default_message = "No puedes cambiar la contraseña de una cuenta de inicio de sesión externo."


class DuplicateAccountError(Exception):
    """Raised by the store when an insert violates an account uniqueness constraint."""

    def __init__(self, constraint: str | None = None) -> None:
        self.constraint = constraint
        super().__init__(f"duplicate account ({constraint or 'unique constraint'})")
