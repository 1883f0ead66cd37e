"""HTTP route definitions for the identity service."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from ..config import Settings
from ..domain.account import Account
from ..domain.contracts import RegisterAccountInput, TokenPair
from ..domain.errors import AuthError, AuthErrorCode
from ..domain.service import AuthService
from ..security.rate_limiter import RateLimiter
from ..security.tokens import TokenSigner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth")

_ERROR_STATUS: dict[AuthErrorCode, int] = {
    AuthErrorCode.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.UNSUPPORTED_PROVIDER: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.INVALID_EXTERNAL_TOKEN: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.INVALID_REFRESH_TOKEN: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.EXPIRED_REFRESH_TOKEN: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.INVALID_VERIFICATION_TOKEN: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.INVALID_RESET_TOKEN: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.EXPIRED_RESET_TOKEN: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.PASSWORD_CHANGE_NOT_ALLOWED: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AuthErrorCode.DECRYPTION_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"


class RegisterRequest(BaseModel):
    """Payload accepted when registering a password-backed account."""

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    tax_id: str | None = Field(default=None, max_length=20)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class ExternalLoginRequest(BaseModel):
    """Provider name and the ID token it issued to the client."""

    provider: str = Field(..., min_length=1)
    id_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Reset token from the emailed link plus the new password, typed twice."""

    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1)
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Las contraseñas no coinciden.")
        return self


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str


class TokenResponse(BaseModel):
    """Access token body; the refresh token travels in an HttpOnly cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class ProfileResponse(BaseModel):
    """Serialised representation of an `Account` aggregate without secrets."""

    account_id: str
    email: EmailStr
    name: str
    phone: str
    tax_id: str | None
    role: str
    avatar_url: str | None
    email_verified: bool
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "ProfileResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
            phone=account.phone,
            tax_id=account.tax_id,
            role=account.role.value,
            avatar_url=account.avatar_url,
            email_verified=account.email_verified,
            created_at=account.created_at,
        )


def get_service(request: Request) -> AuthService:
    """Resolve the `AuthService` stored on the FastAPI application state."""
    service: AuthService = request.app.state.auth_service
    return service


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter: RateLimiter = request.app.state.rate_limiter
    return limiter


def get_current_account_id(
    request: Request,
    authorization: str | None = Header(default=None),
) -> str:
    """Return the subject of a valid bearer access token or answer 401."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing bearer token")
    signer: TokenSigner = request.app.state.token_signer
    try:
        claims = signer.decode_access_token(authorization[7:].strip())
    except jwt.PyJWTError as exc:
        logger.info("access token rejected: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid access token") from exc
    return str(claims["sub"])


def _enforce_rate_limit(limiter: RateLimiter, request: Request, flow: str, subject: str = "") -> None:
    client = request.client.host if request.client else "unknown"
    digest = hashlib.sha256(subject.lower().encode("utf-8")).hexdigest()[:12] if subject else "-"
    decision = limiter.hit(f"{flow}:{client}:{digest}")
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limited",
            headers={"Retry-After": str(decision.retry_after)},
        )


def _http_error_from_auth_error(exc: AuthError) -> HTTPException:
    status_code = _ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("authentication flow failed: %s", exc.code.value)
    return HTTPException(status_code=status_code, detail=exc.message)


def _token_response(response: Response, tokens: TokenPair, settings: Settings) -> TokenResponse:
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=tokens.refresh_token,
        max_age=tokens.refresh_expires_in,
        path="/",
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
    )
    return TokenResponse(access_token=tokens.access_token, expires_in=tokens.access_expires_in)


@router.post("/register", response_model=MessageResponse)
def register(
    request: Request,
    payload: RegisterRequest,
    service: AuthService = Depends(get_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> MessageResponse:
    """Register an account; the answer is the same whether or not the email exists."""
    _enforce_rate_limit(limiter, request, "register")
    result = service.register(
        RegisterAccountInput(
            name=payload.name,
            email=payload.email,
            password=payload.password,
            phone=payload.phone,
            tax_id=payload.tax_id,
        )
    )
    return MessageResponse(message=result.message)


@router.post("/login", response_model=TokenResponse)
def login(
    request: Request,
    response: Response,
    payload: LoginRequest,
    service: AuthService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TokenResponse:
    _enforce_rate_limit(limiter, request, "login", payload.email)
    try:
        tokens = service.login(payload.email, payload.password)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return _token_response(response, tokens, settings)


@router.post("/external-login", response_model=TokenResponse)
def external_login(
    request: Request,
    response: Response,
    payload: ExternalLoginRequest,
    service: AuthService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TokenResponse:
    _enforce_rate_limit(limiter, request, "external-login")
    try:
        tokens = service.external_login(payload.provider, payload.id_token)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return _token_response(response, tokens, settings)


@router.post("/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    response: Response,
    service: AuthService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TokenResponse:
    """Rotate the refresh token carried in the cookie and issue a new access token."""
    refresh_token = request.cookies.get(settings.refresh_cookie_name)
    if not refresh_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No se encontró el token de refresco en las cookies.",
        )
    _enforce_rate_limit(limiter, request, "refresh", refresh_token)
    try:
        tokens = service.refresh(refresh_token)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return _token_response(response, tokens, settings)


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    service: AuthService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> MessageResponse:
    service.logout(request.cookies.get(settings.refresh_cookie_name))
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path="/",
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
    )
    return MessageResponse(message="Sesión cerrada correctamente.")


@router.get("/verify-email", response_model=MessageResponse)
def verify_email(token: str, service: AuthService = Depends(get_service)) -> MessageResponse:
    try:
        result = service.verify_email(token)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return MessageResponse(message=result.message)


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    payload: ForgotPasswordRequest,
    service: AuthService = Depends(get_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> MessageResponse:
    _enforce_rate_limit(limiter, request, "forgot-password", payload.email)
    result = service.forgot_password(payload.email)
    return MessageResponse(message=result.message)


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(
    request: Request,
    payload: ResetPasswordRequest,
    service: AuthService = Depends(get_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> MessageResponse:
    _enforce_rate_limit(limiter, request, "reset-password")
    try:
        result = service.reset_password(payload.token, payload.new_password)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return MessageResponse(message=result.message)


@router.get("/me", response_model=ProfileResponse)
def get_profile(
    account_id: str = Depends(get_current_account_id),
    service: AuthService = Depends(get_service),
) -> ProfileResponse:
    try:
        account = service.get_profile(account_id)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return ProfileResponse.from_domain(account)


@router.post("/me/password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    account_id: str = Depends(get_current_account_id),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    try:
        result = service.change_password(account_id, payload.current_password, payload.new_password)
    except AuthError as exc:
        raise _http_error_from_auth_error(exc) from exc
    return MessageResponse(message=result.message)
