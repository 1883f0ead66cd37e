"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool
from redis import Redis

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.service import AuthService
from .notifications import LoggingNotificationSink, NotificationSink, SmtpNotificationSink
from .repository import AccountRepository
from .security.cipher import AesCbcCipher
from .security.external import ExternalIdentityValidator, GoogleIdentityValidator
from .security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from .security.redis_rate_limiter import RedisSlidingWindowRateLimiter
from .security.tokens import TokenSigner

logger = logging.getLogger(__name__)

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = Redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("rate limiter configured for redis backend")
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


def build_notifier(settings: Settings) -> NotificationSink:
    if settings.smtp_host:
        return SmtpNotificationSink.from_settings(settings)
    logger.warning("SMTP_HOST not set; notifications are written to the log")
    return LoggingNotificationSink()


def build_identity_validators(settings: Settings) -> list[ExternalIdentityValidator]:
    validators: list[ExternalIdentityValidator] = []
    if settings.google_client_id:
        validators.append(
            GoogleIdentityValidator(settings.google_client_id, jwks_url=settings.google_jwks_url)
        )
    else:
        logger.warning("GOOGLE_CLIENT_ID not set; google login is disabled")
    return validators


def build_auth_service(settings: Settings, repository: AccountRepository, signer: TokenSigner) -> AuthService:
    return AuthService(
        repository,
        settings=settings,
        cipher=AesCbcCipher(settings.encryption_key, settings.encryption_iv),
        signer=signer,
        notifier=build_notifier(settings),
        identity_validators=build_identity_validators(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    signer = TokenSigner(
        secret=settings.jwt_secret,
        issuer=settings.jwt_issuer,
        ttl_seconds=settings.access_token_ttl_seconds,
    )
    app.state.pool = pool
    app.state.settings = settings
    app.state.token_signer = signer
    app.state.rate_limiter = build_rate_limiter(settings)
    app.state.auth_service = build_auth_service(settings, AccountRepository(pool), signer)
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)


def run() -> None:
    """Serve the application with uvicorn on the configured address."""
    uvicorn.run(
        "identity_service.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
