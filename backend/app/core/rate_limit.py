"""
Rate Limiting Middleware

Every submitted query fans out to several paid provider APIs, so
submission is limited much harder than reads.
Uses Redis for distributed rate limiting when available.
"""
import redis
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.core.config import Settings, settings
from app.core.logging import get_logger

logger = get_logger(__name__)

USER_HEADER = "X-User-Id"


def _get_identifier(request: Request) -> str:
    """
    Rate-limit key: the caller's user id when sent, else the client IP
    (first hop of X-Forwarded-For behind a proxy).
    """
    user_id = request.headers.get(USER_HEADER)
    if user_id:
        return f"user:{user_id}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return get_remote_address(request)


def _get_storage_uri(config: Settings) -> str:
    """Redis if it answers a ping, else per-process memory."""
    redis_uri = f"redis://{config.REDIS_HOST}:{config.REDIS_PORT}"

    try:
        client = redis.from_url(redis_uri, socket_connect_timeout=2)
        client.ping()
        logger.info("Rate limiter using Redis storage")
        return redis_uri
    except (redis.ConnectionError, redis.TimeoutError):
        logger.warning("Redis not available for rate limiting, using in-memory storage")
        return "memory://"


def build_limiter(config: Settings) -> Limiter:
    return Limiter(
        key_func=_get_identifier,
        storage_uri=_get_storage_uri(config),
        default_limits=["120/minute"],
        strategy="fixed-window"
    )


limiter = build_limiter(settings)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with a Retry-After header."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": f"Too many requests. {exc.detail}",
            "retry_after": retry_after
        },
        headers={"Retry-After": str(retry_after)}
    )


QUERY_SUBMIT_LIMIT = "10/minute"
QUERY_GET_LIMIT = "60/minute"
QUERY_CANCEL_LIMIT = "20/minute"
CREDENTIAL_LIMIT = "5/minute"
