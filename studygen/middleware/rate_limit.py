"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from studygen.config import get_settings

settings = get_settings()


def get_caller_or_ip(request: Request) -> str:
    """
    Get rate limit key from the caller identity or IP address.

    Uses the user or session id once auth has run, falls back to IP address.
    """
    caller = getattr(request.state, "caller", None)
    if caller is not None:
        return f"{caller.caller_type.value}:{caller.caller_id}"

    return f"ip:{get_remote_address(request)}"


# Create limiter with Redis storage
limiter = Limiter(
    key_func=get_caller_or_ip,
    storage_uri=settings.limiter_storage_uri,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
)


def rate_limit_generation():
    """Rate limit for the study guide stream endpoint."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute}/minute",
        key_func=get_caller_or_ip,
    )


def rate_limit_general():
    """Rate limit for general endpoints."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute * 2}/minute",
        key_func=get_caller_or_ip,
    )
