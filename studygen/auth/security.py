"""Authentication: API keys for users, session ids for anonymous callers."""

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.db.models import ApiKey, Plan
from studygen.db.session import get_db

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

API_KEY_PREFIX = "sgk_"
API_KEY_LENGTH = len(API_KEY_PREFIX) + 32
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,100}$")


def generate_api_key() -> tuple[str, str]:
    """
    Generate a new API key.
    Returns: (full_key, prefix)
    Format: sgk_XXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX (32 hex chars after prefix)
    """
    random_part = secrets.token_hex(16)
    full_key = f"{API_KEY_PREFIX}{random_part}"
    prefix = full_key[:12]  # "sgk_" + first 8 chars
    return full_key, prefix


def hash_api_key(api_key: str) -> str:
    """Hash an API key for storage."""
    return pwd_context.hash(api_key)


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    """Verify an API key against its hash."""
    return pwd_context.verify(plain_key, hashed_key)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def get_api_key_from_db(
    db: AsyncSession, key_prefix: str, full_key: str
) -> Optional[ApiKey]:
    """Look up an API key by prefix and verify the full key."""
    result = await db.execute(
        select(ApiKey).where(
            ApiKey.key_prefix == key_prefix,
            ApiKey.is_active == True,  # noqa: E712
        )
    )
    for api_key in result.scalars().all():
        if api_key.expires_at and _as_aware(api_key.expires_at) < datetime.now(timezone.utc):
            continue
        if verify_api_key(full_key, api_key.key_hash):
            return api_key
    return None


async def get_caller_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    db: AsyncSession = Depends(get_db),
) -> CallerIdentity:
    """
    Resolve the caller.

    An API key (``Authorization: Bearer`` or ``X-API-Key``) identifies an
    authenticated user; otherwise ``X-Session-Id`` identifies an anonymous
    session on the free plan.
    """
    api_key_str = None

    if authorization:
        if authorization.startswith("Bearer "):
            api_key_str = authorization[7:]
        else:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authorization scheme. Use 'Bearer <api_key>'",
            )
    elif x_api_key:
        api_key_str = x_api_key

    if api_key_str:
        # Validate format
        if not api_key_str.startswith(API_KEY_PREFIX) or len(api_key_str) != API_KEY_LENGTH:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key format",
            )

        api_key = await get_api_key_from_db(db, api_key_str[:12], api_key_str)
        if api_key is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid or expired API key",
            )

        identity = CallerIdentity.user(api_key.user_id, api_key.plan.value)
        # Store in request state for the rate limiter
        request.state.api_key = api_key
        request.state.caller = identity
        return identity

    if x_session_id:
        if not SESSION_ID_PATTERN.match(x_session_id):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid session id",
            )
        identity = CallerIdentity.session(x_session_id)
        request.state.caller = identity
        return identity

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing credentials. Provide 'Authorization: Bearer <key>' or 'X-Session-Id'",
    )


async def create_api_key(
    db: AsyncSession,
    name: str,
    user_id: str,
    plan: Plan = Plan.FREE,
    rate_limit_per_minute: int = 30,
    rate_limit_per_hour: int = 300,
    expires_in_days: Optional[int] = None,
) -> tuple[ApiKey, str]:
    """
    Create a new API key.
    Returns: (ApiKey model, full_key_string)
    """
    full_key, prefix = generate_api_key()
    hashed = hash_api_key(full_key)

    expires_at = None
    if expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days)

    api_key = ApiKey(
        key_hash=hashed,
        key_prefix=prefix,
        name=name,
        user_id=user_id,
        plan=plan,
        rate_limit_per_minute=rate_limit_per_minute,
        rate_limit_per_hour=rate_limit_per_hour,
        expires_at=expires_at,
    )

    db.add(api_key)
    await db.flush()

    return api_key, full_key
