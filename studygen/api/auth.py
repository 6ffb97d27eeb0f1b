"""API key and token management routes (admin)."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.auth.security import create_api_key
from studygen.config import get_settings
from studygen.db.models import ApiKey
from studygen.db.session import get_db
from studygen.schemas.schemas import (
    ApiKeyCreate,
    ApiKeyInfo,
    ApiKeyResponse,
    TokenBalanceResponse,
    TokenTopUp,
)
from studygen.services.token_ledger import DatabaseTokenLedger

router = APIRouter(prefix="/v1/admin", tags=["Admin"])

settings = get_settings()


def verify_admin_key(x_admin_key: Optional[str] = Header(None)):
    """Verify admin access using a secret key."""
    if not x_admin_key or x_admin_key != settings.secret_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )
    return True


async def _get_key_or_404(db: AsyncSession, key_id: str) -> ApiKey:
    result = await db.execute(select(ApiKey).where(ApiKey.id == key_id))
    api_key = result.scalar_one_or_none()
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"API key {key_id} not found",
        )
    return api_key


@router.post(
    "/api-keys",
    response_model=ApiKeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new API key",
    description="Create an API key bound to a user id and plan. Admin only.",
)
async def create_new_api_key(
    request: ApiKeyCreate,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """
    Create a new API key.

    **Important**: The full API key is only shown once in this response.
    Store it securely as it cannot be retrieved later.
    """
    api_key_model, full_key = await create_api_key(
        db,
        name=request.name,
        user_id=request.user_id,
        plan=request.plan,
        rate_limit_per_minute=request.rate_limit_per_minute,
        rate_limit_per_hour=request.rate_limit_per_hour,
        expires_in_days=request.expires_in_days,
    )
    await db.commit()

    return ApiKeyResponse(
        id=api_key_model.id,
        api_key=full_key,  # Only time this is shown
        key_prefix=api_key_model.key_prefix,
        name=api_key_model.name,
        user_id=api_key_model.user_id,
        plan=api_key_model.plan,
        rate_limit_per_minute=api_key_model.rate_limit_per_minute,
        rate_limit_per_hour=api_key_model.rate_limit_per_hour,
        created_at=api_key_model.created_at,
        expires_at=api_key_model.expires_at,
    )


@router.get(
    "/api-keys",
    response_model=list[ApiKeyInfo],
    summary="List all API keys",
    description="List all API keys (without the actual key values). Admin only.",
)
async def list_api_keys(
    include_inactive: bool = Query(False, description="Include inactive keys"),
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """List all API keys."""
    query = select(ApiKey)
    if not include_inactive:
        query = query.where(ApiKey.is_active == True)  # noqa: E712

    query = query.order_by(ApiKey.created_at.desc())
    result = await db.execute(query)
    return [ApiKeyInfo.model_validate(k) for k in result.scalars().all()]


@router.get(
    "/api-keys/{key_id}",
    response_model=ApiKeyInfo,
    summary="Get API key details",
)
async def get_api_key(
    key_id: str,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Get API key details."""
    return ApiKeyInfo.model_validate(await _get_key_or_404(db, key_id))


@router.delete(
    "/api-keys/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke an API key",
    description="Deactivate an API key (soft delete). Admin only.",
)
async def revoke_api_key(
    key_id: str,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Revoke/deactivate an API key."""
    api_key = await _get_key_or_404(db, key_id)
    api_key.is_active = False
    await db.commit()


@router.post(
    "/tokens",
    response_model=TokenBalanceResponse,
    summary="Add purchased tokens",
    description="Credit purchased tokens to a user or session. Admin only.",
)
async def top_up_tokens(
    request: TokenTopUp,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Add purchased tokens to a balance."""
    if request.anonymous:
        identity = CallerIdentity.session(request.identifier)
    else:
        identity = CallerIdentity.user(request.identifier, request.plan.value)

    ledger = DatabaseTokenLedger(settings)
    await ledger.add_tokens(db, identity, request.amount)
    balance = await ledger.get_balance(db, identity)
    await db.commit()
    return TokenBalanceResponse(**balance)
