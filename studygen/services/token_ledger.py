"""Token balances, costs and atomic charging."""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.config import Settings, get_settings
from studygen.db.models import TokenBalance, utcnow

logger = logging.getLogger(__name__)


def calculate_token_cost(language: str, study_mode: str, settings: Optional[Settings] = None) -> int:
    """Tokens charged for one study guide, e.g. Hindi deep = ceil(15 * 1.5) = 23."""
    settings = settings or get_settings()
    base = settings.language_token_costs.get(language, settings.default_token_cost)
    multiplier = settings.mode_cost_multipliers.get(study_mode, 1.0)
    return math.ceil(round(base * multiplier, 6))


def _owner(identity: CallerIdentity) -> tuple:
    return (
        TokenBalance.identifier == identity.caller_id,
        TokenBalance.identifier_type == identity.caller_type,
    )


@dataclass
class ChargeResult:
    success: bool
    tokens_charged: int = 0
    remaining: Optional[int] = None  # None for unlimited plans
    error_message: Optional[str] = None


class DatabaseTokenLedger:
    """Token ledger backed by the ``token_balances`` table."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_unlimited(self, plan: str) -> bool:
        return plan in self.settings.unlimited_plans

    def daily_limit(self, plan: str) -> int:
        return self.settings.plan_daily_limits.get(plan, self.settings.plan_daily_limits["free"])

    async def _ensure_balance(self, db: AsyncSession, identity: CallerIdentity) -> None:
        """Create the balance row on first use and apply the daily reset."""
        limit = self.daily_limit(identity.plan)
        today = utcnow().date()

        existing = await db.get(TokenBalance, (identity.caller_id, identity.caller_type))
        if existing is None:
            try:
                async with db.begin_nested():
                    db.add(
                        TokenBalance(
                            identifier=identity.caller_id,
                            identifier_type=identity.caller_type,
                            plan=identity.plan,
                            daily_tokens=limit,
                            daily_limit=limit,
                            last_reset=today,
                        )
                    )
                    await db.flush()
                return
            except IntegrityError:
                logger.debug(f"Balance for {identity.caller_id} created concurrently")

        await db.execute(
            update(TokenBalance)
            .where(*_owner(identity), TokenBalance.last_reset < today)
            .values(
                daily_tokens=limit,
                daily_limit=limit,
                plan=identity.plan,
                total_consumed_today=0,
                last_reset=today,
            )
            .execution_options(synchronize_session=False)
        )

    async def get_balance(self, db: AsyncSession, identity: CallerIdentity) -> dict:
        """Current balance for the caller."""
        if self.is_unlimited(identity.plan):
            return {
                "plan": identity.plan,
                "unlimited": True,
                "daily_tokens": None,
                "purchased_tokens": None,
                "daily_limit": None,
                "total_tokens": None,
            }

        await self._ensure_balance(db, identity)
        result = await db.execute(
            select(
                TokenBalance.daily_tokens,
                TokenBalance.purchased_tokens,
                TokenBalance.daily_limit,
            ).where(*_owner(identity))
        )
        daily, purchased, limit = result.one()
        return {
            "plan": identity.plan,
            "unlimited": False,
            "daily_tokens": daily,
            "purchased_tokens": purchased,
            "daily_limit": limit,
            "total_tokens": daily + purchased,
        }

    async def charge(
        self,
        db: AsyncSession,
        identity: CallerIdentity,
        amount: int,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        """
        Atomically consume ``amount`` tokens, daily tokens first.

        The balance check and the deduction are one conditional UPDATE, so two
        concurrent charges can never overdraw the balance.
        """
        if self.is_unlimited(identity.plan):
            return ChargeResult(success=True, tokens_charged=0)
        if amount <= 0:
            return ChargeResult(success=True, tokens_charged=0)

        await self._ensure_balance(db, identity)

        daily = TokenBalance.daily_tokens
        purchased = TokenBalance.purchased_tokens
        result = await db.execute(
            update(TokenBalance)
            .where(*_owner(identity), daily + purchased >= amount)
            .values(
                daily_tokens=case((daily >= amount, daily - amount), else_=0),
                purchased_tokens=case((daily >= amount, purchased), else_=purchased - (amount - daily)),
                total_consumed_today=TokenBalance.total_consumed_today + amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        remaining = (
            await db.execute(
                select(daily + purchased).where(*_owner(identity))
            )
        ).scalar_one()

        if result.rowcount == 0:
            logger.info(
                f"Insufficient tokens for {identity.caller_type.value} caller: "
                f"required={amount} available={remaining}"
            )
            return ChargeResult(
                success=False,
                remaining=remaining,
                error_message=f"Insufficient tokens. Required: {amount}, Available: {remaining}",
            )

        logger.info(
            f"Charged {amount} tokens ({(metadata or {}).get('operation', 'study_generation')}), "
            f"remaining={remaining}"
        )
        return ChargeResult(success=True, tokens_charged=amount, remaining=remaining)

    async def add_tokens(self, db: AsyncSession, identity: CallerIdentity, amount: int) -> int:
        """Add purchased tokens and return the new total balance."""
        await self._ensure_balance(db, identity)
        await db.execute(
            update(TokenBalance)
            .where(*_owner(identity))
            .values(purchased_tokens=TokenBalance.purchased_tokens + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        total = (
            await db.execute(
                select(TokenBalance.daily_tokens + TokenBalance.purchased_tokens).where(
                    *_owner(identity)
                )
            )
        ).scalar_one()
        return total
