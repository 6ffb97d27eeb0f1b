"""Tests for token costs, the token ledger and the cache resolver."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from fakes import guide_payload, make_request
from studygen.auth.identity import CallerIdentity
from studygen.config import Settings
from studygen.db.models import Plan, StudyMode, TokenBalance, UserStudyGuide, utcnow
from studygen.errors import BillingInsufficientError
from studygen.services.cache_resolver import (
    CacheHitKind,
    CacheResolver,
    is_recorded_creator,
    legacy_content_is_free,
)
from studygen.services.content_store import content_store
from studygen.services.token_ledger import DatabaseTokenLedger, calculate_token_cost


@pytest.fixture
def ledger(settings) -> DatabaseTokenLedger:
    return DatabaseTokenLedger(settings)


@pytest.mark.parametrize(
    "language,mode,expected",
    [
        ("en", "standard", 10),
        ("en", "quick", 5),
        ("en", "lectio", 12),
        ("en", "sermon", 20),
        ("hi", "quick", 8),
        ("hi", "deep", 23),
        ("ml", "standard", 15),
        ("fr", "standard", 10),
    ],
)
def test_calculate_token_cost(language, mode, expected):
    assert calculate_token_cost(language, mode, Settings()) == expected


@pytest.mark.asyncio
async def test_new_balance_starts_at_plan_limit(db_session, ledger):
    balance = await ledger.get_balance(db_session, CallerIdentity.user("u", Plan.STANDARD.value))

    assert balance["daily_tokens"] == 20
    assert balance["purchased_tokens"] == 0
    assert balance["total_tokens"] == 20
    assert balance["unlimited"] is False


@pytest.mark.asyncio
async def test_charge_uses_daily_then_purchased(db_session, ledger):
    caller = CallerIdentity.session("anon-session-0001")  # free plan, 8 daily
    await ledger.add_tokens(db_session, caller, 10)

    result = await ledger.charge(db_session, caller, 5)
    assert result.success
    assert result.tokens_charged == 5
    assert result.remaining == 13

    result = await ledger.charge(db_session, caller, 10)
    assert result.success
    assert result.remaining == 3

    balance = await ledger.get_balance(db_session, caller)
    assert balance["daily_tokens"] == 0
    assert balance["purchased_tokens"] == 3


@pytest.mark.asyncio
async def test_charge_insufficient_leaves_balance_untouched(db_session, ledger):
    caller = CallerIdentity.session("anon-session-0001")

    result = await ledger.charge(db_session, caller, 10)

    assert not result.success
    assert result.tokens_charged == 0
    assert result.error_message == "Insufficient tokens. Required: 10, Available: 8"
    assert (await ledger.get_balance(db_session, caller))["total_tokens"] == 8


@pytest.mark.asyncio
async def test_unlimited_plan_is_never_charged(db_session, ledger):
    caller = CallerIdentity.user("vip", Plan.PREMIUM.value)

    result = await ledger.charge(db_session, caller, 1000)

    assert result.success
    assert result.tokens_charged == 0
    assert (await ledger.get_balance(db_session, caller))["unlimited"] is True
    count = (await db_session.execute(select(func.count()).select_from(TokenBalance))).scalar_one()
    assert count == 0


@pytest.mark.asyncio
async def test_daily_tokens_reset_on_new_day(db_session, ledger):
    caller = CallerIdentity.user("u", Plan.FREE.value)
    await ledger.charge(db_session, caller, 8)
    await db_session.execute(
        update(TokenBalance)
        .where(TokenBalance.identifier == "u")
        .values(last_reset=utcnow().date() - timedelta(days=1))
    )

    balance = await ledger.get_balance(db_session, caller)

    assert balance["daily_tokens"] == 8


class TestCacheResolver:
    @pytest.fixture
    def resolver(self, ledger) -> CacheResolver:
        return CacheResolver(ledger)

    async def _store(self, db, creator, **overrides):
        request = make_request(**overrides)
        guide, _ = await content_store.find_or_create(db, request.key, guide_payload(), creator)
        return request.key, guide

    @pytest.mark.asyncio
    async def test_miss(self, db_session, resolver, user):
        resolution = await resolver.resolve(db_session, make_request().key, user)

        assert resolution.kind == CacheHitKind.MISS
        assert not resolution.is_hit
        assert resolution.guide is None

    @pytest.mark.asyncio
    async def test_creator_hit_is_free(self, db_session, resolver, user, ledger):
        key, guide = await self._store(db_session, user)

        resolution = await resolver.resolve(db_session, key, user)

        assert resolution.kind == CacheHitKind.CREATOR_HIT
        assert resolution.tokens_charged == 0
        assert resolution.guide.id == guide.id
        assert (await ledger.get_balance(db_session, user))["total_tokens"] == 50

    @pytest.mark.asyncio
    async def test_legacy_content_is_free(self, db_session, resolver, user):
        key, _ = await self._store(db_session, None)

        resolution = await resolver.resolve(db_session, key, user)

        assert resolution.kind == CacheHitKind.CREATOR_HIT
        assert resolution.tokens_charged == 0

    @pytest.mark.asyncio
    async def test_non_creator_is_charged_and_gains_ownership(
        self, db_session, resolver, user, other_user, ledger
    ):
        key, guide = await self._store(db_session, user, language="hi", study_mode=StudyMode.DEEP)

        resolution = await resolver.resolve(db_session, key, other_user)

        assert resolution.kind == CacheHitKind.NON_CREATOR_HIT
        assert resolution.tokens_charged == 23
        assert (await ledger.get_balance(db_session, other_user))["total_tokens"] == 27
        ownership = await db_session.execute(
            select(UserStudyGuide).where(UserStudyGuide.caller_id == other_user.caller_id)
        )
        assert ownership.scalar_one().study_guide_id == guide.id

    @pytest.mark.asyncio
    async def test_anonymous_session_is_not_the_user_creator(self, db_session, resolver, user):
        key, _ = await self._store(db_session, user, study_mode=StudyMode.QUICK)
        anon = CallerIdentity.session("user-1")

        resolution = await resolver.resolve(db_session, key, anon)

        assert resolution.kind == CacheHitKind.NON_CREATOR_HIT
        assert resolution.tokens_charged == 5

    @pytest.mark.asyncio
    async def test_insufficient_tokens_raise_without_ownership(self, db_session, resolver, user):
        key, _ = await self._store(db_session, user)
        poor = CallerIdentity.session("anon-session-0001")  # 8 tokens, guide costs 10

        with pytest.raises(BillingInsufficientError) as exc:
            await resolver.resolve(db_session, key, poor)

        assert exc.value.required == 10
        assert exc.value.available == 8
        assert exc.value.retryable is False
        ownership = await db_session.execute(
            select(UserStudyGuide).where(UserStudyGuide.caller_id == poor.caller_id)
        )
        assert ownership.scalar_one_or_none() is None

    @pytest.mark.asyncio
    async def test_strict_policy_charges_legacy_content(self, db_session, ledger, user):
        resolver = CacheResolver(ledger, creator_policy=is_recorded_creator)
        key, _ = await self._store(db_session, None)

        resolution = await resolver.resolve(db_session, key, user)

        assert resolution.kind == CacheHitKind.NON_CREATOR_HIT
        assert resolution.tokens_charged == 10


@pytest.mark.asyncio
async def test_creator_policies(db_session, user, other_user):
    guide, _ = await content_store.find_or_create(
        db_session, make_request().key, guide_payload(), user
    )

    assert legacy_content_is_free(guide, user)
    assert not legacy_content_is_free(guide, other_user)
    assert is_recorded_creator(guide, user)
    assert not is_recorded_creator(guide, CallerIdentity.session("user-1"))
