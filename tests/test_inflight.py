"""Tests for the in-flight generation registry."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from fakes import make_request
from studygen.db.models import GenerationAttempt, GenerationStatus, utcnow
from studygen.services.inflight import InFlightRegistry, as_aware


@pytest.fixture
def registry(settings) -> InFlightRegistry:
    return InFlightRegistry(settings)


async def age_heartbeat(db, attempt_id: str, seconds: int) -> None:
    await db.execute(
        update(GenerationAttempt)
        .where(GenerationAttempt.id == attempt_id)
        .values(last_heartbeat_at=utcnow() - timedelta(seconds=seconds))
    )


@pytest.mark.asyncio
async def test_create_claims_fingerprint_once(db_session, registry, user, other_user):
    key = make_request().key

    first = await registry.create(db_session, key, user)
    second = await registry.create(db_session, key, other_user)

    assert first is not None
    assert second is None
    running = await registry.find_running(db_session, key)
    assert running.id == first
    assert running.caller_id == "user-1"
    assert running.sections == {}


@pytest.mark.asyncio
async def test_different_fingerprints_run_independently(db_session, registry, user):
    a = await registry.create(db_session, make_request("John 3:16").key, user)
    b = await registry.create(db_session, make_request("John 3:16", language="hi").key, user)

    assert a and b and a != b


@pytest.mark.asyncio
async def test_checkpoint_merges_sections_and_refreshes_heartbeat(db_session, registry, user):
    attempt_id = await registry.create(db_session, make_request().key, user)
    await age_heartbeat(db_session, attempt_id, 60)

    await registry.checkpoint(db_session, attempt_id, {"summary": "s"})
    await registry.checkpoint(db_session, attempt_id, {"context": "c"})

    attempt = await registry.get(db_session, attempt_id)
    assert attempt.sections == {"summary": "s", "context": "c"}
    assert not registry.is_stale(attempt)
    assert utcnow() - as_aware(attempt.last_heartbeat_at) < timedelta(seconds=30)


@pytest.mark.asyncio
async def test_staleness_threshold(db_session, registry, user):
    attempt_id = await registry.create(db_session, make_request().key, user)
    attempt = await registry.get(db_session, attempt_id)
    heartbeat = as_aware(attempt.last_heartbeat_at)

    assert not registry.is_stale(attempt, now=heartbeat + timedelta(seconds=299))
    assert registry.is_stale(attempt, now=heartbeat + timedelta(seconds=300))


@pytest.mark.asyncio
async def test_mark_stale_fails_attempt_with_timeout(db_session, registry, user):
    key = make_request().key
    attempt_id = await registry.create(db_session, key, user)
    await age_heartbeat(db_session, attempt_id, 301)
    attempt = await registry.find_running(db_session, key)
    assert registry.is_stale(attempt)

    assert await registry.mark_stale(db_session, attempt) is True

    attempt = await registry.get(db_session, attempt_id)
    assert attempt.status == GenerationStatus.FAILED
    assert attempt.error_code == "TIMEOUT"
    assert attempt.error_message == "Generation abandoned - no updates for 5+ minutes"
    assert await registry.find_running(db_session, key) is None


@pytest.mark.asyncio
async def test_mark_stale_skips_attempt_that_checkpointed(db_session, registry, user):
    key = make_request().key
    attempt_id = await registry.create(db_session, key, user)
    await age_heartbeat(db_session, attempt_id, 301)
    observed = await registry.find_running(db_session, key)
    observed_heartbeat = observed.last_heartbeat_at

    await registry.checkpoint(db_session, attempt_id, {"summary": "still alive"})
    db_session.expunge(observed)
    observed.last_heartbeat_at = observed_heartbeat

    assert await registry.mark_stale(db_session, observed) is False
    assert (await registry.get(db_session, attempt_id)).status == GenerationStatus.RUNNING


@pytest.mark.asyncio
async def test_cleanup_terminal_allows_new_claim(db_session, registry, user):
    key = make_request().key
    attempt_id = await registry.create(db_session, key, user)
    await registry.finalize(
        db_session, attempt_id, GenerationStatus.FAILED, "GENERATION_ERROR", "boom"
    )

    assert await registry.create(db_session, key, user) is None
    assert await registry.cleanup_terminal(db_session, key) == 1
    assert await registry.create(db_session, key, user) is not None


@pytest.mark.asyncio
async def test_checkpoint_ignored_after_finalize(db_session, registry, user):
    attempt_id = await registry.create(db_session, make_request().key, user)
    await registry.finalize(db_session, attempt_id, GenerationStatus.COMPLETED)

    await registry.checkpoint(db_session, attempt_id, {"summary": "late"})

    attempt = await registry.get(db_session, attempt_id)
    assert attempt.status == GenerationStatus.COMPLETED
    assert attempt.sections == {}
    assert attempt.completed_at is not None


@pytest.mark.asyncio
async def test_sweep_and_purge(db_session, registry, user):
    stale_id = await registry.create(db_session, make_request("John 3:16").key, user)
    live_id = await registry.create(db_session, make_request("Psalm 23").key, user)
    old_id = await registry.create(db_session, make_request("Romans 8:28").key, user)
    await age_heartbeat(db_session, stale_id, 600)
    await registry.finalize(db_session, old_id, GenerationStatus.COMPLETED)
    await db_session.execute(
        update(GenerationAttempt)
        .where(GenerationAttempt.id == old_id)
        .values(completed_at=utcnow() - timedelta(hours=25))
    )

    assert await registry.sweep_stale(db_session) == 1
    assert (await registry.get(db_session, stale_id)).error_code == "TIMEOUT"
    assert (await registry.get(db_session, live_id)).status == GenerationStatus.RUNNING

    assert await registry.purge_terminal(db_session, timedelta(hours=24)) == 1
    assert await registry.get(db_session, old_id) is None
    remaining = (
        await db_session.execute(select(func.count()).select_from(GenerationAttempt))
    ).scalar_one()
    assert remaining == 2
