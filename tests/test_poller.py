"""Tests for the read-only poller."""

import pytest

from fakes import EventRecorder, guide_payload, make_request
from studygen.auth.identity import CallerIdentity
from studygen.db.models import GenerationStatus
from studygen.services.content_store import content_store
from studygen.services.inflight import InFlightRegistry
from studygen.services.poller import Poller


@pytest.fixture
def registry(settings) -> InFlightRegistry:
    return InFlightRegistry(settings)


async def start_attempt(session_factory, registry, owner, sections=None) -> str:
    async with session_factory() as db:
        attempt_id = await registry.create(db, make_request().key, owner)
        if sections:
            await registry.checkpoint(db, attempt_id, sections)
        await db.commit()
    return attempt_id


@pytest.mark.asyncio
async def test_poller_relays_sections_then_complete(session_factory, registry, settings, user):
    attempt_id = await start_attempt(session_factory, registry, user, {"summary": "early summary"})
    sleeps = []
    finished = []

    async def finish_generation(interval):
        sleeps.append(interval)
        if len(sleeps) > 1:
            return
        async with session_factory() as db:
            await registry.checkpoint(db, attempt_id, {"context": guide_payload()["context"]})
            guide, _ = await content_store.find_or_create(
                db, make_request().key, guide_payload(summary="early summary"), user
            )
            await registry.finalize(db, attempt_id, GenerationStatus.COMPLETED)
            await db.commit()
        finished.append(guide.id)

    poller = Poller(session_factory, registry, settings=settings, sleep=finish_generation)
    events = EventRecorder()

    guide_id = await poller.poll_until_done(attempt_id, events)

    assert guide_id == finished[0]
    assert sleeps == [settings.poll_interval_seconds]
    assert events.names[0] == "init"
    assert events.names[-1] == "complete"
    assert events.of_type("complete")[0] == {
        "contentId": guide_id,
        "tokensConsumed": 0,
        "fromCache": True,
    }

    section_types = [s["type"] for s in events.of_type("section")]
    assert section_types[0] == "summary"
    assert section_types.count("summary") == 1
    assert section_types.count("context") == 1
    assert set(section_types) == set(guide_payload().keys())


@pytest.mark.asyncio
async def test_poller_relays_failure_as_retryable(session_factory, registry, settings, user):
    attempt_id = await start_attempt(session_factory, registry, user)
    async with session_factory() as db:
        await registry.finalize(
            db, attempt_id, GenerationStatus.FAILED, "CONTENT_FILTER", "Rejected by every provider"
        )
        await db.commit()

    events = EventRecorder()
    result = await Poller(session_factory, registry, settings=settings).poll_until_done(attempt_id, events)

    assert result is None
    assert events.names == ["init", "error"]
    assert events.of_type("error")[0] == {
        "code": "CONTENT_FILTER",
        "message": "Rejected by every provider",
        "retryable": True,
    }


@pytest.mark.asyncio
async def test_poller_hides_claimer_billing_failure(session_factory, registry, settings):
    claimer = CallerIdentity.session("anon-session-0001")
    attempt_id = await start_attempt(session_factory, registry, claimer)
    async with session_factory() as db:
        await registry.finalize(
            db,
            attempt_id,
            GenerationStatus.FAILED,
            "BILLING_INSUFFICIENT",
            "Insufficient tokens. Required: 10, Available: 8",
        )
        await db.commit()

    events = EventRecorder()
    result = await Poller(session_factory, registry, settings=settings).poll_until_done(attempt_id, events)

    assert result is None
    assert events.names == ["init", "error"]
    [error] = events.of_type("error")
    assert error["code"] == "GENERATION_ERROR"
    assert error["retryable"] is True
    assert "Available" not in error["message"]
    assert "8" not in error["message"]


@pytest.mark.asyncio
async def test_poller_gives_up_after_ceiling(session_factory, registry, settings, user):
    attempt_id = await start_attempt(session_factory, registry, user, {"summary": "s"})
    ticks = iter([0.0, settings.poll_timeout_seconds + 1])

    async def no_sleep(interval):
        raise AssertionError("poller should give up before sleeping")

    poller = Poller(
        session_factory, registry, settings=settings, sleep=no_sleep, clock=lambda: next(ticks)
    )
    events = EventRecorder()

    result = await poller.poll_until_done(attempt_id, events)

    assert result is None
    assert events.names == ["init", "section", "error"]
    error = events.of_type("error")[0]
    assert error["code"] == "TIMEOUT"
    assert error["retryable"] is True

    async with session_factory() as db:
        # Observers never write to the registry
        attempt = await registry.get(db, attempt_id)
        assert attempt.status == GenerationStatus.RUNNING


@pytest.mark.asyncio
async def test_poller_reports_missing_attempt(session_factory, registry, settings):
    events = EventRecorder()

    result = await Poller(session_factory, registry, settings=settings).poll_until_done(
        "00000000-0000-0000-0000-000000000000", events
    )

    assert result is None
    assert events.names == ["init", "error"]
    assert events.of_type("error")[0]["code"] == "GENERATION_ERROR"
