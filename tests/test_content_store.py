"""Tests for the content store and ownership ledger."""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from fakes import guide_payload, make_request
from studygen.auth.identity import CallerIdentity
from studygen.db.models import StudyGuide, UserStudyGuide
from studygen.errors import NotFoundError
from studygen.services.content_store import ContentStore
from studygen.services.ownership import OwnershipLedger

store = ContentStore()
ownership = OwnershipLedger()


async def count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_find_or_create_is_idempotent(db_session, user):
    key = make_request().key

    first, created = await store.find_or_create(db_session, key, guide_payload(), user, "John 3:16")
    second, created_again = await store.find_or_create(
        db_session, key, guide_payload(summary="A different summary"), user, "John 3:16"
    )
    await db_session.commit()

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert second.summary == guide_payload()["summary"]
    assert await count(db_session, StudyGuide) == 1


@pytest.mark.asyncio
async def test_find_or_create_recovers_from_unique_violation(session_factory, user, other_user):
    key = make_request().key

    async with session_factory() as db:
        winner, _ = await store.find_or_create(db, key, guide_payload(), user, "John 3:16")
        await db.commit()

    async with session_factory() as db:
        # Simulate losing the race: the initial read misses the winner's row
        original_find = store.find
        misses = []

        async def find_once_empty(session, k):
            if not misses:
                misses.append(k)
                return None
            return await original_find(session, k)

        with patch.object(store, "find", side_effect=find_once_empty):
            guide, created = await store.find_or_create(
                db, key, guide_payload(summary="loser"), other_user, "John 3:16"
            )
        await db.commit()

        assert created is False
        assert guide.id == winner.id
        assert guide.summary == guide_payload()["summary"]
        assert await count(db, StudyGuide) == 1


@pytest.mark.asyncio
async def test_creator_and_input_recorded_for_users(db_session, user):
    guide, _ = await store.find_or_create(
        db_session, make_request().key, guide_payload(), user, "John 3:16"
    )

    assert guide.creator_user_id == "user-1"
    assert guide.creator_session_id is None
    assert guide.input_value == "John 3:16"


@pytest.mark.asyncio
async def test_input_redacted_for_anonymous_creators(db_session):
    anon = CallerIdentity.session("anon-session-0001")

    guide, _ = await store.find_or_create(
        db_session, make_request().key, guide_payload(), anon, "John 3:16"
    )

    assert guide.creator_session_id == "anon-session-0001"
    assert guide.creator_user_id is None
    assert guide.input_value is None
    assert guide.input_value_hash == make_request().key.input_value_hash


@pytest.mark.asyncio
async def test_to_sections_in_canonical_order(db_session, user):
    guide, _ = await store.find_or_create(
        db_session,
        make_request().key,
        guide_payload(prayerQuestion="How will you pray?"),
        user,
    )

    names = [name for name, _ in store.to_sections(guide)]

    assert names == [
        "summary",
        "interpretation",
        "context",
        "relatedVerses",
        "reflectionQuestions",
        "prayerPoints",
        "passage",
        "prayerQuestion",
    ]


@pytest.mark.asyncio
async def test_add_enrichment(db_session, user):
    guide, _ = await store.find_or_create(db_session, make_request().key, guide_payload(), user)

    await store.add_enrichment(db_session, guide.id, "wordStudies", ["agape"])
    updated = await store.add_enrichment(db_session, guide.id, "timeline", ["AD 30"])

    assert updated.extended_content == {"wordStudies": ["agape"], "timeline": ["AD 30"]}
    assert updated.summary == guide_payload()["summary"]

    with pytest.raises(NotFoundError):
        await store.add_enrichment(db_session, "00000000-0000-0000-0000-000000000000", "x", 1)


@pytest.mark.asyncio
async def test_ensure_ownership_is_idempotent(db_session, user):
    guide, _ = await store.find_or_create(db_session, make_request().key, guide_payload(), user)

    first = await ownership.ensure(db_session, guide.id, user)
    second = await ownership.ensure(db_session, guide.id, user)
    await db_session.commit()

    assert first.id == second.id
    assert await count(db_session, UserStudyGuide) == 1


@pytest.mark.asyncio
async def test_ensure_ownership_recovers_from_duplicate(session_factory, user):
    async with session_factory() as db:
        guide, _ = await store.find_or_create(db, make_request().key, guide_payload(), user)
        existing = await ownership.ensure(db, guide.id, user)
        await db.commit()

    async with session_factory() as db:
        with patch.object(ownership, "get", side_effect=[None, existing]):
            record = await ownership.ensure(db, guide.id, user)
        await db.commit()

        assert record.id == existing.id
        assert await count(db, UserStudyGuide) == 1


@pytest.mark.asyncio
async def test_same_guide_owned_by_two_callers(db_session, user, other_user):
    guide, _ = await store.find_or_create(db_session, make_request().key, guide_payload(), user)

    await ownership.ensure(db_session, guide.id, user)
    await ownership.ensure(db_session, guide.id, other_user)
    await ownership.ensure(db_session, guide.id, CallerIdentity.session("user-1-session"))
    await db_session.commit()

    assert await count(db_session, StudyGuide) == 1
    assert await count(db_session, UserStudyGuide) == 3


@pytest.mark.asyncio
async def test_set_saved_upserts(db_session, user, other_user):
    guide, _ = await store.find_or_create(db_session, make_request().key, guide_payload(), user)

    record = await ownership.set_saved(db_session, guide.id, other_user, True)
    assert record.is_saved is True

    record = await ownership.set_saved(db_session, guide.id, other_user, False)
    assert record.is_saved is False
    assert await count(db_session, UserStudyGuide) == 1

    with pytest.raises(NotFoundError):
        await ownership.set_saved(db_session, "00000000-0000-0000-0000-000000000000", user, True)


@pytest.mark.asyncio
async def test_remove_keeps_canonical_content(db_session, user):
    guide, _ = await store.find_or_create(db_session, make_request().key, guide_payload(), user)
    await ownership.ensure(db_session, guide.id, user)

    await ownership.remove(db_session, guide.id, user)

    assert await ownership.get(db_session, guide.id, user) is None
    assert await store.get(db_session, guide.id) is not None
    with pytest.raises(NotFoundError):
        await ownership.remove(db_session, guide.id, user)


@pytest.mark.asyncio
async def test_list_for_caller(db_session, user, other_user):
    for verse in ("John 3:16", "Psalm 23", "Romans 8:28"):
        guide, _ = await store.find_or_create(
            db_session, make_request(verse).key, guide_payload(), user
        )
        await ownership.ensure(db_session, guide.id, user, is_saved=verse == "Psalm 23")
    await ownership.ensure(db_session, guide.id, other_user)

    rows, total = await ownership.list_for_caller(db_session, user, page=1, page_size=2)
    assert total == 3
    assert len(rows) == 2

    saved, saved_total = await ownership.list_for_caller(db_session, user, saved_only=True)
    assert saved_total == 1
    assert saved[0][0].is_saved is True

    others, others_total = await ownership.list_for_caller(db_session, other_user)
    assert others_total == 1
    assert others[0][1].id == guide.id
