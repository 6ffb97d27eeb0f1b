"""Read-only observer for a generation another request is running."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studygen.config import Settings, get_settings
from studygen.db.models import GenerationAttempt, GenerationStatus
from studygen.errors import BillingInsufficientError, GenerationError, GenerationTimeoutError
from studygen.services.content_store import ContentStore, content_store
from studygen.services.events import (
    Emit,
    complete_event,
    error_event,
    error_event_from,
    init_event,
    section_event,
)
from studygen.services.fingerprint import FingerprintKey
from studygen.services.inflight import InFlightRegistry
from studygen.services.prompts import expected_sections
from studygen.services.sections import SECTION_ORDER, section_index

logger = logging.getLogger(__name__)


def failure_event(attempt: GenerationAttempt) -> str:
    """
    Error event for an observer of a failed attempt.

    A billing failure belongs to the caller that claimed the attempt, so
    observers get a generic retryable error instead of that caller's balance.
    """
    if attempt.error_code == BillingInsufficientError.code:
        return error_event_from(GenerationError("Generation did not start, please retry"))
    return error_event(
        attempt.error_code or GenerationError.code,
        attempt.error_message or "Generation failed",
        True,
    )


class Poller:
    """
    Streams another attempt's progress to a duplicate caller.

    Reads the registry every ``poll_interval`` seconds and replays new or
    changed sections through the same event vocabulary the generator uses.
    It never writes to the registry or the content store.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        registry: Optional[InFlightRegistry] = None,
        store: ContentStore = content_store,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.registry = registry or InFlightRegistry(self.settings)
        self.store = store
        self.sleep = sleep
        self.clock = clock

    async def poll_until_done(self, attempt_id: str, emit: Emit) -> Optional[str]:
        """
        Follow ``attempt_id`` until it completes, fails or the ceiling passes.

        Returns:
            The committed study guide id, or None when an error event was emitted
        """
        interval = self.settings.poll_interval_seconds
        deadline = self.clock() + self.settings.poll_timeout_seconds
        emitted: dict[str, Any] = {}

        async with self.session_factory() as db:
            attempt = await self.registry.get(db, attempt_id)
        total = (
            expected_sections(attempt.study_mode, attempt.language)
            if attempt is not None
            else len(SECTION_ORDER)
        )

        await emit(init_event("started", total))
        logger.info(f"Polling generation {attempt_id}")

        while True:
            async with self.session_factory() as db:
                attempt = await self.registry.get(db, attempt_id)
                if attempt is None:
                    error = GenerationError("Generation record disappeared")
                    await emit(error_event_from(error))
                    return None

                await self._emit_new(dict(attempt.sections or {}), emitted, total, emit)

                if attempt.status == GenerationStatus.COMPLETED:
                    key = FingerprintKey(
                        attempt.input_type,
                        attempt.input_value_hash,
                        attempt.language,
                        attempt.study_mode,
                    )
                    guide = await self.store.find(db, key)
                    if guide is None:
                        error = GenerationError("Completed generation has no stored study guide")
                        await emit(error_event_from(error))
                        return None
                    await self._emit_new(dict(self.store.to_sections(guide)), emitted, total, emit)
                    await emit(complete_event(guide.id, 0, from_cache=True))
                    logger.info(f"Generation {attempt_id} completed while polling, guide {guide.id}")
                    return guide.id

                if attempt.status == GenerationStatus.FAILED:
                    await emit(failure_event(attempt))
                    return None

            if self.clock() >= deadline:
                logger.warning(f"Gave up polling generation {attempt_id}")
                error = GenerationTimeoutError("Generation is taking longer than expected. Please try again.")
                await emit(error_event_from(error))
                return None

            await self.sleep(interval)

    async def _emit_new(
        self, current: dict[str, Any], emitted: dict[str, Any], total: int, emit: Emit
    ) -> None:
        for name in sorted(current, key=section_index):
            value = current[name]
            if value in (None, "", []) or emitted.get(name) == value:
                continue
            emitted[name] = value
            await emit(section_event(name, value, total))
