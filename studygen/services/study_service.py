"""Request-level decision tree for study guide streaming."""

import asyncio
import logging
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.config import Settings, get_settings
from studygen.db.session import async_session_maker
from studygen.errors import (
    GenerationError,
    InputValidationError,
    SecurityViolationError,
    StorageError,
    StudyGenError,
)
from studygen.services.analytics import UsageLogger
from studygen.services.cache_resolver import (
    CacheResolution,
    CacheResolver,
    CreatorPolicy,
    legacy_content_is_free,
)
from studygen.services.content_store import content_store
from studygen.services.events import (
    Emit,
    EventChannel,
    complete_event,
    error_event_from,
    init_event,
    section_event,
)
from studygen.services.fingerprint import GuideRequest
from studygen.services.generation import GenerationCoordinator
from studygen.services.inflight import InFlightRegistry
from studygen.services.input_validator import InputValidator
from studygen.services.llm import LLMClient, build_llm_clients
from studygen.services.ownership import ownership_ledger
from studygen.services.poller import Poller
from studygen.services.token_ledger import DatabaseTokenLedger

logger = logging.getLogger(__name__)

# Claim attempts before giving up; each lost claim race re-reads the registry
MAX_CLAIM_ATTEMPTS = 3


class StudyGuideService:
    """
    Serves a study guide request as a stream of events.

    1. Screen the input.
    2. Cache hit: replay the stored sections (billing non-creators).
    3. Cache miss with a live attempt: poll it, then record ownership.
       Stale attempt: mark it failed and continue as a fresh miss.
    4. Otherwise claim the fingerprint and generate.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        clients: list[LLMClient],
        settings: Optional[Settings] = None,
        creator_policy: CreatorPolicy = legacy_content_is_free,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.ledger = DatabaseTokenLedger(self.settings)
        self.registry = InFlightRegistry(self.settings)
        self.validator = InputValidator(self.settings)
        self.usage_logger = UsageLogger(session_factory)
        self.resolver = CacheResolver(self.ledger, creator_policy=creator_policy)
        self.coordinator = GenerationCoordinator(
            session_factory,
            clients,
            self.ledger,
            registry=self.registry,
            usage_logger=self.usage_logger,
            settings=self.settings,
        )
        self.poller = Poller(session_factory, registry=self.registry, settings=self.settings)
        self._tasks: set[asyncio.Task] = set()

    async def screen(self, request: GuideRequest, identity: CallerIdentity) -> None:
        """Validate input; security violations are also recorded."""
        try:
            self.validator.validate(request)
        except SecurityViolationError as e:
            await self.usage_logger.log_event(
                "security_violation",
                identity=identity,
                details={
                    "input_type": request.input_type.value,
                    "input_preview": request.input_value[:50],
                    "reason": e.message,
                },
            )
            raise

    def start(self, request: GuideRequest, identity: CallerIdentity) -> EventChannel:
        """
        Handle the request in a background task and return its event channel.

        The task is not tied to the HTTP response: if the client disconnects
        the channel is closed but generation runs to completion.
        """
        channel = EventChannel()
        task = asyncio.create_task(self._run(request, identity, channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return channel

    async def _run(self, request: GuideRequest, identity: CallerIdentity, channel: EventChannel) -> None:
        try:
            await self.handle(request, identity, channel.emit)
        except SQLAlchemyError as e:
            logger.exception(f"Database error while handling request: {e}")
            await channel.emit(error_event_from(StorageError("A storage error occurred")))
        except Exception as e:
            logger.exception(f"Unexpected error while handling request: {e}")
            await channel.emit(error_event_from(GenerationError("Study guide generation failed")))
        finally:
            channel.finish()

    async def wait_idle(self) -> None:
        """Wait for all background handlers, e.g. on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle(self, request: GuideRequest, identity: CallerIdentity, emit: Emit) -> None:
        try:
            await self.screen(request, identity)
        except (InputValidationError, SecurityViolationError) as e:
            await emit(error_event_from(e))
            return

        key = request.key

        # Each round re-reads the content store: a lost claim may mean the winner already committed
        for _ in range(MAX_CLAIM_ATTEMPTS):
            try:
                async with self.session_factory() as db:
                    resolution = await self.resolver.resolve(db, key, identity)
                    await db.commit()
            except StudyGenError as e:
                await emit(error_event_from(e))
                return

            if resolution.is_hit:
                await self._replay(resolution, identity, emit)
                return

            async with self.session_factory() as db:
                running = await self.registry.find_running(db, key)
                if running is not None and self.registry.is_stale(running):
                    await self.registry.mark_stale(db, running)
                    await db.commit()
                    running = None

            if running is not None:
                logger.info(f"Duplicate request, polling generation {running.id}")
                guide_id = await self.poller.poll_until_done(running.id, emit)
                if guide_id is not None:
                    await self._attach(guide_id, identity)
                return

            attempt_id = await self.coordinator.claim(key, identity)
            if attempt_id is not None:
                await self.coordinator.run(request, identity, attempt_id, emit)
                return

        await emit(error_event_from(GenerationError("Could not start generation, please retry")))

    async def _replay(self, resolution: CacheResolution, identity: CallerIdentity, emit: Emit) -> None:
        """Stream a stored study guide back as a cache hit."""
        guide = resolution.guide
        sections = content_store.to_sections(guide)
        await emit(init_event("cache_hit", len(sections)))
        for name, value in sections:
            await emit(section_event(name, value, len(sections)))
        await emit(complete_event(guide.id, resolution.tokens_charged, from_cache=True))
        await self.usage_logger.log_event(
            "study_guide_cache_hit",
            identity=identity,
            study_guide_id=guide.id,
            tokens_consumed=resolution.tokens_charged,
            details={"kind": resolution.kind.value, "study_mode": resolution.key.study_mode.value},
        )

    async def _attach(self, guide_id: str, identity: CallerIdentity) -> None:
        """Record ownership for a caller served by polling. The guide is already committed."""
        try:
            async with self.session_factory() as db:
                await ownership_ledger.ensure(db, guide_id, identity)
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not record ownership of {guide_id}: {e}")
            return

        await self.usage_logger.log_event(
            "study_guide_polled", identity=identity, study_guide_id=guide_id
        )


@lru_cache
def get_study_service() -> StudyGuideService:
    """Shared service instance wired to the application database and LLM providers."""
    settings = get_settings()
    return StudyGuideService(async_session_maker, build_llm_clients(settings), settings)
