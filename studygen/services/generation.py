"""Generation coordinator: claim, charge, stream, checkpoint, commit.

An attempt moves through ``claimed -> generating (pass 1..N) -> parsed ->
committing -> done``, and can fail from any state. Failure always finalizes
the registry row as failed and emits exactly one error event; a partial
study guide is never committed.

Every database step runs in its own short session and commits immediately,
so checkpoints are visible to pollers on other instances.
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.config import Settings, get_settings
from studygen.db.models import GenerationStatus
from studygen.errors import (
    BillingInsufficientError,
    ContentFilterError,
    GenerationError,
    StorageError,
    StudyGenError,
)
from studygen.services import sections as catalogue
from studygen.services.analytics import UsageLogger, combine_usage
from studygen.services.content_store import ContentStore, content_store
from studygen.services.events import (
    Emit,
    complete_event,
    error_event_from,
    init_event,
    section_event,
)
from studygen.services.fingerprint import FingerprintKey, GuideRequest
from studygen.services.inflight import InFlightRegistry
from studygen.services.llm import LLMClient, LLMParams, LLMUsage
from studygen.services.ownership import OwnershipLedger, ownership_ledger
from studygen.services.prompts import (
    ALTAR_CALL,
    GenerationPass,
    build_prompt,
    build_system_prompt,
    expected_sections,
    part_number,
    plan_passes,
)
from studygen.services.section_parser import StreamingSectionParser, parse_complete
from studygen.services.token_ledger import DatabaseTokenLedger, calculate_token_cost

logger = logging.getLogger(__name__)


class GenerationState:
    """Raw fields collected across passes and the sections they present as."""

    def __init__(self, total_sections: int = len(catalogue.SECTION_ORDER)) -> None:
        self.fields: dict[str, Any] = {}
        self.total_sections = total_sections

    def interpretation(self) -> Optional[str]:
        """Interpretation fragments joined in pass order, altar call last."""
        if isinstance(self.fields.get("interpretation"), str):
            return self.fields["interpretation"]
        parts = sorted(
            (part_number(name), value)
            for name, value in self.fields.items()
            if part_number(name) is not None and isinstance(value, str)
        )
        fragments = [value for _, value in parts]
        if isinstance(self.fields.get(ALTAR_CALL), str):
            fragments.append(self.fields[ALTAR_CALL])
        return "\n\n".join(fragments) if fragments else None

    def presentable(self) -> dict[str, Any]:
        sections = {
            name: value
            for name, value in self.fields.items()
            if name in catalogue.SECTIONS_BY_NAME and catalogue.is_valid_value(name, value)
        }
        interpretation = self.interpretation()
        if interpretation:
            sections["interpretation"] = interpretation
        return sections


class GenerationCoordinator:
    """Runs one claimed generation attempt to completion or failure."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        clients: list[LLMClient],
        ledger: DatabaseTokenLedger,
        registry: Optional[InFlightRegistry] = None,
        store: ContentStore = content_store,
        ownership: OwnershipLedger = ownership_ledger,
        usage_logger: Optional[UsageLogger] = None,
        settings: Optional[Settings] = None,
    ):
        if not clients:
            raise ValueError("At least one LLM client is required")
        self.session_factory = session_factory
        self.clients = clients
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.registry = registry or InFlightRegistry(self.settings)
        self.store = store
        self.ownership = ownership
        self.usage_logger = usage_logger or UsageLogger(session_factory)

    async def claim(self, key: FingerprintKey, identity: CallerIdentity) -> Optional[str]:
        """
        Clear terminal attempts for ``key`` and insert a running one.

        Returns:
            Attempt id, or None when a concurrent caller claimed it first
        """
        async with self.session_factory() as db:
            await self.registry.cleanup_terminal(db, key)
            attempt_id = await self.registry.create(db, key, identity)
            await db.commit()
        return attempt_id

    async def run(
        self,
        request: GuideRequest,
        identity: CallerIdentity,
        attempt_id: str,
        emit: Emit,
    ) -> Optional[str]:
        """
        Charge the caller, generate every pass and commit the study guide.

        Returns:
            Study guide id, or None if the attempt failed (an error event has
            then been emitted)
        """
        key = request.key
        usages: list[LLMUsage] = []
        total_sections = expected_sections(request.study_mode, request.language)

        try:
            tokens_charged = await self._charge(request, identity)
            await emit(init_event("started", total_sections))

            sections = await self._generate(request, attempt_id, emit, usages)

            async with self.session_factory() as db:
                guide, created = await self.store.find_or_create(
                    db, key, sections, identity, request.input_value
                )
                await self.ownership.ensure(db, guide.id, identity)
                await self.registry.finalize(db, attempt_id, GenerationStatus.COMPLETED)
                await db.commit()
                guide_id = guide.id
        except StudyGenError as e:
            await self._fail(attempt_id, e)
            await emit(error_event_from(e))
            return None
        except SQLAlchemyError as e:
            logger.exception(f"Generation {attempt_id} hit a database error: {e}")
            error = StorageError("A storage error occurred")
            await self._fail(attempt_id, error)
            await emit(error_event_from(error))
            return None
        except Exception as e:
            logger.exception(f"Generation {attempt_id} failed unexpectedly: {e}")
            error = GenerationError("Study guide generation failed")
            await self._fail(attempt_id, error)
            await emit(error_event_from(error))
            return None

        if not created:
            logger.info(f"Generation {attempt_id} matched existing guide {guide_id}")

        await emit(complete_event(guide_id, tokens_charged, from_cache=False))

        # Committed; nothing below may fail the request
        await self.usage_logger.log_event(
            "study_guide_generated",
            identity=identity,
            study_guide_id=guide_id,
            tokens_consumed=tokens_charged,
            usage=combine_usage(usages),
            details={
                "input_type": request.input_type.value,
                "language": request.language,
                "study_mode": request.study_mode.value,
                "passes": len(usages),
            },
        )
        return guide_id

    async def _charge(self, request: GuideRequest, identity: CallerIdentity) -> int:
        cost = calculate_token_cost(request.language, request.study_mode.value, self.settings)
        async with self.session_factory() as db:
            result = await self.ledger.charge(
                db,
                identity,
                cost,
                metadata={
                    "operation": "study_generation",
                    "language": request.language,
                    "study_mode": request.study_mode.value,
                },
            )
            await db.commit()

        if not result.success:
            raise BillingInsufficientError(
                result.error_message or "Insufficient tokens",
                required=cost,
                available=result.remaining or 0,
            )
        return result.tokens_charged

    async def _generate(
        self,
        request: GuideRequest,
        attempt_id: str,
        emit: Emit,
        usages: list[LLMUsage],
    ) -> dict[str, Any]:
        passes = plan_passes(request.study_mode, request.language)
        state = GenerationState(expected_sections(request.study_mode, request.language))
        provider_index = 0

        logger.info(
            f"Generation {attempt_id}: {len(passes)} pass(es) for "
            f"{request.study_mode.value}/{request.language}"
        )

        for generation_pass in passes:
            while True:
                client = self.clients[provider_index]
                snapshot = dict(state.fields)
                try:
                    usage = await self._stream_pass(
                        client, request, generation_pass, state, attempt_id, emit
                    )
                    break
                except ContentFilterError as e:
                    state.fields = snapshot
                    if provider_index + 1 >= len(self.clients):
                        raise GenerationError(
                            "Content was rejected by every available provider"
                        ) from e
                    provider_index += 1
                    logger.warning(
                        f"Generation {attempt_id}: content filter on {client.provider}, "
                        f"retrying pass {generation_pass.number} with "
                        f"{self.clients[provider_index].provider}"
                    )

            if usage is not None:
                usages.append(usage)
            await self._checkpoint(attempt_id, state.presentable())

        sections = state.presentable()
        missing = catalogue.missing_required(sections)
        if missing:
            raise GenerationError(f"Generated study guide is missing sections: {', '.join(missing)}")
        return sections

    async def _stream_pass(
        self,
        client: LLMClient,
        request: GuideRequest,
        generation_pass: GenerationPass,
        state: GenerationState,
        attempt_id: str,
        emit: Emit,
    ) -> Optional[LLMUsage]:
        parser = StreamingSectionParser()
        previous = state.presentable() if generation_pass.number > 1 else {}
        prompt = build_prompt(request, generation_pass, previous)
        params = LLMParams(
            system_prompt=build_system_prompt(request),
            temperature=self.settings.llm_temperature,
            max_tokens=self.settings.llm_max_tokens,
        )

        stream = client.stream(prompt, params)
        async for chunk in stream:
            for field in parser.feed(chunk):
                await self._accept(field.name, field.value, state, attempt_id, emit)

        # Pick up fields the incremental parser could not close
        missed = [name for name in generation_pass.fields if name not in parser.fields]
        if missed:
            data = parse_complete(parser.raw_text, required=())
            if data is not None:
                for name in missed:
                    if name in data:
                        await self._accept(name, data[name], state, attempt_id, emit)

        logger.info(
            f"Generation {attempt_id}: pass {generation_pass.number}/{generation_pass.total} "
            f"via {client.provider} produced {len(parser.fields)} field(s)"
        )
        return stream.usage

    async def _accept(
        self,
        name: str,
        value: Any,
        state: GenerationState,
        attempt_id: str,
        emit: Emit,
    ) -> None:
        state.fields[name] = value

        if part_number(name) is not None or name == ALTAR_CALL:
            name, value = "interpretation", state.interpretation()
        elif not catalogue.is_valid_value(name, value):
            logger.debug(f"Generation {attempt_id}: ignoring field '{name}'")
            return

        await emit(section_event(name, value, state.total_sections))
        await self._checkpoint(attempt_id, {name: value})

    async def _checkpoint(self, attempt_id: str, sections: dict[str, Any]) -> None:
        async with self.session_factory() as db:
            await self.registry.checkpoint(db, attempt_id, sections)
            await db.commit()

    async def _fail(self, attempt_id: str, error: StudyGenError) -> None:
        logger.warning(f"Generation {attempt_id} failed: [{error.code}] {error.message}")
        try:
            async with self.session_factory() as db:
                await self.registry.finalize(
                    db,
                    attempt_id,
                    GenerationStatus.FAILED,
                    error_code=error.code,
                    error_message=error.message,
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Could not mark generation {attempt_id} failed: {e}")
