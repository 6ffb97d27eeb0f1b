"""Best-effort usage and security event logging."""

import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.db.models import UsageEvent
from studygen.services.llm import LLMUsage

logger = logging.getLogger(__name__)


def combine_usage(usages: list[LLMUsage]) -> Optional[LLMUsage]:
    """Sum usage across passes. Provider and model come from the last pass."""
    if not usages:
        return None
    total = LLMUsage(provider=usages[-1].provider, model=usages[-1].model)
    for usage in usages:
        total.input_tokens += usage.input_tokens
        total.output_tokens += usage.output_tokens
        total.cost_usd += usage.cost_usd
    return total


class UsageLogger:
    """Writes usage events in their own session. Failures are logged, never raised."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def log_event(
        self,
        event_type: str,
        identity: Optional[CallerIdentity] = None,
        study_guide_id: Optional[str] = None,
        tokens_consumed: int = 0,
        usage: Optional[LLMUsage] = None,
        details: Optional[dict] = None,
    ) -> None:
        event = UsageEvent(
            event_type=event_type,
            caller_type=identity.caller_type.value if identity else None,
            caller_id=identity.caller_id if identity else None,
            study_guide_id=study_guide_id,
            tokens_consumed=tokens_consumed,
            details=details,
        )
        if usage is not None:
            event.llm_provider = usage.provider
            event.llm_model = usage.model
            event.llm_input_tokens = usage.input_tokens
            event.llm_output_tokens = usage.output_tokens
            event.llm_cost_usd = usage.cost_usd

        try:
            async with self.session_factory() as db:
                db.add(event)
                await db.commit()
        except Exception as e:
            logger.warning(f"Failed to record {event_type} event: {e}")
            return

        if usage is not None:
            logger.info(
                f"Usage logged for {event_type}: {usage.input_tokens}+{usage.output_tokens} "
                f"LLM tokens, ${usage.cost_usd:.4f}"
            )
