"""Registry of in-flight generation attempts.

All coordination between concurrent requests goes through the
``study_guides_in_progress`` table: a unique constraint on the fingerprint
tuple guarantees a single attempt per fingerprint, and the heartbeat column
lets any instance detect an abandoned attempt.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.config import Settings, get_settings
from studygen.db.models import GenerationAttempt, GenerationStatus, utcnow
from studygen.errors import GenerationTimeoutError
from studygen.services.fingerprint import FingerprintKey

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


def as_aware(value: datetime) -> datetime:
    # Some drivers return naive datetimes for timestamptz columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InFlightRegistry:
    """Service for claiming, checkpointing and finalizing generation attempts."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.stale_generation_seconds)

    async def get(self, db: AsyncSession, attempt_id: str) -> Optional[GenerationAttempt]:
        result = await db.execute(
            select(GenerationAttempt)
            .where(GenerationAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_running(
        self, db: AsyncSession, key: FingerprintKey
    ) -> Optional[GenerationAttempt]:
        result = await db.execute(
            select(GenerationAttempt)
            .where(*key.where(GenerationAttempt), GenerationAttempt.status == GenerationStatus.RUNNING)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def is_stale(self, attempt: GenerationAttempt, now: Optional[datetime] = None) -> bool:
        """True when a running attempt has not sent a heartbeat within the threshold."""
        if attempt.status != GenerationStatus.RUNNING:
            return False
        now = now or utcnow()
        return now - as_aware(attempt.last_heartbeat_at) >= self.stale_after

    async def mark_stale(self, db: AsyncSession, attempt: GenerationAttempt) -> bool:
        """
        Fail an abandoned attempt with TIMEOUT.

        Guarded on the heartbeat that was observed, so an attempt that wakes
        up and checkpoints in the meantime is left alone.

        Returns:
            True if this call marked the attempt failed
        """
        result = await db.execute(
            update(GenerationAttempt)
            .where(
                GenerationAttempt.id == attempt.id,
                GenerationAttempt.status == GenerationStatus.RUNNING,
                GenerationAttempt.last_heartbeat_at == attempt.last_heartbeat_at,
            )
            .values(
                status=GenerationStatus.FAILED,
                error_code=GenerationTimeoutError.code,
                error_message=(
                    f"Generation abandoned - no updates for "
                    f"{self.settings.stale_generation_seconds // 60}+ minutes"
                ),
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning(f"Marked stale generation {attempt.id} as failed")
        return bool(result.rowcount)

    async def cleanup_terminal(self, db: AsyncSession, key: FingerprintKey) -> int:
        """Delete completed/failed attempts so a new attempt can claim the fingerprint."""
        result = await db.execute(
            delete(GenerationAttempt)
            .where(*key.where(GenerationAttempt), GenerationAttempt.status.in_(TERMINAL_STATUSES))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.debug(f"Removed {result.rowcount} terminal attempt(s) for {key.input_value_hash[:12]}")
        return result.rowcount

    async def create(
        self,
        db: AsyncSession,
        key: FingerprintKey,
        owner: Optional[CallerIdentity] = None,
    ) -> Optional[str]:
        """
        Claim the fingerprint by inserting a running attempt.

        Returns:
            The new attempt id, or None if another caller holds the fingerprint
        """
        now = utcnow()
        attempt = GenerationAttempt(
            input_type=key.input_type,
            input_value_hash=key.input_value_hash,
            language=key.language,
            study_mode=key.study_mode,
            caller_type=owner.caller_type if owner else None,
            caller_id=owner.caller_id if owner else None,
            status=GenerationStatus.RUNNING,
            sections={},
            started_at=now,
            last_heartbeat_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(attempt)
                await db.flush()
        except IntegrityError:
            logger.info(f"Lost claim race for {key.input_value_hash[:12]}")
            return None

        logger.info(f"Claimed generation {attempt.id} for {key.input_value_hash[:12]}")
        return attempt.id

    async def checkpoint(
        self, db: AsyncSession, attempt_id: str, sections: dict[str, Any]
    ) -> None:
        """Merge partial sections into the attempt and refresh its heartbeat."""
        attempt = await self.get(db, attempt_id)
        if attempt is None or attempt.status != GenerationStatus.RUNNING:
            logger.warning(f"Checkpoint skipped for generation {attempt_id}: not running")
            return

        merged = dict(attempt.sections or {})
        merged.update(sections)
        attempt.sections = merged
        attempt.last_heartbeat_at = utcnow()
        await db.flush()

    async def finalize(
        self,
        db: AsyncSession,
        attempt_id: str,
        status: GenerationStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Move the attempt to a terminal status."""
        await db.execute(
            update(GenerationAttempt)
            .where(GenerationAttempt.id == attempt_id)
            .values(
                status=status,
                error_code=error_code,
                error_message=error_message,
                completed_at=utcnow(),
                last_heartbeat_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Generation {attempt_id} finalized as {status.value}")

    async def sweep_stale(self, db: AsyncSession) -> int:
        """Fail every running attempt whose heartbeat is older than the threshold."""
        cutoff = utcnow() - self.stale_after
        result = await db.execute(
            update(GenerationAttempt)
            .where(
                GenerationAttempt.status == GenerationStatus.RUNNING,
                GenerationAttempt.last_heartbeat_at < cutoff,
            )
            .values(
                status=GenerationStatus.FAILED,
                error_code=GenerationTimeoutError.code,
                error_message=(
                    f"Generation abandoned - no updates for "
                    f"{self.settings.stale_generation_seconds // 60}+ minutes"
                ),
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def purge_terminal(self, db: AsyncSession, older_than: timedelta) -> int:
        """Delete terminal attempts that finished before ``now - older_than``."""
        cutoff = utcnow() - older_than
        result = await db.execute(
            delete(GenerationAttempt)
            .where(
                GenerationAttempt.status.in_(TERMINAL_STATUSES),
                GenerationAttempt.completed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
