"""Per-caller relationship to canonical study guides."""

import logging
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.db.models import StudyGuide, UserStudyGuide, utcnow
from studygen.errors import NotFoundError

logger = logging.getLogger(__name__)


class OwnershipLedger:
    """Service for managing which callers hold which study guides."""

    def _owned_by(self, guide_id: str, identity: CallerIdentity) -> tuple:
        return (
            UserStudyGuide.study_guide_id == guide_id,
            UserStudyGuide.caller_type == identity.caller_type,
            UserStudyGuide.caller_id == identity.caller_id,
        )

    async def get(
        self, db: AsyncSession, guide_id: str, identity: CallerIdentity
    ) -> Optional[UserStudyGuide]:
        result = await db.execute(select(UserStudyGuide).where(*self._owned_by(guide_id, identity)))
        return result.scalar_one_or_none()

    async def ensure(
        self,
        db: AsyncSession,
        guide_id: str,
        identity: CallerIdentity,
        is_saved: bool = False,
    ) -> UserStudyGuide:
        """
        Idempotently record that ``identity`` holds ``guide_id``.

        A duplicate-key race with a concurrent request is expected and is
        resolved by re-reading the winner's row.
        """
        existing = await self.get(db, guide_id, identity)
        if existing is not None:
            return existing

        record = UserStudyGuide(
            study_guide_id=guide_id,
            caller_type=identity.caller_type,
            caller_id=identity.caller_id,
            is_saved=is_saved,
        )
        try:
            async with db.begin_nested():
                db.add(record)
                await db.flush()
        except IntegrityError:
            logger.debug(f"Ownership of {guide_id} already recorded for {identity.caller_type.value}")
            existing = await self.get(db, guide_id, identity)
            if existing is not None:
                return existing
            raise
        return record

    async def set_saved(
        self,
        db: AsyncSession,
        guide_id: str,
        identity: CallerIdentity,
        is_saved: bool,
    ) -> UserStudyGuide:
        """Toggle the saved flag, creating the relationship if needed."""
        record = await self.get(db, guide_id, identity)
        if record is None:
            guide = await db.get(StudyGuide, guide_id)
            if guide is None:
                raise NotFoundError(f"Study guide {guide_id} not found")
            record = await self.ensure(db, guide_id, identity, is_saved=is_saved)

        record.is_saved = is_saved
        record.updated_at = utcnow()
        await db.flush()
        return record

    async def remove(self, db: AsyncSession, guide_id: str, identity: CallerIdentity) -> None:
        """Remove a guide from the caller's list. The canonical guide stays."""
        result = await db.execute(delete(UserStudyGuide).where(*self._owned_by(guide_id, identity)))
        if result.rowcount == 0:
            raise NotFoundError(f"Study guide {guide_id} not found in your list")

    async def list_for_caller(
        self,
        db: AsyncSession,
        identity: CallerIdentity,
        saved_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[tuple[UserStudyGuide, StudyGuide]], int]:
        """
        List the caller's guides, newest first.

        Args:
            db: Database session
            identity: Caller identity
            saved_only: Only include saved guides
            page: Page number (1-indexed)
            page_size: Items per page

        Returns:
            Tuple of ((ownership, guide) pairs, total count)
        """
        query = (
            select(UserStudyGuide, StudyGuide)
            .join(StudyGuide, StudyGuide.id == UserStudyGuide.study_guide_id)
            .where(
                UserStudyGuide.caller_type == identity.caller_type,
                UserStudyGuide.caller_id == identity.caller_id,
            )
        )
        if saved_only:
            query = query.where(UserStudyGuide.is_saved == True)  # noqa: E712

        # Get total count
        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        query = query.order_by(UserStudyGuide.created_at.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)

        result = await db.execute(query)
        return [(row[0], row[1]) for row in result.all()], total


ownership_ledger = OwnershipLedger()
