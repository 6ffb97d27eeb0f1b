"""Canonical study guide storage with race-safe creation."""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.db.models import StudyGuide
from studygen.errors import NotFoundError, StorageError
from studygen.services import sections as catalogue
from studygen.services.fingerprint import FingerprintKey

logger = logging.getLogger(__name__)


class ContentStore:
    """Service for reading and creating canonical study guides."""

    async def find(self, db: AsyncSession, key: FingerprintKey) -> Optional[StudyGuide]:
        """Point read by (input type, hash, language, mode)."""
        result = await db.execute(select(StudyGuide).where(*key.where(StudyGuide)))
        return result.scalar_one_or_none()

    async def get(self, db: AsyncSession, guide_id: str) -> Optional[StudyGuide]:
        result = await db.execute(select(StudyGuide).where(StudyGuide.id == guide_id))
        return result.scalar_one_or_none()

    async def find_or_create(
        self,
        db: AsyncSession,
        key: FingerprintKey,
        content: dict[str, Any],
        creator: Optional[CallerIdentity] = None,
        input_value: Optional[str] = None,
    ) -> tuple[StudyGuide, bool]:
        """
        Return the study guide for ``key``, creating it from ``content`` if absent.

        The first writer wins: when a row already exists, or a concurrent
        insert beats this one to the unique constraint, the existing row is
        returned and ``content`` is discarded.

        Args:
            db: Database session
            key: Fingerprint key
            content: Sections keyed by wire name
            creator: Identity recorded as the creator
            input_value: Raw input, stored only for authenticated creators

        Returns:
            (study guide, created)
        """
        existing = await self.find(db, key)
        if existing is not None:
            return existing, False

        guide = StudyGuide(
            input_type=key.input_type,
            input_value_hash=key.input_value_hash,
            language=key.language,
            study_mode=key.study_mode,
            **catalogue.to_columns(content),
        )
        if creator is not None:
            guide.creator_user_id = creator.user_id
            guide.creator_session_id = creator.session_id
            if creator.is_authenticated:
                guide.input_value = input_value

        try:
            async with db.begin_nested():
                db.add(guide)
                await db.flush()
        except IntegrityError:
            logger.info(
                f"Concurrent insert for {key.input_value_hash[:12]}, re-reading existing guide"
            )
            existing = await self.find(db, key)
            if existing is None:
                raise StorageError("Study guide vanished after unique violation")
            return existing, False
        except SQLAlchemyError as e:
            logger.error(f"Failed to store study guide {key.input_value_hash[:12]}: {e}")
            raise StorageError("Failed to store study guide") from e

        logger.info(f"Created study guide {guide.id} ({key.input_type.value}/{key.study_mode.value}/{key.language})")
        return guide, True

    async def add_enrichment(
        self, db: AsyncSession, guide_id: str, name: str, value: Any
    ) -> StudyGuide:
        """Attach an optional enrichment section without touching canonical sections."""
        guide = await self.get(db, guide_id)
        if guide is None:
            raise NotFoundError(f"Study guide {guide_id} not found")

        # Reassign so the JSON column is flagged dirty
        extended = dict(guide.extended_content or {})
        extended[name] = value
        guide.extended_content = extended
        await db.flush()
        return guide

    def to_sections(self, guide: StudyGuide) -> list[tuple[str, Any]]:
        """Present sections of a stored guide in canonical order."""
        return catalogue.ordered_sections(catalogue.from_record(guide))


content_store = ContentStore()
