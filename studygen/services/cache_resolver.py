"""Cache hit/miss decision with billing for non-creator hits."""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.db.models import StudyGuide
from studygen.errors import BillingInsufficientError
from studygen.services.content_store import ContentStore, content_store
from studygen.services.fingerprint import FingerprintKey
from studygen.services.ownership import OwnershipLedger, ownership_ledger
from studygen.services.token_ledger import DatabaseTokenLedger, calculate_token_cost

logger = logging.getLogger(__name__)

CreatorPolicy = Callable[[StudyGuide, CallerIdentity], bool]


def is_recorded_creator(guide: StudyGuide, identity: CallerIdentity) -> bool:
    """Strict policy: only the recorded creator accesses for free."""
    if identity.is_authenticated:
        return guide.creator_user_id is not None and guide.creator_user_id == identity.user_id
    return guide.creator_session_id is not None and guide.creator_session_id == identity.session_id


def legacy_content_is_free(guide: StudyGuide, identity: CallerIdentity) -> bool:
    """Guides created before creator tracking are free for everyone."""
    if guide.creator_user_id is None and guide.creator_session_id is None:
        return True
    return is_recorded_creator(guide, identity)


class CacheHitKind(str, enum.Enum):
    CREATOR_HIT = "creator_hit"
    NON_CREATOR_HIT = "non_creator_hit"
    MISS = "miss"


@dataclass
class CacheResolution:
    kind: CacheHitKind
    key: FingerprintKey
    guide: Optional[StudyGuide] = None
    tokens_charged: int = 0

    @property
    def is_hit(self) -> bool:
        return self.kind != CacheHitKind.MISS


class CacheResolver:
    """Decides between creator hit, billable non-creator hit and miss."""

    def __init__(
        self,
        ledger: DatabaseTokenLedger,
        store: ContentStore = content_store,
        ownership: OwnershipLedger = ownership_ledger,
        creator_policy: CreatorPolicy = legacy_content_is_free,
    ):
        self.ledger = ledger
        self.store = store
        self.ownership = ownership
        self.creator_policy = creator_policy

    async def resolve(
        self, db: AsyncSession, key: FingerprintKey, identity: CallerIdentity
    ) -> CacheResolution:
        """
        Look up the guide for ``key`` and settle access for ``identity``.

        Non-creators are always billed before the guide is returned; the
        ledger decides whether the plan makes that free. Raises
        BillingInsufficientError when the charge fails, in which case no
        ownership is recorded.
        """
        guide = await self.store.find(db, key)
        if guide is None:
            return CacheResolution(kind=CacheHitKind.MISS, key=key)

        if self.creator_policy(guide, identity):
            await self.ownership.ensure(db, guide.id, identity)
            logger.info(f"Creator cache hit for guide {guide.id}")
            return CacheResolution(kind=CacheHitKind.CREATOR_HIT, key=key, guide=guide)

        cost = calculate_token_cost(key.language, key.study_mode.value, self.ledger.settings)
        charge = await self.ledger.charge(
            db,
            identity,
            cost,
            metadata={
                "operation": "cache_hit",
                "study_guide_id": guide.id,
                "language": key.language,
                "study_mode": key.study_mode.value,
            },
        )
        if not charge.success:
            raise BillingInsufficientError(
                charge.error_message or "Insufficient tokens",
                required=cost,
                available=charge.remaining or 0,
            )

        await self.ownership.ensure(db, guide.id, identity)
        logger.info(f"Non-creator cache hit for guide {guide.id}, charged {charge.tokens_charged}")
        return CacheResolution(
            kind=CacheHitKind.NON_CREATOR_HIT,
            key=key,
            guide=guide,
            tokens_charged=charge.tokens_charged,
        )
