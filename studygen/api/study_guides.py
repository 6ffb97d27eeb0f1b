"""Study guide streaming and ownership routes."""

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from studygen.auth.identity import CallerIdentity
from studygen.auth.security import get_caller_identity
from studygen.config import get_settings
from studygen.db.models import StudyGuide, UserStudyGuide
from studygen.db.session import get_db
from studygen.errors import NotFoundError
from studygen.middleware.rate_limit import rate_limit_general, rate_limit_generation
from studygen.schemas.schemas import (
    ErrorResponse,
    GenerationStatusResponse,
    StudyGuideContent,
    StudyGuideListResponse,
    StudyGuideResponse,
    StudyGuideStreamParams,
    StudyGuideUpdate,
    TokenBalanceResponse,
)
from studygen.services import sections as catalogue
from studygen.services.content_store import content_store
from studygen.services.events import KEEPALIVE, EventChannel
from studygen.services.inflight import InFlightRegistry
from studygen.services.ownership import ownership_ledger
from studygen.services.study_service import StudyGuideService, get_study_service
from studygen.services.token_ledger import DatabaseTokenLedger

router = APIRouter(prefix="/v1", tags=["Study Guides"])

settings = get_settings()


async def event_stream(channel: EventChannel, keepalive_interval: float):
    """Relay channel events, with keepalive comments while the channel is idle."""
    yield KEEPALIVE
    try:
        while True:
            event = await channel.next_event(keepalive_interval)
            if event is None:
                break
            yield event
    finally:
        # Client gone or stream done; the handler keeps running either way
        channel.close()


def to_response(ownership: UserStudyGuide, guide: StudyGuide) -> StudyGuideResponse:
    return StudyGuideResponse(
        id=guide.id,
        input_type=guide.input_type.value,
        input_value=guide.input_value,
        language=guide.language,
        study_mode=guide.study_mode.value,
        content=StudyGuideContent(**catalogue.from_record(guide)),
        extended_content=guide.extended_content,
        is_saved=ownership.is_saved,
        created_at=ownership.created_at,
        updated_at=ownership.updated_at,
    )


@router.get(
    "/study-guides/stream",
    summary="Stream a study guide",
    description="""
Generate a study guide, or replay it from the cache, as server-sent events.

Events: `init`, `section`, `complete`, `error`. Keepalive comments are sent
while the stream is idle. Identical concurrent requests share one generation.
    """,
    responses={
        200: {"content": {"text/event-stream": {}}},
        400: {"model": ErrorResponse, "description": "Invalid or disallowed input"},
    },
)
@rate_limit_generation()
async def stream_study_guide(
    request: Request,
    params: StudyGuideStreamParams = Depends(),
    identity: CallerIdentity = Depends(get_caller_identity),
    service: StudyGuideService = Depends(get_study_service),
):
    """
    Stream a study guide.

    Input problems are rejected with a 400 before the stream opens. Once the
    stream has opened, disconnecting does not cancel generation.
    """
    guide_request = params.to_request()
    await service.screen(guide_request, identity)

    channel = service.start(guide_request, identity)
    return StreamingResponse(
        event_stream(channel, settings.keepalive_interval_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get(
    "/study-guides",
    response_model=StudyGuideListResponse,
    summary="List my study guides",
    description="List study guides the caller has generated or opened, newest first.",
)
@rate_limit_general()
async def list_study_guides(
    request: Request,
    saved_only: bool = Query(False, description="Only saved guides"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's study guides."""
    rows, total = await ownership_ledger.list_for_caller(
        db, identity, saved_only=saved_only, page=page, page_size=page_size
    )
    total_pages = (total + page_size - 1) // page_size if total > 0 else 0

    return StudyGuideListResponse(
        guides=[to_response(ownership, guide) for ownership, guide in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
        has_more=page * page_size < total,
    )


@router.get(
    "/study-guides/{guide_id}",
    response_model=StudyGuideResponse,
    summary="Get a study guide",
    description="Get one study guide from the caller's list.",
)
async def get_study_guide(
    guide_id: str,
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """Get a study guide the caller holds."""
    ownership = await ownership_ledger.get(db, guide_id, identity)
    guide = await content_store.get(db, guide_id) if ownership else None
    if ownership is None or guide is None:
        raise NotFoundError(f"Study guide {guide_id} not found")
    return to_response(ownership, guide)


@router.patch(
    "/study-guides/{guide_id}",
    response_model=StudyGuideResponse,
    summary="Save or unsave a study guide",
)
async def update_study_guide(
    guide_id: str,
    body: StudyGuideUpdate,
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """Toggle the caller's saved flag."""
    ownership = await ownership_ledger.set_saved(db, guide_id, identity, body.is_saved)
    guide = await content_store.get(db, guide_id)
    await db.commit()
    return to_response(ownership, guide)


@router.delete(
    "/study-guides/{guide_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a study guide",
    description="Remove a study guide from the caller's list. The shared content is kept.",
)
async def delete_study_guide(
    guide_id: str,
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """Remove a study guide from the caller's list."""
    await ownership_ledger.remove(db, guide_id, identity)
    await db.commit()


@router.get(
    "/generations/{attempt_id}",
    response_model=GenerationStatusResponse,
    summary="Get generation status",
    description="Snapshot of an in-flight generation, including sections produced so far.",
)
async def get_generation_status(
    attempt_id: str,
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """Get an in-flight generation attempt."""
    attempt = await InFlightRegistry(settings).get(db, attempt_id)
    if attempt is None:
        raise NotFoundError(f"Generation {attempt_id} not found")

    return GenerationStatusResponse(
        id=attempt.id,
        status=attempt.status.value,
        input_type=attempt.input_type.value,
        language=attempt.language,
        study_mode=attempt.study_mode.value,
        sections=attempt.sections or {},
        started_at=attempt.started_at,
        last_heartbeat_at=attempt.last_heartbeat_at,
        completed_at=attempt.completed_at,
        error_code=attempt.error_code,
        error_message=attempt.error_message,
    )


@router.get(
    "/tokens/balance",
    response_model=TokenBalanceResponse,
    summary="Get token balance",
)
async def get_token_balance(
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's token balance."""
    balance = await DatabaseTokenLedger(settings).get_balance(db, identity)
    await db.commit()
    return TokenBalanceResponse(**balance)
