"""Health check and system info routes."""

import logging

import redis.asyncio as redis
from fastapi import APIRouter
from sqlalchemy import text

from studygen.config import get_settings
from studygen.db.models import StudyMode
from studygen.schemas.schemas import HealthResponse, LanguageInfo, StudyModeInfo
from studygen.services.prompts import plan_passes
from studygen.services.token_ledger import calculate_token_cost

router = APIRouter(tags=["System"])

settings = get_settings()
logger = logging.getLogger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check():
    """
    Health check endpoint.

    Returns the status of:
    - API server
    - Database connection
    - Redis connection
    """
    # Check Redis
    redis_status = "ok"
    try:
        client = redis.from_url(settings.redis_url)
        await client.ping()
        await client.aclose()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        redis_status = "error"

    # Check database
    db_status = "ok"
    try:
        from studygen.db.session import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "error"

    overall_status = "healthy"
    if any(s == "error" for s in [redis_status, db_status]):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        database=db_status,
        redis=redis_status,
    )


@router.get(
    "/v1/languages",
    response_model=list[LanguageInfo],
    summary="List supported languages",
    description="Get a list of all supported output languages.",
)
async def list_languages():
    """Get list of supported languages."""
    return [
        LanguageInfo(
            code=code,
            name=name,
            multi_pass_modes=[
                mode.value for mode in StudyMode if len(plan_passes(mode, code)) > 1
            ],
        )
        for code, name in settings.language_names.items()
    ]


@router.get(
    "/v1/modes",
    response_model=list[StudyModeInfo],
    summary="List study modes",
    description="Study modes with their pass count and token cost per language.",
)
async def list_modes():
    """Get list of study modes and their costs."""
    return [
        StudyModeInfo(
            mode=mode.value,
            passes={code: len(plan_passes(mode, code)) for code in settings.language_names},
            token_costs={
                code: calculate_token_cost(code, mode.value, settings)
                for code in settings.language_names
            },
        )
        for mode in StudyMode
    ]


@router.get(
    "/v1/info",
    summary="Service information",
    description="Get general information about the service.",
)
async def service_info():
    """Get service information."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "environment": settings.app_env,
        "input_types": ["scripture", "topic", "question"],
        "study_modes": [mode.value for mode in StudyMode],
        "supported_languages": list(settings.language_names.keys()),
        "primary_llm_provider": settings.llm_primary_provider,
        "fallback_llm_provider": settings.llm_fallback_provider,
        "documentation": "/docs",
        "redoc": "/redoc",
    }
