"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studygen.db.models import InputType, Plan, StudyMode
from studygen.services.fingerprint import GuideRequest


# ============== Language Enums ==============

SUPPORTED_LANGUAGES = {"en", "hi", "ml"}
LANGUAGE_ALIASES = {
    "eng": "en",
    "english": "en",
    "hin": "hi",
    "hindi": "hi",
    "mal": "ml",
    "malayalam": "ml",
}


def normalize_language(lang: str | None) -> str | None:
    """Normalize language code to standard format."""
    if lang is None:
        return None
    lang = lang.lower().strip()
    return LANGUAGE_ALIASES.get(lang, lang)


# ============== Study Guide Schemas ==============


class StudyGuideStreamParams(BaseModel):
    """Query parameters of the streaming endpoint."""

    input_type: InputType
    input_value: str = Field(..., min_length=1, max_length=2000)
    language: str = Field("en", description="Language code (en, hi, ml)")
    mode: StudyMode = Field(StudyMode.STANDARD, description="Study mode")
    topic_description: Optional[str] = Field(None, max_length=2000)

    @field_validator("language", mode="before")
    @classmethod
    def normalize_lang(cls, v: str | None) -> str:
        return normalize_language(v) or "en"

    def to_request(self) -> GuideRequest:
        return GuideRequest(
            input_type=self.input_type,
            input_value=self.input_value,
            language=self.language,
            study_mode=self.mode,
            topic_description=self.topic_description,
        )


class StudyGuideContent(BaseModel):
    """Sections of a study guide, keyed by wire name."""

    summary: str
    interpretation: str
    context: str
    relatedVerses: list[Any] = []
    reflectionQuestions: list[Any] = []
    prayerPoints: list[Any] = []
    passage: Optional[str] = None
    summaryInsights: Optional[list[Any]] = None
    interpretationInsights: Optional[list[Any]] = None
    reflectionAnswers: Optional[list[Any]] = None
    contextQuestion: Optional[str] = None
    summaryQuestion: Optional[str] = None
    relatedVersesQuestion: Optional[str] = None
    reflectionQuestion: Optional[str] = None
    prayerQuestion: Optional[str] = None


class StudyGuideResponse(BaseModel):
    """A study guide as seen by one of its owners."""

    id: str
    input_type: str
    input_value: Optional[str] = None
    language: str
    study_mode: str
    content: StudyGuideContent
    extended_content: Optional[dict] = None
    is_saved: bool
    created_at: datetime
    updated_at: datetime


class StudyGuideListResponse(BaseModel):
    """Paginated list of the caller's study guides."""

    guides: list[StudyGuideResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_more: bool


class StudyGuideUpdate(BaseModel):
    """Request to change the caller's save state."""

    is_saved: bool


class GenerationStatusResponse(BaseModel):
    """Snapshot of an in-flight generation attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    input_type: str
    language: str
    study_mode: str
    sections: dict[str, Any]
    started_at: datetime
    last_heartbeat_at: datetime
    completed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# ============== Token Schemas ==============


class TokenBalanceResponse(BaseModel):
    """Token balance of the caller."""

    plan: str
    unlimited: bool
    daily_tokens: Optional[int] = None
    purchased_tokens: Optional[int] = None
    daily_limit: Optional[int] = None
    total_tokens: Optional[int] = None


class TokenTopUp(BaseModel):
    """Admin request to add purchased tokens."""

    identifier: str = Field(..., min_length=1, max_length=100)
    anonymous: bool = Field(False, description="Identifier is a session id")
    plan: Plan = Plan.FREE
    amount: int = Field(..., ge=1, le=100000)


class StudyModeInfo(BaseModel):
    """Study mode and its token cost per language."""

    mode: str
    passes: dict[str, int]
    token_costs: dict[str, int]


# ============== API Key Schemas ==============


class ApiKeyCreate(BaseModel):
    """Request to create a new API key."""

    name: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, max_length=100)
    plan: Plan = Plan.FREE
    rate_limit_per_minute: int = Field(30, ge=1, le=10000)
    rate_limit_per_hour: int = Field(300, ge=1, le=100000)
    expires_in_days: Optional[int] = Field(None, ge=1, le=365)


class ApiKeyResponse(BaseModel):
    """Response after creating an API key (only time full key is shown)."""

    id: str
    api_key: str  # Full key, shown only once
    key_prefix: str
    name: str
    user_id: str
    plan: Plan
    rate_limit_per_minute: int
    rate_limit_per_hour: int
    created_at: datetime
    expires_at: Optional[datetime] = None


class ApiKeyInfo(BaseModel):
    """API key info (without full key)."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    key_prefix: str
    name: str
    user_id: str
    plan: Plan
    rate_limit_per_minute: int
    rate_limit_per_hour: int
    is_active: bool
    created_at: datetime
    expires_at: Optional[datetime] = None


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    retryable: bool = False


class LanguageInfo(BaseModel):
    """Information about a supported language."""

    code: str
    name: str
    multi_pass_modes: list[str]
