"""Database models for the study guide service."""

import enum
from datetime import date, datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from studygen.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class InputType(str, enum.Enum):
    """Kinds of user input a study guide can be generated from."""

    SCRIPTURE = "scripture"
    TOPIC = "topic"
    QUESTION = "question"


class StudyMode(str, enum.Enum):
    """Generation modes, from a short overview to a full sermon outline."""

    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"
    LECTIO = "lectio"
    SERMON = "sermon"


class CallerType(str, enum.Enum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class GenerationStatus(str, enum.Enum):
    """Status of an in-flight generation attempt."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Plan(str, enum.Enum):
    FREE = "free"
    STANDARD = "standard"
    PLUS = "plus"
    PREMIUM = "premium"


class ApiKey(Base):
    """API keys for authenticated callers."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    key_hash: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(12), index=True)  # "sgk_" + first 8 chars
    name: Mapped[str] = mapped_column(String(100))
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    plan: Mapped[Plan] = mapped_column(
        Enum(Plan, values_callable=_values, native_enum=False, length=20),
        default=Plan.FREE,
    )
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, default=30)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, default=300)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class StudyGuide(Base):
    """Canonical generated content, one row per fingerprint."""

    __tablename__ = "study_guides"
    __table_args__ = (
        UniqueConstraint(
            "input_type",
            "input_value_hash",
            "language",
            "study_mode",
            name="uq_study_guides_fingerprint",
        ),
    )

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    input_type: Mapped[InputType] = mapped_column(
        Enum(InputType, values_callable=_values, native_enum=False, length=20)
    )
    input_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # NULL when redacted
    input_value_hash: Mapped[str] = mapped_column(String(64), index=True)
    language: Mapped[str] = mapped_column(String(5), default="en")
    study_mode: Mapped[StudyMode] = mapped_column(
        Enum(StudyMode, values_callable=_values, native_enum=False, length=20),
        default=StudyMode.STANDARD,
    )

    # Required sections
    summary: Mapped[str] = mapped_column(Text)
    interpretation: Mapped[str] = mapped_column(Text)
    context: Mapped[str] = mapped_column(Text)
    related_verses: Mapped[list] = mapped_column(JSON, default=list)
    reflection_questions: Mapped[list] = mapped_column(JSON, default=list)
    prayer_points: Mapped[list] = mapped_column(JSON, default=list)

    # Optional mode-specific sections
    passage: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    interpretation_insights: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    summary_insights: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    reflection_answers: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    context_question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary_question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_verses_question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reflection_question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prayer_question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Enrichment sections appended after creation
    extended_content: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Creator identity (both NULL for legacy rows)
    creator_user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    creator_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class UserStudyGuide(Base):
    """Ownership of a study guide by a user or an anonymous session."""

    __tablename__ = "user_study_guides"
    __table_args__ = (
        UniqueConstraint(
            "study_guide_id", "caller_type", "caller_id", name="uq_user_study_guides_owner"
        ),
    )

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    study_guide_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("study_guides.id", ondelete="CASCADE"), index=True
    )
    caller_type: Mapped[CallerType] = mapped_column(
        Enum(CallerType, values_callable=_values, native_enum=False, length=20)
    )
    caller_id: Mapped[str] = mapped_column(String(100), index=True)
    is_saved: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class GenerationAttempt(Base):
    """A generation currently (or recently) in progress for a fingerprint."""

    __tablename__ = "study_guides_in_progress"
    __table_args__ = (
        UniqueConstraint(
            "input_type",
            "input_value_hash",
            "language",
            "study_mode",
            name="uq_in_progress_fingerprint",
        ),
    )

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    input_type: Mapped[InputType] = mapped_column(
        Enum(InputType, values_callable=_values, native_enum=False, length=20)
    )
    input_value_hash: Mapped[str] = mapped_column(String(64))
    language: Mapped[str] = mapped_column(String(5))
    study_mode: Mapped[StudyMode] = mapped_column(
        Enum(StudyMode, values_callable=_values, native_enum=False, length=20)
    )
    caller_type: Mapped[Optional[CallerType]] = mapped_column(
        Enum(CallerType, values_callable=_values, native_enum=False, length=20),
        nullable=True,
    )
    caller_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[GenerationStatus] = mapped_column(
        Enum(GenerationStatus, values_callable=_values, native_enum=False, length=20),
        default=GenerationStatus.RUNNING,
        index=True,
    )
    sections: Mapped[dict] = mapped_column(JSON, default=dict)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TokenBalance(Base):
    """Daily and purchased token balance for a user or session."""

    __tablename__ = "token_balances"

    identifier: Mapped[str] = mapped_column(String(100), primary_key=True)
    identifier_type: Mapped[CallerType] = mapped_column(
        Enum(CallerType, values_callable=_values, native_enum=False, length=20), primary_key=True
    )
    plan: Mapped[str] = mapped_column(String(20), default=Plan.FREE.value)
    daily_tokens: Mapped[int] = mapped_column(Integer, default=0)
    purchased_tokens: Mapped[int] = mapped_column(Integer, default=0)
    daily_limit: Mapped[int] = mapped_column(Integer, default=0)
    total_consumed_today: Mapped[int] = mapped_column(Integer, default=0)
    last_reset: Mapped[date] = mapped_column(Date, default=lambda: utcnow().date())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class UsageEvent(Base):
    """Usage and security log for analytics."""

    __tablename__ = "usage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), index=True)
    caller_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    caller_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    study_guide_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    tokens_consumed: Mapped[int] = mapped_column(Integer, default=0)
    llm_provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    llm_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    llm_input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    llm_output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    llm_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
