# incident_capture/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from typing import TypeAlias
UUID: TypeAlias = str

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

PHASES = ("before_event", "during_event", "end_event", "post_event")

PHASE_LABELS = {
    "before_event": "Before Event",
    "during_event": "During Event",
    "end_event": "End Event",
    "post_event": "Post Event",
}

# Lifecycle tags for questions and prompt templates
ACTIVE = "active"
RETIRED = "retired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Incident(Base):
    __tablename__ = "incident"

    incident_id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    company_id: Mapped[str | None] = mapped_column(String(64))

    reporter_name: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    participant_name: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    location: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    event_date_time: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    created_by: Mapped[str | None] = mapped_column(String(64))

    # Workflow status (owned by WorkflowStateMachine)
    capture_status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    overall_status: Mapped[str] = mapped_column(String(30), nullable=False, default="capture_pending")
    analysis_status: Mapped[str] = mapped_column(String(20), nullable=False, default="not_started")

    # Progress flags
    questions_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    narrative_enhanced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    analysis_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    answered_phases: Mapped[list[str]] = mapped_column(JsonColumn, nullable=False, default=list)

    capture_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_incident_company_id", "company_id"),
        Index("ix_incident_overall_status", "overall_status"),
    )


class Narrative(Base):
    __tablename__ = "incident_narrative"

    narrative_id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    incident_id: Mapped[UUID] = mapped_column(String(64), nullable=False, unique=True)

    # user-provided text
    before_event: Mapped[str] = mapped_column(Text, nullable=False, default="")
    during_event: Mapped[str] = mapped_column(Text, nullable=False, default="")
    end_event: Mapped[str] = mapped_column(Text, nullable=False, default="")
    post_event: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # enhanced text
    before_event_extra: Mapped[str | None] = mapped_column(Text)
    during_event_extra: Mapped[str | None] = mapped_column(Text)
    end_event_extra: Mapped[str | None] = mapped_column(Text)
    post_event_extra: Mapped[str | None] = mapped_column(Text)

    # memoized consolidations, cleared on every edit
    consolidated_narrative: Mapped[str | None] = mapped_column(Text)
    consolidated_enhanced: Mapped[str | None] = mapped_column(Text)

    content_fingerprint: Mapped[str | None] = mapped_column(String(64))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    enhanced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ClarificationPhaseState(Base):
    __tablename__ = "clarification_phase_state"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    incident_id: Mapped[UUID] = mapped_column(String(64), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)

    # fingerprint of the text the active batch was generated from
    narrative_fingerprint: Mapped[str | None] = mapped_column(String(64))
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_correlation_id: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("incident_id", "phase", name="uq_phase_state_incident_phase"),
    )


class ClarificationQuestion(Base):
    __tablename__ = "clarification_question"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    incident_id: Mapped[UUID] = mapped_column(String(64), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    question_id: Mapped[str] = mapped_column(String(64), nullable=False)

    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    question_order: Mapped[int] = mapped_column(Integer, nullable=False)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # provenance
    ai_model: Mapped[str | None] = mapped_column(String)
    prompt_version: Mapped[str | None] = mapped_column(String)
    ai_backed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64))
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lifecycle: Mapped[str] = mapped_column(String(20), nullable=False, default=ACTIVE)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("incident_id", "phase", "question_id", name="uq_question_identity"),
        Index("ix_question_incident_phase", "incident_id", "phase"),
    )


class ClarificationAnswer(Base):
    __tablename__ = "clarification_answer"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    incident_id: Mapped[UUID] = mapped_column(String(64), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    question_id: Mapped[str] = mapped_column(String(64), nullable=False)

    answer_text: Mapped[str] = mapped_column(Text, nullable=False)
    character_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    answered_by: Mapped[str | None] = mapped_column(String(64))
    answered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("incident_id", "phase", "question_id", name="uq_answer_identity"),
        Index("ix_answer_incident_phase", "incident_id", "phase"),
    )


class PromptTemplate(Base):
    __tablename__ = "prompt_template"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    prompt_name: Mapped[str] = mapped_column(String, nullable=False)
    prompt_version: Mapped[str] = mapped_column(String, nullable=False)
    prompt_template: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    subsystem: Mapped[str | None] = mapped_column(String)
    workflow_step: Mapped[str | None] = mapped_column(String)
    ai_model: Mapped[str | None] = mapped_column(String)
    max_tokens: Mapped[int | None] = mapped_column(Integer)
    temperature: Mapped[float | None] = mapped_column(Float)

    lifecycle: Mapped[str] = mapped_column(String(20), nullable=False, default=ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by: Mapped[str | None] = mapped_column(String(64))
    replaced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    replaced_by: Mapped[str | None] = mapped_column(String)

    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_response_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    __table_args__ = (
        UniqueConstraint("prompt_name", "prompt_version", name="uq_prompt_name_version"),
        Index("ix_prompt_name_lifecycle", "prompt_name", "lifecycle"),
    )


class AIRequestLog(Base):
    __tablename__ = "ai_request_log"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=new_id)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str | None] = mapped_column(String)
    prompt_template: Mapped[str | None] = mapped_column(String)
    incident_id: Mapped[str | None] = mapped_column(String(64))
    phase: Mapped[str | None] = mapped_column(String(20))

    processing_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tokens_used: Mapped[int | None] = mapped_column(Integer)
    cost_usd: Mapped[float | None] = mapped_column(Float)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_ai_request_log_correlation_id", "correlation_id"),
        Index("ix_ai_request_log_incident_id", "incident_id"),
    )


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = mapped_column(String, primary_key=True, default=new_id)
    sender_id = mapped_column(String, nullable=False)      # "<app_key>::<incident_id>"
    receiver_id = mapped_column(String, nullable=False)    # worker QUEUE_RECEIVER_ID
    type = mapped_column(String, nullable=False)
    payload = mapped_column(JsonColumn, nullable=False)

    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
