"""
SQLAlchemy ORM Models for the Verifly Verification Engine

This module defines the durable schema of the verification engine:
- UUID primary keys
- Timestamps for all records (created_at, updated_at)
- JSON payloads stored as JSONB on PostgreSQL, JSON elsewhere
- A partial unique index enforcing one active run per application

Tables:
1. verification_runs - One row per verification attempt
2. source_hits - Matched records returned by a source for a run
3. policies - Versioned, time-boxed scoring policies
4. audit_logs - Verification audit trail
5. scheduled_tasks - Durable delayed tasks (notification retries)
"""

import re
import unicodedata
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Numeric,
    ForeignKey, Index, UniqueConstraint, Enum, JSON, Uuid, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON on SQLite and others
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================
# ENUMS
# ============================================

class RunStatus(str, PyEnum):
    """Lifecycle status of a verification run"""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# A run in one of these states blocks a new run for the same application
ACTIVE_RUN_STATUSES = (RunStatus.QUEUED, RunStatus.IN_PROGRESS)
RETRYABLE_RUN_STATUSES = (RunStatus.FAILED, RunStatus.COMPLETED, RunStatus.CANCELLED)


class Decision(str, PyEnum):
    """Final verdict of a completed run"""
    CLEAR = "clear"
    REVIEW = "review"
    NOT_CLEAR = "not_clear"


class MatchType(str, PyEnum):
    """How a hit was matched"""
    EXACT = "exact"
    FUZZY = "fuzzy"
    PHONETIC = "phonetic"


class Severity(str, PyEnum):
    """Severity of a hit"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditAction(str, PyEnum):
    """Type of audit action"""
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_COMPLETED = "verification_completed"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_RETRIED = "verification_retried"
    NOTIFICATION_FAILED = "notification_failed"


class TaskStatus(str, PyEnum):
    """Status of a scheduled task"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# VERIFICATION MODELS
# ============================================

class VerificationRun(Base, TimestampMixin):
    """
    One execution attempt of the verification pipeline for an application.

    Created queued by the coordinator, mutated only by the coordinator
    while processing. Retry resets the same row back to queued.
    """
    __tablename__ = "verification_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    # Application under verification (owned by the application service)
    application_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True
    )

    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="run_status", values_callable=_enum_values),
        nullable=False,
        default=RunStatus.QUEUED,
        index=True
    )

    # Set only when status is completed
    decision: Mapped[Optional[Decision]] = mapped_column(
        Enum(Decision, name="run_decision", values_callable=_enum_values),
        nullable=True
    )
    risk_score: Mapped[Optional[float]] = mapped_column(
        Numeric(5, 2, asdecimal=False),
        nullable=True
    )
    reason_codes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Pinned at creation, never changed afterwards. policy_id NULL means the
    # configured default policy, which has no stored row.
    policy_version: Mapped[str] = mapped_column(String(50), nullable=False)
    policy_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("policies.id", ondelete="RESTRICT"),
        nullable=True
    )

    # source name -> status payload
    source_results: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    scoring_breakdown: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Why a run failed; empty for completed runs
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    hits: Mapped[List["SourceHit"]] = relationship(
        "SourceHit",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin"
    )

    __table_args__ = (
        # One queued/in_progress run per application
        Index(
            'uq_verification_active_run',
            'application_id',
            unique=True,
            postgresql_where=text("status IN ('queued', 'in_progress')"),
            sqlite_where=text("status IN ('queued', 'in_progress')"),
        ),
        Index('ix_verification_app_created', 'application_id', 'created_at'),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def __repr__(self) -> str:
        return f"<VerificationRun(id={self.id}, application='{self.application_id}', status={self.status})>"


class SourceHit(Base, TimestampMixin):
    """
    A single matched record returned by a source for a run.

    Hits have no identity outside their run and are deleted with it.
    """
    __tablename__ = "source_hits"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    verification_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("verification_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    source_name: Mapped[str] = mapped_column(String(50), nullable=False)
    source_type: Mapped[str] = mapped_column(String(100), nullable=False, default="database")

    # Normalized input actually sent to the source
    query_terms: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    match_confidence: Mapped[float] = mapped_column(
        Numeric(5, 2, asdecimal=False),
        nullable=False,
        default=0
    )
    match_type: Mapped[MatchType] = mapped_column(
        Enum(MatchType, name="match_type", values_callable=_enum_values),
        nullable=False,
        default=MatchType.FUZZY
    )
    severity: Mapped[Severity] = mapped_column(
        Enum(Severity, name="hit_severity", values_callable=_enum_values),
        nullable=False,
        default=Severity.LOW
    )

    record_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    record_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    jurisdiction: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    record_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    hit_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    run: Mapped["VerificationRun"] = relationship(
        "VerificationRun",
        back_populates="hits"
    )

    __table_args__ = (
        Index('ix_source_hit_run_source', 'verification_run_id', 'source_name'),
        Index('ix_source_hit_confidence', 'match_confidence'),
    )

    def __repr__(self) -> str:
        return f"<SourceHit(id={self.id}, source='{self.source_name}', confidence={self.match_confidence})>"


class Policy(Base, TimestampMixin):
    """
    Versioned, time-boxed scoring policy.

    destination_country NULL means the policy is global.
    effective_until NULL means the policy is open-ended.
    """
    __tablename__ = "policies"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    rules: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    thresholds: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    source_weights: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    destination_country: Mapped[Optional[str]] = mapped_column(String(3), nullable=True, index=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint('name', 'version', name='uq_policy_name_version'),
        Index('ix_policy_active_effective', 'is_active', 'effective_from'),
    )

    def __repr__(self) -> str:
        return f"<Policy(name='{self.name}', version='{self.version}', destination={self.destination_country})>"


# ============================================
# AUDIT AND SYSTEM MODELS
# ============================================

class AuditLog(Base):
    """
    Verification audit trail.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    # No updated_at - audit logs are immutable
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True
    )

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action", values_callable=_enum_values),
        nullable=False,
        index=True
    )

    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    actor_ip: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Before/after state, e.g. the outcome a retry discarded
    old_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_audit_timestamp_action', 'timestamp', 'action'),
        Index('ix_audit_resource', 'resource_type', 'resource_id'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, resource='{self.resource_type}')>"


class ScheduledTask(Base, TimestampMixin):
    """
    Durable delayed task.

    Rows survive restarts; the scheduler claims pending rows whose run_at
    has passed and dispatches them by task_type.
    """
    __tablename__ = "scheduled_tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    task_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="task_status", values_callable=_enum_values),
        nullable=False,
        default=TaskStatus.PENDING
    )
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_scheduled_task_due', 'status', 'run_at'),
    )

    def __repr__(self) -> str:
        return f"<ScheduledTask(id={self.id}, type='{self.task_type}', status={self.status})>"


# ============================================
# HELPER FUNCTIONS
# ============================================

def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a name before it is sent to a source.

    Removes accents, converts to lowercase, normalizes whitespace.

    Args:
        name: The name to normalize (can be None)

    Returns:
        Normalized name string, or empty string if name is None/empty
    """
    if not name:
        return ""

    # Decompose accents and drop the combining marks
    normalized = unicodedata.normalize('NFD', name)
    normalized = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.lower().strip()


def normalize_document(doc_number: Optional[str]) -> str:
    """
    Normalize a document number for consistent comparison.

    Removes spaces, dashes, dots, and converts to uppercase.

    Args:
        doc_number: The document number to normalize (can be None)

    Returns:
        Normalized document number string, or empty string if doc_number is None/empty
    """
    if not doc_number:
        return ""

    normalized = re.sub(r'[\s\-\.\,\/]', '', doc_number)
    return normalized.upper()
