"""
Supervisor Continuity - Database Models
=======================================

SQLAlchemy models for instances, the append-only event log, checkpoints
and the adaptive fix loop.

Events and checkpoints are written once and never updated. Fix attempts
are inserted once; verification_passed is filled in exactly once after
the re-run of the failing check.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from continuity.core.clock import ensure_utc, utcnow
from continuity.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class InstanceRole(str, enum.Enum):
    """Role an instance plays in the supervision tree."""
    PS = "PS"  # Project supervisor (orchestrator for one project)
    MS = "MS"  # Meta supervisor (orchestrates supervisors)
    SA = "SA"  # Sub-agent spawned for a single task


class InstanceStatus(str, enum.Enum):
    """Computed on every read; never stored."""
    ACTIVE = "active"
    STALE = "stale"
    CLOSED = "closed"


class EventCategory(str, enum.Enum):
    LIFECYCLE = "lifecycle"
    EPIC = "epic"
    TESTING = "testing"
    VERSION_CONTROL = "version_control"
    DEPLOYMENT = "deployment"
    WORK_STATE = "work_state"
    PLANNING = "planning"


class EventType(str, enum.Enum):
    """
    Closed set of event types.

    Adding a member requires a schema migration (the column carries a
    CHECK constraint over these values).
    """
    # Lifecycle
    INSTANCE_REGISTERED = "instance_registered"
    INSTANCE_HEARTBEAT = "instance_heartbeat"
    INSTANCE_STALE = "instance_stale"
    # Epic / task
    EPIC_STARTED = "epic_started"
    EPIC_COMPLETED = "epic_completed"
    EPIC_FAILED = "epic_failed"
    # Testing
    TEST_STARTED = "test_started"
    TEST_PASSED = "test_passed"
    TEST_FAILED = "test_failed"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    # Version control
    COMMIT_CREATED = "commit_created"
    PR_CREATED = "pr_created"
    PR_MERGED = "pr_merged"
    # Deployment
    DEPLOYMENT_STARTED = "deployment_started"
    DEPLOYMENT_COMPLETED = "deployment_completed"
    DEPLOYMENT_FAILED = "deployment_failed"
    # Work state
    CONTEXT_WINDOW_UPDATED = "context_window_updated"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_LOADED = "checkpoint_loaded"
    # Planning
    EPIC_PLANNED = "epic_planned"
    FEATURE_REQUESTED = "feature_requested"
    TASK_SPAWNED = "task_spawned"

    @property
    def category(self) -> EventCategory:
        return EVENT_CATEGORIES[self]


EVENT_CATEGORIES: dict[EventType, EventCategory] = {
    EventType.INSTANCE_REGISTERED: EventCategory.LIFECYCLE,
    EventType.INSTANCE_HEARTBEAT: EventCategory.LIFECYCLE,
    EventType.INSTANCE_STALE: EventCategory.LIFECYCLE,
    EventType.EPIC_STARTED: EventCategory.EPIC,
    EventType.EPIC_COMPLETED: EventCategory.EPIC,
    EventType.EPIC_FAILED: EventCategory.EPIC,
    EventType.TEST_STARTED: EventCategory.TESTING,
    EventType.TEST_PASSED: EventCategory.TESTING,
    EventType.TEST_FAILED: EventCategory.TESTING,
    EventType.VALIDATION_PASSED: EventCategory.TESTING,
    EventType.VALIDATION_FAILED: EventCategory.TESTING,
    EventType.COMMIT_CREATED: EventCategory.VERSION_CONTROL,
    EventType.PR_CREATED: EventCategory.VERSION_CONTROL,
    EventType.PR_MERGED: EventCategory.VERSION_CONTROL,
    EventType.DEPLOYMENT_STARTED: EventCategory.DEPLOYMENT,
    EventType.DEPLOYMENT_COMPLETED: EventCategory.DEPLOYMENT,
    EventType.DEPLOYMENT_FAILED: EventCategory.DEPLOYMENT,
    EventType.CONTEXT_WINDOW_UPDATED: EventCategory.WORK_STATE,
    EventType.CHECKPOINT_CREATED: EventCategory.WORK_STATE,
    EventType.CHECKPOINT_LOADED: EventCategory.WORK_STATE,
    EventType.EPIC_PLANNED: EventCategory.PLANNING,
    EventType.FEATURE_REQUESTED: EventCategory.PLANNING,
    EventType.TASK_SPAWNED: EventCategory.PLANNING,
}


class CheckpointType(str, enum.Enum):
    """What caused a checkpoint to be taken."""
    CONTEXT_WINDOW = "context_window"
    EPIC_COMPLETION = "epic_completion"
    MANUAL = "manual"


class FailureCategory(str, enum.Enum):
    SYNTAX = "syntax"
    LOGIC = "logic"
    INTEGRATION = "integration"
    ENVIRONMENT = "environment"
    UNKNOWN = "unknown"


class Complexity(str, enum.Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    REQUIRES_HUMAN = "requires_human"


class CapabilityTier(str, enum.Enum):
    """Fix-agent tiers, cheapest first."""
    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER = [CapabilityTier.HAIKU, CapabilityTier.SONNET, CapabilityTier.OPUS]


class FixStrategy(str, enum.Enum):
    # Syntax
    TYPO_CORRECTION = "typo_correction"
    SYNTAX_FIX = "syntax_fix"
    FORMATTING = "formatting"
    # Logic
    REFACTOR = "refactor"
    ALGORITHM_FIX = "algorithm_fix"
    CONDITION_FIX = "condition_fix"
    # Integration
    IMPORT_FIX = "import_fix"
    DEPENDENCY_ADD = "dependency_add"
    API_UPDATE = "api_update"
    # Environment
    ENV_VAR_ADD = "env_var_add"
    CONFIG_FIX = "config_fix"
    PERMISSION_FIX = "permission_fix"


class FixSessionStatus(str, enum.Enum):
    DIAGNOSING = "diagnosing"
    ITERATING = "iterating"
    SUCCEEDED = "succeeded"
    ESCALATED = "escalated"


class EscalationReason(str, enum.Enum):
    REQUIRES_HUMAN = "requires_human"
    ARCHITECTURAL_CHANGE = "architectural_change"
    BUSINESS_LOGIC_AMBIGUITY = "business_logic_ambiguity"
    MAX_RETRIES_EXHAUSTED = "max_retries_exhausted"
    UNKNOWN_FAILURE_PATTERN = "unknown_failure_pattern"
    CANCELLED = "cancelled"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def value_enum(enum_cls: type[enum.Enum], length: int = 40) -> Enum:
    """Store enum values (not member names) as constrained strings."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=_enum_values,
        create_constraint=True,
        validate_strings=True,
    )


# ==========================================================================
# Session Continuity
# ==========================================================================

class Instance(Base):
    """
    One supervised execution context.

    Status is derived from closed_at and last_heartbeat_at on every read,
    so it can never drift from the heartbeat record.
    """

    __tablename__ = "instances"

    instance_id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )  # e.g., "odin-PS-ab12cd"
    project: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    role: Mapped[InstanceRole] = mapped_column(
        value_enum(InstanceRole, length=8),
        nullable=False,
    )
    host: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    last_heartbeat_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Reported with heartbeats
    context_percent: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    current_epic: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_instances_project_created", "project", "created_at"),
    )

    def compute_status(self, now: datetime, timeout_seconds: float) -> InstanceStatus:
        if self.closed_at is not None:
            return InstanceStatus.CLOSED
        age = (now - ensure_utc(self.last_heartbeat_at)).total_seconds()
        if age > timeout_seconds:
            return InstanceStatus.STALE
        return InstanceStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Instance {self.instance_id}>"


class InstanceSequence(Base):
    """
    Per-instance sequence counter.

    Incremented with UPDATE ... RETURNING inside the emitting transaction.
    The row lock taken by the UPDATE serialises emitters of one instance
    and nothing else.
    """

    __tablename__ = "instance_sequences"

    instance_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("instances.instance_id", ondelete="CASCADE"),
        primary_key=True,
    )
    last_sequence_num: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<InstanceSequence {self.instance_id}@{self.last_sequence_num}>"


class Event(Base):
    """Immutable, sequenced fact about an instance."""

    __tablename__ = "events"

    event_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    instance_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("instances.instance_id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[EventType] = mapped_column(
        value_enum(EventType),
        nullable=False,
    )
    sequence_num: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    event_data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )
    # Lineage: checked on write, no FK so purging one instance never
    # rewrites another instance's events
    parent_event_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    root_event_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    depth: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        UniqueConstraint("instance_id", "sequence_num", name="uq_events_instance_sequence"),
        Index("ix_events_type_timestamp", "event_type", "timestamp"),
        Index("ix_events_instance_timestamp", "instance_id", "timestamp"),
        CheckConstraint("depth >= 0", name="ck_events_depth"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.instance_id}#{self.sequence_num} {self.event_type.value}>"


class Checkpoint(Base):
    """
    Cached replay result at a known watermark.

    Later checkpoints supersede earlier ones; none are deleted.
    """

    __tablename__ = "checkpoints"

    checkpoint_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    instance_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("instances.instance_id", ondelete="CASCADE"),
        nullable=False,
    )
    checkpoint_type: Mapped[CheckpointType] = mapped_column(
        value_enum(CheckpointType, length=20),
        nullable=False,
    )
    sequence_num: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )  # Watermark into the event log
    context_percent: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    work_state: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    trigger: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )  # e.g., "automatic_threshold", "manual_request"
    note: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    size_bytes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_checkpoints_instance_sequence", "instance_id", "sequence_num"),
        Index("ix_checkpoints_type_created", "checkpoint_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Checkpoint {self.instance_id}@{self.sequence_num} [{self.checkpoint_type.value}]>"


# ==========================================================================
# Adaptive Fix Loop
# ==========================================================================

class RootCauseAnalysis(Base):
    """Diagnosis of one failing test."""

    __tablename__ = "root_cause_analyses"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    test_id: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        index=True,
    )
    instance_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    epic_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    failure_category: Mapped[FailureCategory] = mapped_column(
        value_enum(FailureCategory, length=20),
        nullable=False,
    )
    complexity: Mapped[Complexity] = mapped_column(
        value_enum(Complexity, length=20),
        nullable=False,
    )
    root_cause: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    symptoms: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    evidence: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    diagnosis_reasoning: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    confidence: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    recommended_strategy: Mapped[Optional[FixStrategy]] = mapped_column(
        value_enum(FixStrategy, length=30),
        nullable=True,
    )
    estimated_difficulty: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )  # Expected retries, 1-3
    analyzed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<RootCauseAnalysis {self.test_id} [{self.failure_category.value}/{self.complexity.value}]>"


class FixSession(Base):
    """One run of the fix loop for one failing test."""

    __tablename__ = "fix_sessions"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    test_id: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        index=True,
    )
    instance_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    rca_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("root_cause_analyses.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[FixSessionStatus] = mapped_column(
        value_enum(FixSessionStatus, length=20),
        default=FixSessionStatus.DIAGNOSING,
        nullable=False,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    escalation_reason: Mapped[Optional[EscalationReason]] = mapped_column(
        value_enum(EscalationReason, length=30),
        nullable=True,
    )
    handoff_path: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )
    # Kept when the handoff file could not be written
    handoff_markdown: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<FixSession {self.test_id} [{self.status.value}]>"


class FixAttempt(Base):
    """One try at repairing a failing test."""

    __tablename__ = "fix_attempts"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("fix_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    test_id: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        index=True,
    )
    rca_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("root_cause_analyses.id", ondelete="SET NULL"),
        nullable=True,
    )
    retry_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    model_used: Mapped[CapabilityTier] = mapped_column(
        value_enum(CapabilityTier, length=20),
        nullable=False,
    )
    fix_strategy: Mapped[FixStrategy] = mapped_column(
        value_enum(FixStrategy, length=30),
        nullable=False,
    )
    changes_made: Mapped[str] = mapped_column(
        Text,
        default="",
        nullable=False,
    )  # Agent output / diff summary
    commit_sha: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    success: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
    )
    verification_passed: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(10, 6),
        default=Decimal("0"),
        nullable=False,
    )
    tokens_used: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    duration_seconds: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("session_id", "retry_number", name="uq_fix_attempts_session_retry"),
    )

    @property
    def fixed(self) -> bool:
        return self.success and self.verification_passed is True

    def __repr__(self) -> str:
        return f"<FixAttempt {self.test_id} #{self.retry_number} {self.model_used.value}/{self.fix_strategy.value}>"


class FixLearning(Base):
    """What fixed what: failure pattern -> strategy outcome counts."""

    __tablename__ = "fix_learnings"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    failure_pattern: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        index=True,
    )  # e.g., "ModuleNotFoundError: boto3"
    failure_category: Mapped[FailureCategory] = mapped_column(
        value_enum(FailureCategory, length=20),
        nullable=False,
    )
    fix_strategy: Mapped[FixStrategy] = mapped_column(
        value_enum(FixStrategy, length=30),
        nullable=False,
    )
    model_used: Mapped[CapabilityTier] = mapped_column(
        value_enum(CapabilityTier, length=20),
        nullable=False,
    )  # Tier of the most recent attempt
    complexity: Mapped[Optional[Complexity]] = mapped_column(
        value_enum(Complexity, length=20),
        nullable=True,
    )
    times_tried: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    times_succeeded: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    success_rate: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    last_used: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("failure_pattern", "fix_strategy", name="uq_fix_learnings_pattern_strategy"),
    )

    def __repr__(self) -> str:
        return f"<FixLearning {self.fix_strategy.value} {self.success_rate:.0%}>"
