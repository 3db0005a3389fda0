"""
Supervisor Continuity - Pydantic Schemas
========================================

Request and response schemas for the HTTP API.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from continuity.core.models import (
    CapabilityTier,
    CheckpointType,
    Complexity,
    EscalationReason,
    EventType,
    FailureCategory,
    FixSessionStatus,
    FixStrategy,
    InstanceRole,
    InstanceStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    heartbeat_monitor: str


# ==========================================================================
# Instances
# ==========================================================================

class InstanceCreate(BaseSchema):
    project: str = Field(min_length=1, max_length=64)
    role: InstanceRole
    host: Optional[str] = Field(None, max_length=255)
    emit_event: bool = Field(True, description="Record instance_registered as the first event")


class HeartbeatRequest(BaseSchema):
    context_percent: Optional[int] = Field(None, ge=0, le=100)
    current_epic: Optional[str] = Field(None, max_length=100)
    record_event: bool = False


class InstanceResponse(BaseSchema):
    instance_id: str
    project: str
    role: InstanceRole
    host: str
    status: InstanceStatus
    created_at: datetime
    last_heartbeat_at: datetime
    closed_at: Optional[datetime] = None
    context_percent: Optional[int] = None
    current_epic: Optional[str] = None
    heartbeat_age_seconds: float
    stale_timeout_seconds: float


class StaleNoticeResponse(BaseSchema):
    instance_id: str
    project: str
    last_heartbeat_at: datetime
    age_seconds: float
    timeout_seconds: float
    sequence_num: int


# ==========================================================================
# Events
# ==========================================================================

class EventCreate(BaseSchema):
    instance_id: str
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[dict[str, Any]] = None
    parent_event_id: Optional[UUID] = None


class EmitResponse(BaseSchema):
    event_id: str
    sequence_num: int
    timestamp: datetime


class EventResponse(BaseSchema):
    event_id: str
    instance_id: str
    event_type: EventType
    sequence_num: int
    timestamp: datetime
    event_data: dict[str, Any]
    metadata: Optional[dict[str, Any]] = None
    parent_event_id: Optional[str] = None
    root_event_id: Optional[str] = None
    depth: int = 0


class EventQueryResponse(BaseSchema):
    events: list[EventResponse]
    total_count: int
    has_more: bool


class ReplayResponse(BaseSchema):
    final_state: dict[str, Any]
    events_replayed: int
    duration_ms: float
    to_sequence_num: int


class CountResponse(BaseSchema):
    instance_id: str
    count: int


# ==========================================================================
# Checkpoints
# ==========================================================================

class CheckpointCreate(BaseSchema):
    checkpoint_type: CheckpointType = CheckpointType.MANUAL
    trigger: str = Field("manual_request", max_length=100)
    note: Optional[str] = None
    context_percent: Optional[int] = Field(None, ge=0, le=100)


class CheckpointResponse(BaseSchema):
    checkpoint_id: str
    instance_id: str
    checkpoint_type: CheckpointType
    sequence_num: int
    context_percent: Optional[int] = None
    trigger: str
    note: Optional[str] = None
    size_bytes: int
    created_at: datetime
    work_state: Optional[dict[str, Any]] = None


class ResumeRequest(BaseSchema):
    checkpoint_id: Optional[UUID] = None
    record_load: bool = True


class ConfidenceResponse(BaseSchema):
    score: int
    level: str
    reason: str
    warnings: list[str]
    auto_resume: bool


class ResumeResponse(BaseSchema):
    state: dict[str, Any]
    checkpoint_id: Optional[str] = None
    watermark: int
    events_replayed: int
    duration_ms: float
    from_checkpoint: bool
    confidence: Optional[ConfidenceResponse] = None


class CheckpointStatsResponse(BaseSchema):
    instance_id: str
    count: int
    total_bytes: int
    average_bytes: float
    latest_sequence_num: Optional[int] = None


# ==========================================================================
# Fix Loop
# ==========================================================================

class FixRequest(BaseSchema):
    """Start a fix loop from an explicit failure or a stored test_failed event."""
    test_id: Optional[str] = Field(None, max_length=500)
    error_message: str = ""
    stack_trace: Optional[str] = None
    instance_id: Optional[str] = None
    epic_id: Optional[str] = None
    files_involved: list[str] = Field(default_factory=list)
    event_id: Optional[UUID] = Field(None, description="test_failed event to fix")


class FixStartedResponse(BaseSchema):
    test_id: str
    status: str = "started"


class FixAttemptResponse(BaseSchema):
    id: UUID
    session_id: UUID
    test_id: str
    retry_number: int
    model_used: CapabilityTier
    fix_strategy: FixStrategy
    success: bool
    verification_passed: Optional[bool] = None
    error_message: Optional[str] = None
    commit_sha: Optional[str] = None
    cost_usd: Decimal
    tokens_used: int
    duration_seconds: float
    attempted_at: datetime


class FixSessionResponse(BaseSchema):
    id: UUID
    test_id: str
    instance_id: Optional[str] = None
    rca_id: Optional[UUID] = None
    status: FixSessionStatus
    max_retries: int
    escalation_reason: Optional[EscalationReason] = None
    handoff_path: Optional[str] = None
    handoff_markdown: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class FixCostResponse(BaseSchema):
    test_id: str
    total_cost_usd: Decimal
    breakdown: dict[str, dict[str, Any]]


class FixCancelResponse(BaseSchema):
    test_id: str
    cancelled: bool


class FixLearningResponse(BaseSchema):
    failure_pattern: str
    failure_category: FailureCategory
    fix_strategy: FixStrategy
    model_used: CapabilityTier
    complexity: Optional[Complexity] = None
    times_tried: int
    times_succeeded: int
    success_rate: float
    last_used: Optional[datetime] = None
