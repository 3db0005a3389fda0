"""
Supervisor Continuity - Error Taxonomy
======================================

Every error raised to callers derives from ContinuityError and belongs to
exactly one kind, so callers (and the API layer) can branch on the kind:

- ValidationError: caller mistake, surfaced immediately, never retried
- NotFoundError: reference to a nonexistent entity
- ConflictError: the write collides with existing state
- ConsistencyError: stored data is corrupt; fail loudly, no fallback

Execution failures inside the fix loop (agent failed, verification failed,
timeouts, cancellation) are not exceptions. They are recorded as
FixAttempt rows and only surface through an escalation handoff.
"""

from typing import Any, Optional


class ContinuityError(Exception):
    """Base exception for the continuity core."""

    code = "CONTINUITY_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


# ==========================================================================
# Kinds
# ==========================================================================

class ValidationError(ContinuityError):
    """Caller supplied something the core will never accept."""

    code = "VALIDATION_ERROR"


class NotFoundError(ContinuityError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"


class ConflictError(ContinuityError):
    """Write collides with existing state."""

    code = "CONFLICT"


class ConsistencyError(ContinuityError):
    """
    Stored data contradicts itself.

    Indicates corruption or data loss. Never degrade to a best-effort
    fallback when this is raised.
    """

    code = "CONSISTENCY_ERROR"


# ==========================================================================
# Validation
# ==========================================================================

class InvalidEventError(ValidationError):
    """Event type outside the closed enumeration or malformed payload."""

    code = "INVALID_EVENT"


class InvalidKeyFormatError(ValidationError):
    """Project name or instance id does not match the expected format."""

    code = "INVALID_KEY_FORMAT"


class InvalidRetryNumberError(ValidationError):
    """Retry number outside [1, max_retries]."""

    code = "INVALID_RETRY_NUMBER"

    def __init__(self, retry_number: int, max_retries: int):
        super().__init__(
            f"retry_number must be in [1, {max_retries}], got {retry_number}",
            retry_number=retry_number,
            max_retries=max_retries,
        )


class InstanceClosedError(ValidationError):
    """Closed instances never become active again."""

    code = "INSTANCE_CLOSED"


class AlreadyEscalatedError(ValidationError):
    """The fix loop stopped permanently for this test id."""

    code = "ALREADY_ESCALATED"

    def __init__(self, test_id: str, handoff_path: Optional[str] = None):
        super().__init__(
            f"Test {test_id} was escalated to a human; automated fixing is closed",
            test_id=test_id,
            handoff_path=handoff_path,
        )


# ==========================================================================
# Not found
# ==========================================================================

class InstanceNotFoundError(NotFoundError):
    code = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str, detail: Optional[str] = None):
        super().__init__(
            detail or f"Instance not found: {instance_id}",
            instance_id=instance_id,
        )


class CheckpointNotFoundError(NotFoundError):
    code = "CHECKPOINT_NOT_FOUND"


class EventNotFoundError(NotFoundError):
    code = "EVENT_NOT_FOUND"


# ==========================================================================
# Conflict / consistency
# ==========================================================================

class DuplicateInstanceError(ConflictError):
    code = "DUPLICATE_INSTANCE"

    def __init__(self, instance_id: str):
        super().__init__(f"Instance id already registered: {instance_id}", instance_id=instance_id)


class CheckpointError(ConsistencyError):
    """Checkpoint cannot be created or loaded without losing data."""

    code = "CHECKPOINT_ERROR"
