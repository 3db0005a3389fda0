"""
Fix Loop API Routes
===================

- POST /api/v1/fixes                          - Start a fix loop (runs in background)
- GET  /api/v1/fixes/running                  - Test ids with a loop in flight
- GET  /api/v1/fixes/learnings                - Reliable learned fixes
- GET  /api/v1/fixes/{test_id}/sessions       - Fix sessions for a test
- GET  /api/v1/fixes/{test_id}/attempts       - Recorded attempts for a test
- GET  /api/v1/fixes/{test_id}/cost           - Cost totals per capability tier
- GET  /api/v1/fixes/{test_id}/summary        - Attempt and cost summary
- POST /api/v1/fixes/{test_id}/cancel         - Cancel the running loop

test_id may contain slashes (pytest node ids, test file paths).
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from continuity.api.deps import (
    get_event_store,
    get_fix_agent,
    get_learning_store,
    get_retry_manager,
)
from continuity.api.schemas import (
    FixAttemptResponse,
    FixCancelResponse,
    FixCostResponse,
    FixLearningResponse,
    FixRequest,
    FixSessionResponse,
    FixStartedResponse,
)
from continuity.core.errors import EventNotFoundError, ValidationError
from continuity.core.fixing.agent import AdaptiveFixAgent
from continuity.core.fixing.learning import FixLearningStore
from continuity.core.fixing.rca import FailureReport
from continuity.core.fixing.retry_manager import RetryManager
from continuity.core.session.event_store import EventStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/fixes", tags=["fixes"])


async def _failure_from_request(request: FixRequest, event_store: EventStore) -> FailureReport:
    if request.event_id is not None:
        event = await event_store.get_by_id(request.event_id)
        if event is None:
            raise EventNotFoundError(
                f"Event not found: {request.event_id}",
                event_id=str(request.event_id),
            )
        failure = FailureReport.from_event(event)
        if request.test_id:
            failure.test_id = request.test_id
        return failure

    if not request.test_id:
        raise ValidationError("test_id is required when no event_id is given")
    return FailureReport(
        test_id=request.test_id,
        error_message=request.error_message,
        stack_trace=request.stack_trace,
        instance_id=request.instance_id,
        epic_id=request.epic_id,
        files_involved=request.files_involved,
    )


@router.post("", response_model=FixStartedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_fix(
    request: FixRequest,
    event_store: EventStore = Depends(get_event_store),
    fix_agent: AdaptiveFixAgent = Depends(get_fix_agent),
):
    """
    Start the fix loop for a failing test.

    Accepts either a stored test_failed event (event_id) or the failure
    fields directly. Rejections (already escalated, loop already running,
    unknown instance) happen before the loop starts; everything after is
    visible through the sessions and attempts endpoints.
    """
    failure = await _failure_from_request(request, event_store)
    await fix_agent.start(failure)
    logger.info("Fix loop started", test_id=failure.test_id, instance_id=failure.instance_id)
    return FixStartedResponse(test_id=failure.test_id)


@router.get("/running", response_model=list[str])
async def running_fixes(fix_agent: AdaptiveFixAgent = Depends(get_fix_agent)):
    return fix_agent.running


@router.get("/learnings", response_model=list[FixLearningResponse])
async def list_learnings(
    min_success_rate: Optional[float] = Query(None, ge=0.0, le=1.0),
    limit: int = Query(50, ge=1, le=500),
    learning_store: FixLearningStore = Depends(get_learning_store),
):
    return await learning_store.reliable_learnings(min_success_rate=min_success_rate, limit=limit)


@router.get("/{test_id:path}/sessions", response_model=list[FixSessionResponse])
async def list_sessions(
    test_id: str,
    retry_manager: RetryManager = Depends(get_retry_manager),
):
    return await retry_manager.list_sessions(test_id)


@router.get("/{test_id:path}/attempts", response_model=list[FixAttemptResponse])
async def list_attempts(
    test_id: str,
    retry_manager: RetryManager = Depends(get_retry_manager),
):
    return await retry_manager.get_attempts(test_id=test_id)


@router.get("/{test_id:path}/cost", response_model=FixCostResponse)
async def fix_cost(
    test_id: str,
    retry_manager: RetryManager = Depends(get_retry_manager),
):
    """Every attempt counts, including timed-out and cancelled ones."""
    return FixCostResponse(
        test_id=test_id,
        total_cost_usd=await retry_manager.total_cost(test_id=test_id),
        breakdown=await retry_manager.cost_breakdown(test_id=test_id),
    )


@router.get("/{test_id:path}/summary", response_model=dict[str, Any])
async def fix_summary(
    test_id: str,
    retry_manager: RetryManager = Depends(get_retry_manager),
):
    return await retry_manager.summary(test_id)


@router.post("/{test_id:path}/cancel", response_model=FixCancelResponse)
async def cancel_fix(
    test_id: str,
    fix_agent: AdaptiveFixAgent = Depends(get_fix_agent),
):
    """Request cancellation; the loop records a cancelled attempt and escalates."""
    return FixCancelResponse(test_id=test_id, cancelled=fix_agent.cancel(test_id))
