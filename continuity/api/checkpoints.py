"""
Checkpoints API Routes
======================

- GET  /api/v1/checkpoints/by-id/{checkpoint_id}   - One checkpoint with state
- POST /api/v1/checkpoints/{instance_id}           - Create a checkpoint
- GET  /api/v1/checkpoints/{instance_id}           - List checkpoints (newest first)
- GET  /api/v1/checkpoints/{instance_id}/stats     - Count and size totals
- POST /api/v1/checkpoints/{instance_id}/resume    - Resume from a checkpoint
"""

from fastapi import APIRouter, Depends, Query, status

from continuity.api.deps import get_checkpoints
from continuity.api.schemas import (
    CheckpointCreate,
    CheckpointResponse,
    CheckpointStatsResponse,
    ResumeRequest,
    ResumeResponse,
)
from continuity.core.session.checkpoints import CheckpointManager

router = APIRouter(prefix="/api/v1/checkpoints", tags=["checkpoints"])


@router.get("/by-id/{checkpoint_id}", response_model=CheckpointResponse)
async def get_checkpoint(
    checkpoint_id: str,
    checkpoints: CheckpointManager = Depends(get_checkpoints),
):
    return await checkpoints.get(checkpoint_id)


@router.post(
    "/{instance_id}",
    response_model=CheckpointResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkpoint(
    instance_id: str,
    request: CheckpointCreate,
    checkpoints: CheckpointManager = Depends(get_checkpoints),
):
    return await checkpoints.create(
        instance_id,
        checkpoint_type=request.checkpoint_type,
        trigger=request.trigger,
        note=request.note,
        context_percent=request.context_percent,
    )


@router.get("/{instance_id}", response_model=list[CheckpointResponse])
async def list_checkpoints(
    instance_id: str,
    limit: int = Query(20, ge=1, le=200),
    include_state: bool = False,
    checkpoints: CheckpointManager = Depends(get_checkpoints),
):
    views = await checkpoints.list_checkpoints(instance_id, limit=limit)
    responses = [CheckpointResponse.model_validate(view) for view in views]
    if not include_state:
        for response in responses:
            response.work_state = None
    return responses


@router.get("/{instance_id}/stats", response_model=CheckpointStatsResponse)
async def checkpoint_stats(
    instance_id: str,
    checkpoints: CheckpointManager = Depends(get_checkpoints),
):
    return await checkpoints.stats(instance_id)


@router.post("/{instance_id}/resume", response_model=ResumeResponse)
async def resume(
    instance_id: str,
    request: ResumeRequest,
    checkpoints: CheckpointManager = Depends(get_checkpoints),
):
    """
    Latest (or given) checkpoint plus the events after its watermark.

    A checkpoint whose watermark event is gone fails with 500
    CHECKPOINT_ERROR rather than silently replaying from scratch.
    """
    return await checkpoints.resume(
        instance_id,
        checkpoint_id=request.checkpoint_id,
        record_load=request.record_load,
    )
