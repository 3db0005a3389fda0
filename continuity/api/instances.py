"""
Instances API Routes
====================

- POST /api/v1/instances                     - Register an instance
- GET  /api/v1/instances                     - List instances
- GET  /api/v1/instances/{id}                - Instance details (id or unique prefix)
- POST /api/v1/instances/{id}/heartbeat      - Record a heartbeat
- POST /api/v1/instances/{id}/close          - Close an instance
- POST /api/v1/instances/stale-check         - Run one staleness scan now
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from continuity.api.deps import get_event_store, get_monitor, get_registry
from continuity.api.schemas import (
    HeartbeatRequest,
    InstanceCreate,
    InstanceResponse,
    StaleNoticeResponse,
)
from continuity.core.models import EventType, InstanceRole, InstanceStatus
from continuity.core.session.event_store import EventStore
from continuity.core.session.heartbeat import HeartbeatMonitor
from continuity.core.session.registry import InstanceRegistry

router = APIRouter(prefix="/api/v1/instances", tags=["instances"])


@router.post("", response_model=InstanceResponse, status_code=status.HTTP_201_CREATED)
async def register_instance(
    request: InstanceCreate,
    registry: InstanceRegistry = Depends(get_registry),
    event_store: EventStore = Depends(get_event_store),
):
    """Register an instance; optionally record instance_registered as event #1."""
    view = await registry.register(request.project, request.role, host=request.host)
    if request.emit_event:
        await event_store.emit(
            view.instance_id,
            EventType.INSTANCE_REGISTERED,
            {
                "instance_type": view.role.value,
                "project": view.project,
                "host": view.host,
            },
        )
    return view


@router.get("", response_model=list[InstanceResponse])
async def list_instances(
    project: Optional[str] = None,
    role: Optional[InstanceRole] = None,
    status_filter: Optional[InstanceStatus] = Query(None, alias="status"),
    include_closed: bool = True,
    limit: int = Query(100, ge=1, le=1000),
    registry: InstanceRegistry = Depends(get_registry),
):
    return await registry.list_instances(
        project=project,
        role=role,
        status=status_filter,
        include_closed=include_closed,
        limit=limit,
    )


@router.post("/stale-check", response_model=list[StaleNoticeResponse])
async def run_stale_check(monitor: HeartbeatMonitor = Depends(get_monitor)):
    """Emit instance_stale for newly stale instances; already reported ones are skipped."""
    return await monitor.check_stale()


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str,
    registry: InstanceRegistry = Depends(get_registry),
):
    return await registry.get_instance_details(instance_id)


@router.post("/{instance_id}/heartbeat", response_model=InstanceResponse)
async def heartbeat(
    instance_id: str,
    request: HeartbeatRequest,
    monitor: HeartbeatMonitor = Depends(get_monitor),
):
    return await monitor.beat(
        instance_id,
        context_percent=request.context_percent,
        current_epic=request.current_epic,
        record_event=request.record_event,
    )


@router.post("/{instance_id}/close", response_model=InstanceResponse)
async def close_instance(
    instance_id: str,
    registry: InstanceRegistry = Depends(get_registry),
):
    return await registry.mark_closed(instance_id)
