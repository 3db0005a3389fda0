"""
Events API Routes
=================

- POST /api/v1/events                          - Emit an event
- GET  /api/v1/events/by-id/{event_id}         - One event
- GET  /api/v1/events/by-id/{event_id}/chain   - The event and its ancestors
- GET  /api/v1/events/by-id/{event_id}/children - Direct child events
- GET  /api/v1/events/{instance_id}            - Query an instance's events
- GET  /api/v1/events/{instance_id}/replay     - Replay work state
- GET  /api/v1/events/{instance_id}/aggregate  - Counts per event type
- GET  /api/v1/events/{instance_id}/latest     - Newest n events
- GET  /api/v1/events/{instance_id}/count      - Event count
"""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from continuity.api.deps import get_event_store
from continuity.api.schemas import (
    CountResponse,
    EmitResponse,
    EventCreate,
    EventQueryResponse,
    EventResponse,
    ReplayResponse,
)
from continuity.core.errors import EventNotFoundError
from continuity.core.session.event_store import EventStore

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.post("", response_model=EmitResponse, status_code=status.HTTP_201_CREATED)
async def emit_event(
    request: EventCreate,
    event_store: EventStore = Depends(get_event_store),
):
    """Append an event; the store assigns id, sequence number and timestamp."""
    return await event_store.emit(
        request.instance_id,
        request.event_type,
        request.event_data,
        metadata=request.metadata,
        parent_event_id=request.parent_event_id,
    )


@router.get("/by-id/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: str,
    event_store: EventStore = Depends(get_event_store),
):
    event = await event_store.get_by_id(event_id)
    if event is None:
        raise EventNotFoundError(f"Event not found: {event_id}", event_id=event_id)
    return event


@router.get("/by-id/{event_id}/chain", response_model=list[EventResponse])
async def get_event_chain(
    event_id: str,
    event_store: EventStore = Depends(get_event_store),
):
    """Causal chain ending at this event, root first."""
    return await event_store.get_chain(event_id)


@router.get("/by-id/{event_id}/children", response_model=list[EventResponse])
async def get_event_children(
    event_id: str,
    event_store: EventStore = Depends(get_event_store),
):
    return await event_store.get_children(event_id)


@router.get("/{instance_id}", response_model=EventQueryResponse)
async def query_events(
    instance_id: str,
    event_type: Optional[list[str]] = Query(None),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    keyword: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    order: Literal["asc", "desc"] = "asc",
    event_store: EventStore = Depends(get_event_store),
):
    """
    Filter events by type, time range and keyword.

    limit is clamped to the configured maximum; event_type may repeat.
    """
    return await event_store.query(
        instance_id,
        event_types=event_type,
        start_date=start_date,
        end_date=end_date,
        keyword=keyword,
        limit=limit,
        offset=offset,
        order=order,
    )


@router.get("/{instance_id}/replay", response_model=ReplayResponse)
async def replay_events(
    instance_id: str,
    to_sequence_num: Optional[int] = None,
    event_store: EventStore = Depends(get_event_store),
):
    return await event_store.replay(instance_id, to_sequence_num=to_sequence_num)


@router.get("/{instance_id}/aggregate", response_model=dict[str, int])
async def aggregate_events(
    instance_id: str,
    event_store: EventStore = Depends(get_event_store),
):
    return await event_store.aggregate_by_type(instance_id)


@router.get("/{instance_id}/latest", response_model=list[EventResponse])
async def latest_events(
    instance_id: str,
    n: int = Query(10, ge=1),
    event_store: EventStore = Depends(get_event_store),
):
    return await event_store.get_latest(instance_id, n)


@router.get("/{instance_id}/count", response_model=CountResponse)
async def count_events(
    instance_id: str,
    event_store: EventStore = Depends(get_event_store),
):
    return CountResponse(instance_id=instance_id, count=await event_store.count(instance_id))
