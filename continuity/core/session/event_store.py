"""
Event Store
===========

Append-only, per-instance sequenced log of typed events.

Ordering
--------
Sequence numbers are allocated by the store inside the emitting
transaction:

    UPDATE instance_sequences
       SET last_sequence_num = last_sequence_num + 1
     WHERE instance_id = :id
 RETURNING last_sequence_num

followed by the INSERT of the event. The UPDATE row-locks only the
emitting instance's counter until commit, so concurrent emitters of one
instance are serialised and receive gapless numbers, while emitters of
other instances never wait on each other. A rolled back insert rolls the
counter back with it.

Reads
-----
Every read first captures the committed head of the counter and never
returns events past it, so a reader sees a consistent prefix of the log.

Lineage
-------
An event may name a parent event (any instance). The store derives
root_event_id (the parent's root, or the event itself for a root) and
depth (parent depth + 1) at write time, so a causal chain is readable
without walking the log.

Payloads
--------
Validated on write (closed event-type set, JSON-serialisable dict with the
required fields for its type), returned as stored on read.
"""

import json
import time
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union
from uuid import UUID, uuid4

import structlog
from sqlalchemy import Text, cast, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, ensure_utc, utcnow
from continuity.core.config import settings
from continuity.core.database import AsyncSessionLocal, get_db_session
from continuity.core.errors import (
    EventNotFoundError,
    InstanceNotFoundError,
    InvalidEventError,
    ValidationError,
)
from continuity.core.models import Event, EventType, InstanceSequence
from continuity.core.session.replay import WorkState, fold_events, initial_state

logger = structlog.get_logger()

REPLAY_BATCH_SIZE = 500
CHAIN_MAX_DEPTH = 100


# ==========================================================================
# Payload Contract
# ==========================================================================

REQUIRED_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.INSTANCE_REGISTERED: ("instance_type", "project"),
    EventType.INSTANCE_HEARTBEAT: ("context_percent",),
    EventType.INSTANCE_STALE: ("last_heartbeat", "age_seconds"),
    EventType.EPIC_STARTED: ("epic_id", "feature_name", "estimated_hours", "spawned_by"),
    EventType.EPIC_COMPLETED: ("epic_id", "duration_hours", "files_changed", "tests_passed"),
    EventType.EPIC_FAILED: ("epic_id", "failure_reason"),
    EventType.TEST_STARTED: ("test_type", "test_count"),
    EventType.TEST_PASSED: ("test_type", "passed_count", "failed_count", "duration_seconds"),
    EventType.TEST_FAILED: ("test_type", "failed_count", "duration_seconds"),
    EventType.VALIDATION_PASSED: ("validation_type", "confidence_score", "duration_seconds"),
    EventType.VALIDATION_FAILED: ("validation_type", "failed_checks"),
    EventType.COMMIT_CREATED: ("commit_hash", "message"),
    EventType.PR_CREATED: ("pr_url", "pr_number", "title"),
    EventType.PR_MERGED: ("pr_url", "pr_number", "merge_commit"),
    EventType.DEPLOYMENT_STARTED: ("service", "environment", "deployment_type"),
    EventType.DEPLOYMENT_COMPLETED: ("service", "environment", "health_status", "duration_seconds"),
    EventType.DEPLOYMENT_FAILED: ("service", "environment", "error_message", "duration_seconds"),
    EventType.CONTEXT_WINDOW_UPDATED: ("context_percent", "tokens_used", "tokens_available"),
    EventType.CHECKPOINT_CREATED: ("checkpoint_id", "context_percent", "reason"),
    EventType.CHECKPOINT_LOADED: ("checkpoint_id", "context_percent", "reason"),
    EventType.EPIC_PLANNED: ("epic_id", "feature_name", "estimated_hours"),
    EventType.FEATURE_REQUESTED: ("feature_name", "requested_by"),
    EventType.TASK_SPAWNED: ("task_type", "subagent_type"),
}


def coerce_event_type(event_type: Union[EventType, str]) -> EventType:
    try:
        return EventType(event_type)
    except ValueError as e:
        raise InvalidEventError(
            f"Unknown event type {event_type!r}",
            event_type=event_type,
        ) from e


def validate_event(
    event_type: Union[EventType, str],
    event_data: Optional[dict[str, Any]],
    metadata: Optional[dict[str, Any]] = None,
) -> EventType:
    """
    Check an event against the write contract.

    Raises:
        InvalidEventError: unknown type, non-dict or non-JSON payload,
            or a required field missing
    """
    event_type = coerce_event_type(event_type)

    if event_data is None:
        event_data = {}
    if not isinstance(event_data, dict):
        raise InvalidEventError("event_data must be an object", event_type=event_type.value)
    if metadata is not None and not isinstance(metadata, dict):
        raise InvalidEventError("metadata must be an object", event_type=event_type.value)

    try:
        json.dumps(event_data)
        json.dumps(metadata)
    except (TypeError, ValueError) as e:
        raise InvalidEventError(
            f"Event payload is not JSON-serialisable: {e}",
            event_type=event_type.value,
        ) from e

    missing = [name for name in REQUIRED_FIELDS[event_type] if name not in event_data]
    if missing:
        raise InvalidEventError(
            f"{event_type.value} is missing required fields: {', '.join(missing)}",
            event_type=event_type.value,
            missing=missing,
        )
    return event_type


# ==========================================================================
# Result Types
# ==========================================================================

@dataclass
class EventRecord:
    """Read model of one stored event."""
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

    @classmethod
    def from_model(cls, event: Event) -> "EventRecord":
        return cls(
            event_id=str(event.event_id),
            instance_id=event.instance_id,
            event_type=EventType(event.event_type),
            sequence_num=event.sequence_num,
            timestamp=ensure_utc(event.timestamp),
            event_data=event.event_data or {},
            metadata=event.event_metadata,
            parent_event_id=str(event.parent_event_id) if event.parent_event_id else None,
            root_event_id=str(event.root_event_id) if event.root_event_id else None,
            depth=event.depth or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "instance_id": self.instance_id,
            "event_type": self.event_type.value,
            "sequence_num": self.sequence_num,
            "timestamp": self.timestamp.isoformat(),
            "event_data": self.event_data,
            "metadata": self.metadata,
            "parent_event_id": self.parent_event_id,
            "root_event_id": self.root_event_id,
            "depth": self.depth,
        }


@dataclass
class EmitResult:
    event_id: str
    sequence_num: int
    timestamp: datetime


@dataclass
class QueryResult:
    events: list[EventRecord]
    total_count: int
    has_more: bool


@dataclass
class ReplayResult:
    final_state: WorkState
    events_replayed: int
    duration_ms: float
    to_sequence_num: int = 0


EventListener = Callable[[EventRecord], Awaitable[None]]


# ==========================================================================
# Event Store
# ==========================================================================

@dataclass
class _Timer:
    started: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class EventStore:
    """
    Single source of truth for instance activity.

    emit() is the only mutating operation besides purge(), which exists
    for test isolation only.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock
        self._listeners: list[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        """Register an async callback run after each committed emit."""
        self._listeners.append(listener)

    # ==========================================================================
    # Write Path
    # ==========================================================================

    async def emit(
        self,
        instance_id: str,
        event_type: Union[EventType, str],
        event_data: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        parent_event_id: Optional[Union[UUID, str]] = None,
    ) -> EmitResult:
        """
        Append an event to an instance's log.

        Args:
            instance_id: Owning instance
            event_type: Member of the closed EventType set
            event_data: Payload; shape depends on event_type
            metadata: Optional free-form context
            parent_event_id: Event that caused this one

        Returns:
            EmitResult with the store-assigned id, sequence number and time

        Raises:
            InvalidEventError: payload or type rejected, or unknown parent
            InstanceNotFoundError: instance not registered
        """
        timer = _Timer()
        event_type = validate_event(event_type, event_data, metadata)
        payload = dict(event_data or {})
        parent_key = self._parse_id(parent_event_id, InvalidEventError) if parent_event_id else None

        event_id = uuid4()
        event = Event(
            event_id=event_id,
            root_event_id=event_id,
            depth=0,
            instance_id=instance_id,
            event_type=event_type,
            timestamp=self.clock(),
            event_data=payload,
            event_metadata=metadata,
        )

        async with get_db_session(self.session_factory) as db:
            event.sequence_num = await self._allocate_sequence(db, instance_id)
            if parent_key is not None:
                parent = await db.get(Event, parent_key)
                if parent is None:
                    raise InvalidEventError(
                        f"Parent event not found: {parent_event_id}",
                        event_type=event_type.value,
                        parent_event_id=str(parent_event_id),
                    )
                event.parent_event_id = parent.event_id
                event.root_event_id = parent.root_event_id or parent.event_id
                event.depth = (parent.depth or 0) + 1
            db.add(event)

        record = EventRecord.from_model(event)
        if timer.elapsed_ms > settings.EMIT_SLOW_MS:
            logger.warning(
                "Slow event emit",
                instance_id=instance_id,
                event_type=event_type.value,
                elapsed_ms=round(timer.elapsed_ms, 2),
            )
        logger.debug(
            "Event emitted",
            instance_id=instance_id,
            event_type=event_type.value,
            sequence_num=record.sequence_num,
        )

        await self._notify(record)
        return EmitResult(
            event_id=record.event_id,
            sequence_num=record.sequence_num,
            timestamp=record.timestamp,
        )

    async def _allocate_sequence(self, db: AsyncSession, instance_id: str) -> int:
        result = await db.execute(
            update(InstanceSequence)
            .where(InstanceSequence.instance_id == instance_id)
            .values(last_sequence_num=InstanceSequence.last_sequence_num + 1)
            .returning(InstanceSequence.last_sequence_num)
            .execution_options(synchronize_session=False)
        )
        sequence_num = result.scalar_one_or_none()
        if sequence_num is None:
            raise InstanceNotFoundError(instance_id)
        return sequence_num

    async def _notify(self, record: EventRecord) -> None:
        for listener in self._listeners:
            try:
                await listener(record)
            except Exception:
                # The event is committed; a listener must not undo it
                logger.exception(
                    "Event listener failed",
                    instance_id=record.instance_id,
                    sequence_num=record.sequence_num,
                )

    async def purge(self, instance_id: Optional[str] = None) -> int:
        """
        Bulk delete events and reset counters. Test isolation only.

        Returns:
            Number of events deleted
        """
        async with get_db_session(self.session_factory) as db:
            events = delete(Event)
            counters = update(InstanceSequence).values(last_sequence_num=0)
            if instance_id is not None:
                events = events.where(Event.instance_id == instance_id)
                counters = counters.where(InstanceSequence.instance_id == instance_id)
            result = await db.execute(events)
            await db.execute(counters.execution_options(synchronize_session=False))

        logger.warning("Events purged", instance_id=instance_id, deleted=result.rowcount)
        return result.rowcount

    # ==========================================================================
    # Read Path
    # ==========================================================================

    async def head_sequence(self, instance_id: str) -> int:
        async with get_db_session(self.session_factory) as db:
            return await self._head(db, instance_id)

    async def _head(self, db: AsyncSession, instance_id: str) -> int:
        result = await db.execute(
            select(InstanceSequence.last_sequence_num)
            .where(InstanceSequence.instance_id == instance_id)
        )
        head = result.scalar_one_or_none()
        if head is None:
            raise InstanceNotFoundError(instance_id)
        return head

    async def query(
        self,
        instance_id: str,
        event_types: Optional[Union[EventType, str, Iterable[Union[EventType, str]]]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        keyword: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        order: str = "asc",
    ) -> QueryResult:
        """
        Filter an instance's events.

        Args:
            instance_id: Instance to read
            event_types: One type or a collection of types
            start_date: Inclusive lower bound on timestamp
            end_date: Inclusive upper bound on timestamp
            keyword: Case-insensitive substring over event_data and metadata
            limit: Page size, clamped to [1, EVENT_QUERY_MAX_LIMIT]
            offset: Rows to skip, negative treated as 0
            order: "asc" (sequence order) or "desc"

        Returns:
            QueryResult with the page, the total match count and has_more
        """
        timer = _Timer()
        if order not in ("asc", "desc"):
            raise ValidationError(f"order must be 'asc' or 'desc', got {order!r}", order=order)
        if start_date and end_date and ensure_utc(start_date) > ensure_utc(end_date):
            raise ValidationError("start_date must not be after end_date")

        limit = self._clamp_limit(limit)
        offset = max(0, offset or 0)

        async with get_db_session(self.session_factory) as db:
            head = await self._head(db, instance_id)
            conditions = [Event.instance_id == instance_id, Event.sequence_num <= head]

            types = self._coerce_types(event_types)
            if types:
                conditions.append(Event.event_type.in_(types))
            if start_date:
                conditions.append(Event.timestamp >= ensure_utc(start_date))
            if end_date:
                conditions.append(Event.timestamp <= ensure_utc(end_date))
            if keyword:
                escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                pattern = f"%{escaped}%"
                conditions.append(or_(
                    cast(Event.event_data, Text).ilike(pattern, escape="\\"),
                    cast(Event.event_metadata, Text).ilike(pattern, escape="\\"),
                ))

            total = await db.scalar(select(func.count()).select_from(Event).where(*conditions))

            ordering = Event.sequence_num.asc() if order == "asc" else Event.sequence_num.desc()
            result = await db.execute(
                select(Event).where(*conditions).order_by(ordering).offset(offset).limit(limit)
            )
            events = [EventRecord.from_model(event) for event in result.scalars().all()]

        if timer.elapsed_ms > settings.QUERY_SLOW_MS:
            logger.warning(
                "Slow event query",
                instance_id=instance_id,
                elapsed_ms=round(timer.elapsed_ms, 2),
                returned=len(events),
            )

        total = total or 0
        return QueryResult(events=events, total_count=total, has_more=offset + len(events) < total)

    async def replay(
        self,
        instance_id: str,
        to_sequence_num: Optional[int] = None,
    ) -> ReplayResult:
        """
        Rebuild work state by folding events 1..to_sequence_num.

        Idempotent: with no intervening emits, two calls return identical
        final_state.
        """
        if to_sequence_num is not None and to_sequence_num < 1:
            raise ValidationError(
                f"to_sequence_num must be >= 1, got {to_sequence_num}",
                to_sequence_num=to_sequence_num,
            )
        return await self.replay_from(
            instance_id,
            initial_state(instance_id),
            after_sequence_num=0,
            to_sequence_num=to_sequence_num,
        )

    async def replay_from(
        self,
        instance_id: str,
        seed_state: WorkState,
        after_sequence_num: int,
        to_sequence_num: Optional[int] = None,
    ) -> ReplayResult:
        """Fold only the events after a watermark onto a seed state."""
        timer = _Timer()
        state = seed_state
        replayed = 0
        last_seen = after_sequence_num

        async with get_db_session(self.session_factory) as db:
            head = await self._head(db, instance_id)
            upper = head if to_sequence_num is None else min(head, to_sequence_num)

            while last_seen < upper:
                result = await db.execute(
                    select(Event)
                    .where(
                        Event.instance_id == instance_id,
                        Event.sequence_num > last_seen,
                        Event.sequence_num <= upper,
                    )
                    .order_by(Event.sequence_num.asc())
                    .limit(REPLAY_BATCH_SIZE)
                )
                batch = [EventRecord.from_model(event) for event in result.scalars().all()]
                if not batch:
                    break
                state = fold_events(state, batch)
                replayed += len(batch)
                last_seen = batch[-1].sequence_num

        duration_ms = timer.elapsed_ms
        if duration_ms > settings.REPLAY_SLOW_MS:
            logger.warning(
                "Slow replay",
                instance_id=instance_id,
                events_replayed=replayed,
                elapsed_ms=round(duration_ms, 2),
            )
        return ReplayResult(
            final_state=state,
            events_replayed=replayed,
            duration_ms=round(duration_ms, 3),
            to_sequence_num=last_seen,
        )

    async def aggregate_by_type(self, instance_id: str) -> dict[str, int]:
        """Count events per type."""
        async with get_db_session(self.session_factory) as db:
            head = await self._head(db, instance_id)
            result = await db.execute(
                select(Event.event_type, func.count())
                .where(Event.instance_id == instance_id, Event.sequence_num <= head)
                .group_by(Event.event_type)
            )
            return {EventType(event_type).value: count for event_type, count in result.all()}

    async def get_latest(self, instance_id: str, n: int = 10) -> list[EventRecord]:
        """Newest n events, returned in ascending sequence order."""
        n = self._clamp_limit(n)
        async with get_db_session(self.session_factory) as db:
            head = await self._head(db, instance_id)
            result = await db.execute(
                select(Event)
                .where(Event.instance_id == instance_id, Event.sequence_num <= head)
                .order_by(Event.sequence_num.desc())
                .limit(n)
            )
            events = [EventRecord.from_model(event) for event in result.scalars().all()]
        events.reverse()
        return events

    async def get_by_id(self, event_id: Union[UUID, str]) -> Optional[EventRecord]:
        key = self._parse_id(event_id)
        async with get_db_session(self.session_factory) as db:
            event = await db.get(Event, key)
            return EventRecord.from_model(event) if event else None

    async def get_by_sequence(self, instance_id: str, sequence_num: int) -> Optional[EventRecord]:
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(Event).where(
                    Event.instance_id == instance_id,
                    Event.sequence_num == sequence_num,
                )
            )
            event = result.scalar_one_or_none()
            return EventRecord.from_model(event) if event else None

    # ==========================================================================
    # Lineage
    # ==========================================================================

    async def get_chain(
        self,
        event_id: Union[UUID, str],
        max_depth: int = CHAIN_MAX_DEPTH,
    ) -> list[EventRecord]:
        """
        The event and its ancestors, root first.

        Raises:
            EventNotFoundError: event_id does not exist
        """
        key = self._parse_id(event_id)
        chain: list[EventRecord] = []

        async with get_db_session(self.session_factory) as db:
            event = await db.get(Event, key)
            if event is None:
                raise EventNotFoundError(f"Event not found: {event_id}", event_id=str(event_id))
            while event is not None and len(chain) <= max_depth:
                chain.append(EventRecord.from_model(event))
                if event.parent_event_id is None:
                    break
                event = await db.get(Event, event.parent_event_id)

        chain.reverse()
        return chain

    async def get_children(self, event_id: Union[UUID, str]) -> list[EventRecord]:
        """Direct children of an event, oldest first."""
        key = self._parse_id(event_id)
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(Event)
                .where(Event.parent_event_id == key)
                .order_by(Event.timestamp.asc(), Event.sequence_num.asc())
            )
            return [EventRecord.from_model(event) for event in result.scalars().all()]

    async def get_tree(self, root_event_id: Union[UUID, str]) -> list[EventRecord]:
        """Every event descending from a root, by depth then time."""
        key = self._parse_id(root_event_id)
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(Event)
                .where(Event.root_event_id == key)
                .order_by(Event.depth.asc(), Event.timestamp.asc(), Event.sequence_num.asc())
            )
            return [EventRecord.from_model(event) for event in result.scalars().all()]

    async def count(self, instance_id: str) -> int:
        async with get_db_session(self.session_factory) as db:
            head = await self._head(db, instance_id)
            return await db.scalar(
                select(func.count())
                .select_from(Event)
                .where(Event.instance_id == instance_id, Event.sequence_num <= head)
            ) or 0

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @staticmethod
    def _clamp_limit(limit: Optional[int]) -> int:
        if limit is None:
            limit = settings.EVENT_QUERY_DEFAULT_LIMIT
        return max(1, min(int(limit), settings.EVENT_QUERY_MAX_LIMIT))

    @staticmethod
    def _coerce_types(
        event_types: Optional[Union[EventType, str, Iterable[Union[EventType, str]]]],
    ) -> list[EventType]:
        if event_types is None:
            return []
        if isinstance(event_types, (str, EventType)):
            event_types = [event_types]
        return [coerce_event_type(event_type) for event_type in event_types]

    @staticmethod
    def _parse_id(event_id: Union[UUID, str], error: type[ValidationError] = ValidationError) -> UUID:
        if isinstance(event_id, UUID):
            return event_id
        try:
            return UUID(str(event_id))
        except ValueError as e:
            raise error(f"Malformed event id {event_id!r}", event_id=str(event_id)) from e
