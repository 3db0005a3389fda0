"""
Checkpoint / Resume
===================

Per-instance state machine:

    no_checkpoint -> checkpointed -> checkpointed (updated) ...

A checkpoint stores the replayed work state at a watermark (the sequence
number of the last folded event). Resume seeds replay with that state and
folds only the events after the watermark.

If the watermark event is gone, resume raises CheckpointError instead of
falling back to a full replay, which would hide the data loss.

Triggers:
- context usage (context_window_updated / instance_heartbeat) crossing
  CHECKPOINT_CONTEXT_THRESHOLD from below -> context_window checkpoint
- epic_completed -> epic_completion checkpoint
- explicit create() -> manual checkpoint

Only manual checkpoints append checkpoint_created. Automatic ones are
written silently, so the event that fired them stays the head of the log.
"""

import asyncio
import json
import time
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, ensure_utc, utcnow
from continuity.core.config import settings
from continuity.core.database import AsyncSessionLocal, get_db_session
from continuity.core.errors import (
    CheckpointError,
    CheckpointNotFoundError,
    InstanceNotFoundError,
    ValidationError,
)
from continuity.core.models import Checkpoint, CheckpointType, EventType, Instance
from continuity.core.session.confidence import ConfidenceScore, ResumeSource, score_resume
from continuity.core.session.event_store import EventRecord, EventStore, ReplayResult
from continuity.core.session.replay import WorkState

logger = structlog.get_logger()

CONTEXT_EVENT_TYPES = (EventType.CONTEXT_WINDOW_UPDATED, EventType.INSTANCE_HEARTBEAT)


@dataclass
class CheckpointView:
    checkpoint_id: str
    instance_id: str
    checkpoint_type: CheckpointType
    sequence_num: int
    context_percent: Optional[int]
    trigger: str
    note: Optional[str]
    size_bytes: int
    created_at: datetime
    work_state: WorkState

    @classmethod
    def from_model(cls, checkpoint: Checkpoint) -> "CheckpointView":
        return cls(
            checkpoint_id=str(checkpoint.checkpoint_id),
            instance_id=checkpoint.instance_id,
            checkpoint_type=CheckpointType(checkpoint.checkpoint_type),
            sequence_num=checkpoint.sequence_num,
            context_percent=checkpoint.context_percent,
            trigger=checkpoint.trigger,
            note=checkpoint.note,
            size_bytes=checkpoint.size_bytes,
            created_at=ensure_utc(checkpoint.created_at),
            work_state=checkpoint.work_state,
        )


@dataclass
class ResumeResult:
    state: WorkState
    checkpoint_id: Optional[str]
    watermark: int
    events_replayed: int
    duration_ms: float
    confidence: Optional[ConfidenceScore] = None

    @property
    def from_checkpoint(self) -> bool:
        return self.checkpoint_id is not None


@dataclass
class CheckpointStats:
    instance_id: str
    count: int
    total_bytes: int
    average_bytes: float
    latest_sequence_num: Optional[int]


class CheckpointManager:
    """
    Sole writer of checkpoints.

    Creation for one instance is serialised by a per-instance lock so two
    triggers firing together never interleave their writes.
    """

    def __init__(
        self,
        event_store: EventStore,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
        context_threshold: Optional[int] = None,
    ):
        self.event_store = event_store
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock
        self.context_threshold = context_threshold or settings.CHECKPOINT_CONTEXT_THRESHOLD
        # Entries live only while some create() holds a reference
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ==========================================================================
    # Create
    # ==========================================================================

    async def create(
        self,
        instance_id: str,
        checkpoint_type: Union[CheckpointType, str] = CheckpointType.MANUAL,
        trigger: str = "manual_request",
        note: Optional[str] = None,
        context_percent: Optional[int] = None,
        record_event: bool = True,
    ) -> CheckpointView:
        """
        Snapshot the instance's replayed state at the current head.

        Args:
            instance_id: Instance to checkpoint
            checkpoint_type: context_window, epic_completion or manual
            trigger: Short machine-readable reason
            note: Free text attached to manual checkpoints
            context_percent: Context usage at checkpoint time (defaults to
                the replayed value)
            record_event: Append checkpoint_created after the write

        Returns:
            The stored checkpoint

        Raises:
            InstanceNotFoundError: unknown instance
            ValidationError: the instance has no events yet
        """
        checkpoint_type = CheckpointType(checkpoint_type)

        async with self._lock_for(instance_id):
            replay = await self._replay_to_head(instance_id)
            if replay.final_state["last_sequence_num"] == 0:
                raise ValidationError(
                    f"Instance {instance_id} has no events to checkpoint",
                    instance_id=instance_id,
                )

            state = replay.final_state
            watermark = state["last_sequence_num"]
            if context_percent is None:
                context_percent = state.get("context_percent")
            size_bytes = len(json.dumps(state, sort_keys=True).encode("utf-8"))

            async with get_db_session(self.session_factory) as db:
                previous = await self._latest_watermark(db, instance_id)
                if previous is not None and watermark < previous:
                    raise CheckpointError(
                        f"Watermark {watermark} is behind the latest checkpoint ({previous})",
                        instance_id=instance_id,
                    )
                checkpoint = Checkpoint(
                    checkpoint_id=uuid4(),
                    instance_id=instance_id,
                    checkpoint_type=checkpoint_type,
                    sequence_num=watermark,
                    context_percent=context_percent,
                    work_state=state,
                    trigger=trigger,
                    note=note,
                    size_bytes=size_bytes,
                    created_at=self.clock(),
                )
                db.add(checkpoint)

            if record_event:
                await self.event_store.emit(
                    instance_id,
                    EventType.CHECKPOINT_CREATED,
                    {
                        "checkpoint_id": str(checkpoint.checkpoint_id),
                        "context_percent": context_percent,
                        "reason": trigger,
                        "checkpoint_type": checkpoint_type.value,
                        "state_keys": sorted(state),
                        "size_bytes": size_bytes,
                        "watermark": watermark,
                    },
                )

        logger.info(
            "Checkpoint created",
            instance_id=instance_id,
            checkpoint_type=checkpoint_type.value,
            watermark=watermark,
            size_bytes=size_bytes,
            recorded=record_event,
        )
        return CheckpointView.from_model(checkpoint)

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    async def _replay_to_head(self, instance_id: str) -> ReplayResult:
        """Latest checkpoint plus the events after it, or a full replay."""
        latest = await self.latest(instance_id)
        if latest is not None and await self.event_store.get_by_sequence(instance_id, latest.sequence_num):
            return await self.event_store.replay_from(
                instance_id,
                latest.work_state,
                after_sequence_num=latest.sequence_num,
            )
        return await self.event_store.replay(instance_id)

    # ==========================================================================
    # Resume
    # ==========================================================================

    async def resume(
        self,
        instance_id: str,
        checkpoint_id: Optional[Union[UUID, str]] = None,
        record_load: bool = True,
    ) -> ResumeResult:
        """
        Rebuild current state from the latest (or a given) checkpoint.

        Without any checkpoint the state comes from a full replay.
        record_load emits checkpoint_loaded after the state is computed,
        so the returned state does not include that event.

        Raises:
            CheckpointNotFoundError: checkpoint_id does not exist for the instance
            CheckpointError: the checkpoint's watermark event is missing
        """
        if checkpoint_id is not None:
            checkpoint = await self.get(checkpoint_id)
            if checkpoint.instance_id != instance_id:
                raise CheckpointNotFoundError(
                    f"Checkpoint {checkpoint_id} does not belong to {instance_id}",
                    checkpoint_id=str(checkpoint_id),
                )
        else:
            checkpoint = await self.latest(instance_id)

        if checkpoint is None:
            replay = await self.event_store.replay(instance_id)
            logger.info(
                "Resumed without checkpoint",
                instance_id=instance_id,
                events_replayed=replay.events_replayed,
            )
            return ResumeResult(
                state=replay.final_state,
                checkpoint_id=None,
                watermark=0,
                events_replayed=replay.events_replayed,
                duration_ms=replay.duration_ms,
                confidence=await self._score_replay(instance_id, replay.final_state),
            )

        started = time.perf_counter()
        watermark_event = await self.event_store.get_by_sequence(instance_id, checkpoint.sequence_num)
        if watermark_event is None:
            logger.error(
                "Checkpoint watermark event missing",
                instance_id=instance_id,
                checkpoint_id=checkpoint.checkpoint_id,
                watermark=checkpoint.sequence_num,
            )
            raise CheckpointError(
                f"Checkpoint {checkpoint.checkpoint_id} points at event "
                f"#{checkpoint.sequence_num}, which no longer exists",
                instance_id=instance_id,
                checkpoint_id=checkpoint.checkpoint_id,
            )

        replay = await self.event_store.replay_from(
            instance_id,
            checkpoint.work_state,
            after_sequence_num=checkpoint.sequence_num,
        )
        result = ResumeResult(
            state=replay.final_state,
            checkpoint_id=checkpoint.checkpoint_id,
            watermark=checkpoint.sequence_num,
            events_replayed=replay.events_replayed,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            confidence=score_resume(
                ResumeSource.CHECKPOINT,
                replay.final_state,
                checkpoint.created_at,
                self.clock(),
            ),
        )

        if record_load:
            await self.event_store.emit(
                instance_id,
                EventType.CHECKPOINT_LOADED,
                {
                    "checkpoint_id": checkpoint.checkpoint_id,
                    "context_percent": result.state.get("context_percent"),
                    "reason": "resume",
                    "watermark": checkpoint.sequence_num,
                    "events_replayed": replay.events_replayed,
                },
            )

        logger.info(
            "Resumed from checkpoint",
            instance_id=instance_id,
            checkpoint_id=checkpoint.checkpoint_id,
            watermark=checkpoint.sequence_num,
            events_replayed=replay.events_replayed,
            confidence=result.confidence.score,
        )
        return result

    async def _score_replay(self, instance_id: str, state: WorkState) -> ConfidenceScore:
        if state["last_sequence_num"]:
            since = datetime.fromisoformat(state["latest_timestamp"])
            return score_resume(ResumeSource.EVENTS, state, since, self.clock())

        async with get_db_session(self.session_factory) as db:
            instance = await db.get(Instance, instance_id)
        since = instance.last_heartbeat_at if instance else None
        return score_resume(ResumeSource.BASIC, state, since, self.clock())

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get(self, checkpoint_id: Union[UUID, str]) -> CheckpointView:
        try:
            key = checkpoint_id if isinstance(checkpoint_id, UUID) else UUID(str(checkpoint_id))
        except ValueError as e:
            raise CheckpointNotFoundError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=str(checkpoint_id),
            ) from e

        async with get_db_session(self.session_factory) as db:
            checkpoint = await db.get(Checkpoint, key)
        if checkpoint is None:
            raise CheckpointNotFoundError(
                f"Checkpoint not found: {checkpoint_id}",
                checkpoint_id=str(checkpoint_id),
            )
        return CheckpointView.from_model(checkpoint)

    async def latest(self, instance_id: str) -> Optional[CheckpointView]:
        checkpoints = await self.list_checkpoints(instance_id, limit=1)
        return checkpoints[0] if checkpoints else None

    async def list_checkpoints(self, instance_id: str, limit: int = 20) -> list[CheckpointView]:
        """Checkpoints for an instance, newest watermark first."""
        async with get_db_session(self.session_factory) as db:
            if await db.get(Instance, instance_id) is None:
                raise InstanceNotFoundError(instance_id)
            result = await db.execute(
                select(Checkpoint)
                .where(Checkpoint.instance_id == instance_id)
                .order_by(Checkpoint.sequence_num.desc(), Checkpoint.created_at.desc())
                .limit(limit)
            )
            return [CheckpointView.from_model(c) for c in result.scalars().all()]

    async def stats(self, instance_id: str) -> CheckpointStats:
        async with get_db_session(self.session_factory) as db:
            if await db.get(Instance, instance_id) is None:
                raise InstanceNotFoundError(instance_id)
            result = await db.execute(
                select(
                    func.count(Checkpoint.checkpoint_id),
                    func.coalesce(func.sum(Checkpoint.size_bytes), 0),
                    func.max(Checkpoint.sequence_num),
                ).where(Checkpoint.instance_id == instance_id)
            )
            count, total_bytes, latest = result.one()

        return CheckpointStats(
            instance_id=instance_id,
            count=count,
            total_bytes=int(total_bytes),
            average_bytes=round(total_bytes / count, 1) if count else 0.0,
            latest_sequence_num=latest,
        )

    async def _latest_watermark(self, db: AsyncSession, instance_id: str) -> Optional[int]:
        return await db.scalar(
            select(func.max(Checkpoint.sequence_num)).where(Checkpoint.instance_id == instance_id)
        )

    # ==========================================================================
    # Automatic Triggers
    # ==========================================================================

    async def handle_event(self, record: EventRecord) -> Optional[CheckpointView]:
        """
        Event-store listener creating automatic checkpoints.

        Returns:
            The checkpoint created for this event, if any
        """
        if record.event_type == EventType.EPIC_COMPLETED:
            return await self.create(
                record.instance_id,
                CheckpointType.EPIC_COMPLETION,
                trigger="epic_completed",
                note=f"Epic {record.event_data.get('epic_id')} completed",
                record_event=False,
            )

        if record.event_type in CONTEXT_EVENT_TYPES:
            current = record.event_data.get("context_percent")
            if current is None or current < self.context_threshold:
                return None
            if await self._previous_context_percent(record) >= self.context_threshold:
                return None
            return await self.create(
                record.instance_id,
                CheckpointType.CONTEXT_WINDOW,
                trigger="automatic_threshold",
                context_percent=int(current),
                record_event=False,
            )

        return None

    async def _previous_context_percent(self, record: EventRecord) -> float:
        """Context usage reported before this event, 0 if none."""
        result = await self.event_store.query(
            record.instance_id,
            event_types=CONTEXT_EVENT_TYPES,
            order="desc",
            limit=20,
        )
        for event in result.events:
            if event.sequence_num >= record.sequence_num:
                continue
            value = event.event_data.get("context_percent")
            if value is not None:
                return float(value)
        return 0.0
