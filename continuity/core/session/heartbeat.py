"""
Heartbeat / Staleness Monitor
=============================

Runs outside the data path. It relays heartbeats for live instances and
periodically scans for instances whose computed status is stale.

Detection is idempotent rather than flag-suppressed: before emitting
instance_stale the monitor looks for an instance_stale event stamped at
or after the instance's last heartbeat. A monitor killed and restarted
mid-episode therefore never notifies the same staleness episode twice,
and a fresh heartbeat opens a new episode.
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from continuity.core.config import settings
from continuity.core.models import EventType
from continuity.core.session.event_store import EventStore
from continuity.core.session.registry import InstanceRegistry, InstanceView

logger = structlog.get_logger()


@dataclass
class StaleNotice:
    """A newly detected staleness episode."""
    instance_id: str
    project: str
    last_heartbeat_at: datetime
    age_seconds: float
    timeout_seconds: float
    sequence_num: int  # of the instance_stale event


StaleHook = Callable[[StaleNotice], Awaitable[None]]


class HeartbeatMonitor:
    """
    Liveness watchdog for all registered instances.

    A stale instance is reported, not killed. Hooks registered with
    add_stale_hook() decide what else happens (handoff, cancelling
    in-flight fixes).
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        event_store: EventStore,
        check_interval: Optional[float] = None,
    ):
        self.registry = registry
        self.event_store = event_store
        self.check_interval = check_interval or settings.HEARTBEAT_CHECK_INTERVAL_SECONDS
        self._hooks: list[StaleHook] = []

        self._task: Optional[asyncio.Task] = None
        self._running = False

    def add_stale_hook(self, hook: StaleHook) -> None:
        self._hooks.append(hook)

    # ==========================================================================
    # Heartbeats
    # ==========================================================================

    async def beat(
        self,
        instance_id: str,
        context_percent: Optional[int] = None,
        current_epic: Optional[str] = None,
        record_event: bool = False,
    ) -> InstanceView:
        """
        Relay a heartbeat to the registry.

        With record_event the beat is also logged as instance_heartbeat,
        which feeds context usage into replay and the checkpoint trigger.
        """
        view = await self.registry.heartbeat(
            instance_id,
            context_percent=context_percent,
            current_epic=current_epic,
        )
        if record_event:
            await self.event_store.emit(
                instance_id,
                EventType.INSTANCE_HEARTBEAT,
                {
                    "context_percent": view.context_percent,
                    "current_epic": view.current_epic,
                },
            )
        return view

    # ==========================================================================
    # Staleness Scan
    # ==========================================================================

    async def check_stale(self) -> list[StaleNotice]:
        """
        Emit instance_stale for every stale instance not yet reported.

        Returns:
            Notices for episodes detected by this pass only
        """
        notices = []
        for view in await self.registry.list_instances(include_closed=False, limit=None):
            if not view.is_stale:
                continue

            already_reported = await self.event_store.query(
                view.instance_id,
                event_types=EventType.INSTANCE_STALE,
                start_date=view.last_heartbeat_at,
                limit=1,
            )
            if already_reported.total_count:
                continue

            result = await self.event_store.emit(
                view.instance_id,
                EventType.INSTANCE_STALE,
                {
                    "last_heartbeat": view.last_heartbeat_at.isoformat(),
                    "age_seconds": round(view.heartbeat_age_seconds, 1),
                    "timeout_seconds": view.stale_timeout_seconds,
                },
            )
            notice = StaleNotice(
                instance_id=view.instance_id,
                project=view.project,
                last_heartbeat_at=view.last_heartbeat_at,
                age_seconds=view.heartbeat_age_seconds,
                timeout_seconds=view.stale_timeout_seconds,
                sequence_num=result.sequence_num,
            )
            notices.append(notice)

            logger.warning(
                "Instance stale",
                instance_id=view.instance_id,
                age_seconds=round(view.heartbeat_age_seconds, 1),
                timeout_seconds=view.stale_timeout_seconds,
            )
            await self._run_hooks(notice)

        return notices

    async def _run_hooks(self, notice: StaleNotice) -> None:
        for hook in self._hooks:
            try:
                await hook(notice)
            except Exception:
                # The stale event is already recorded; keep scanning
                logger.exception("Stale hook failed", instance_id=notice.instance_id)

    # ==========================================================================
    # Background Loop
    # ==========================================================================

    async def start(self) -> None:
        """Start the monitoring task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Heartbeat monitor started", interval_seconds=self.check_interval)

    async def stop(self) -> None:
        """Stop the monitoring task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat monitor stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.check_stale()
            except Exception as e:
                logger.error("Heartbeat monitor pass failed", error=str(e))
            await asyncio.sleep(self.check_interval)
