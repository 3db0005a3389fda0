"""
Supervisor Continuity - Service Wiring
======================================

Builds the shared service graph once per process. The API and the
standalone monitor both start from build_services().
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, utcnow
from continuity.core.config import settings
from continuity.core.database import AsyncSessionLocal
from continuity.core.fixing.agent import AdaptiveFixAgent
from continuity.core.fixing.escalation import EscalationHandler
from continuity.core.fixing.executor import AgentExecutor, SubprocessAgentExecutor
from continuity.core.fixing.learning import FixLearningStore
from continuity.core.fixing.retry_manager import RetryManager
from continuity.core.fixing.verification import CommandVerifier, Verifier
from continuity.core.session.checkpoints import CheckpointManager
from continuity.core.session.event_store import EventStore
from continuity.core.session.heartbeat import HeartbeatMonitor, StaleNotice
from continuity.core.session.registry import InstanceRegistry

logger = structlog.get_logger()


@dataclass
class Services:
    registry: InstanceRegistry
    event_store: EventStore
    checkpoints: CheckpointManager
    monitor: HeartbeatMonitor
    retry_manager: RetryManager
    learning_store: FixLearningStore
    fix_agent: AdaptiveFixAgent


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Clock = utcnow,
    executor: Optional[AgentExecutor] = None,
    verifier: Optional[Verifier] = None,
    handoff_dir: Optional[Union[str, Path]] = None,
    cancel_fixes_on_stale: Optional[bool] = None,
) -> Services:
    """
    Wire every component against one session factory.

    The checkpoint manager listens to the event store for automatic
    triggers. With cancel_fixes_on_stale (default from settings) a stale
    instance also has its running fix loops cancelled.
    """
    session_factory = session_factory or AsyncSessionLocal

    event_store = EventStore(session_factory, clock=clock)
    registry = InstanceRegistry(session_factory, clock=clock)
    checkpoints = CheckpointManager(event_store, session_factory, clock=clock)
    event_store.add_listener(checkpoints.handle_event)
    monitor = HeartbeatMonitor(registry, event_store)

    retry_manager = RetryManager(session_factory, clock=clock)
    learning_store = FixLearningStore(session_factory, clock=clock)
    fix_agent = AdaptiveFixAgent(
        executor=executor or SubprocessAgentExecutor(),
        verifier=verifier or CommandVerifier(),
        session_factory=session_factory,
        event_store=event_store,
        retry_manager=retry_manager,
        learning_store=learning_store,
        escalation_handler=EscalationHandler(handoff_dir, clock=clock),
        clock=clock,
    )

    if settings.CANCEL_FIXES_ON_STALE if cancel_fixes_on_stale is None else cancel_fixes_on_stale:
        async def cancel_fixes(notice: StaleNotice) -> None:
            cancelled = fix_agent.cancel_for_instance(notice.instance_id)
            if cancelled:
                logger.warning(
                    "Cancelled fix loops of stale instance",
                    instance_id=notice.instance_id,
                    test_ids=cancelled,
                )

        monitor.add_stale_hook(cancel_fixes)

    return Services(
        registry=registry,
        event_store=event_store,
        checkpoints=checkpoints,
        monitor=monitor,
        retry_manager=retry_manager,
        learning_store=learning_store,
        fix_agent=fix_agent,
    )
