"""
Session Continuity
==================

Components:
- InstanceRegistry: identity and liveness of supervisor instances
- EventStore: per-instance, gapless, append-only event log
- HeartbeatMonitor: staleness detection (one instance_stale per episode)
- CheckpointManager: snapshots with a sequence watermark, bounded resume
"""

from continuity.core.session.checkpoints import CheckpointManager
from continuity.core.session.event_store import EventStore
from continuity.core.session.heartbeat import HeartbeatMonitor
from continuity.core.session.registry import InstanceRegistry

__all__ = [
    "CheckpointManager",
    "EventStore",
    "HeartbeatMonitor",
    "InstanceRegistry",
]
