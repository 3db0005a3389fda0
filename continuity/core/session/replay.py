"""
Work-State Replay
=================

Pure reducer over an instance's events:

    apply_event(state, event) -> new state

The reducer never mutates its input and never looks at anything except
the event, so replaying the same events always yields the same state,
and folding the events after a checkpoint onto the checkpoint's stored
state yields the same result as a full replay.
"""

import copy
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Mapping, Protocol, Union

from continuity.core.clock import ensure_utc
from continuity.core.models import EventType

WorkState = dict[str, Any]


class ReplayableEvent(Protocol):
    sequence_num: int
    event_type: Union[EventType, str]
    timestamp: datetime
    event_data: Mapping[str, Any]


# Payload value stored as the epic's status when the event is folded
EPIC_STATUS = {
    EventType.EPIC_PLANNED: "planned",
    EventType.EPIC_STARTED: "in_progress",
    EventType.EPIC_COMPLETED: "completed",
    EventType.EPIC_FAILED: "failed",
}

TEST_RESULTS = {
    EventType.TEST_PASSED: "passed",
    EventType.TEST_FAILED: "failed",
    EventType.VALIDATION_PASSED: "validation_passed",
    EventType.VALIDATION_FAILED: "validation_failed",
}


def initial_state(instance_id: str) -> WorkState:
    """Empty accumulator for an instance with no events folded yet."""
    return {
        "instance_id": instance_id,
        "last_sequence_num": 0,
        "last_event_type": None,
        "latest_timestamp": None,
        "last_epic": None,
        "last_task": None,
        "epics": {},
        "context_percent": None,
        "last_checkpoint_id": None,
        "last_commit": None,
        "last_pr": None,
        "last_test_result": None,
        "event_counts": {},
    }


def apply_event(state: WorkState, event: ReplayableEvent) -> WorkState:
    """Fold one event into a copy of the state."""
    new = copy.deepcopy(state)
    event_type = EventType(event.event_type)
    data = event.event_data or {}

    new["last_sequence_num"] = event.sequence_num
    new["last_event_type"] = event_type.value
    new["latest_timestamp"] = ensure_utc(event.timestamp).isoformat()

    counts = new["event_counts"]
    counts[event_type.value] = counts.get(event_type.value, 0) + 1

    epic_id = data.get("epic_id")
    if epic_id:
        new["last_epic"] = epic_id
        if event_type in EPIC_STATUS:
            new["epics"][epic_id] = EPIC_STATUS[event_type]

    if event_type == EventType.TASK_SPAWNED:
        new["last_task"] = data.get("task_id") or data.get("task_type")

    if event_type in (
        EventType.INSTANCE_HEARTBEAT,
        EventType.CONTEXT_WINDOW_UPDATED,
        EventType.CHECKPOINT_CREATED,
        EventType.CHECKPOINT_LOADED,
    ) and data.get("context_percent") is not None:
        new["context_percent"] = data["context_percent"]

    if event_type in (EventType.CHECKPOINT_CREATED, EventType.CHECKPOINT_LOADED):
        new["last_checkpoint_id"] = data.get("checkpoint_id")

    if event_type == EventType.COMMIT_CREATED:
        new["last_commit"] = data.get("commit_hash")
    elif event_type in (EventType.PR_CREATED, EventType.PR_MERGED):
        new["last_pr"] = {
            "pr_url": data.get("pr_url"),
            "pr_number": data.get("pr_number"),
            "merged": event_type == EventType.PR_MERGED,
        }

    if event_type in TEST_RESULTS:
        new["last_test_result"] = TEST_RESULTS[event_type]

    return new


def fold_events(state: WorkState, events: Iterable[ReplayableEvent]) -> WorkState:
    """Left-fold events (already in sequence order) onto a state."""
    for event in events:
        state = apply_event(state, event)
    return state
