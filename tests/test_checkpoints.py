"""
Supervisor Continuity - Checkpoint / Resume Tests
=================================================

Bounded replay from a checkpoint must equal a full replay, and a
checkpoint whose watermark event is gone must fail loudly.
"""

import asyncio
from uuid import uuid4

import pytest

from continuity.core.errors import (
    CheckpointError,
    CheckpointNotFoundError,
    InstanceNotFoundError,
    ValidationError,
)
from continuity.core.models import CheckpointType, EventType
from continuity.core.session.checkpoints import CheckpointManager


@pytest.fixture
def checkpoints(event_store, session_factory, clock) -> CheckpointManager:
    return CheckpointManager(event_store, session_factory, clock=clock)


@pytest.fixture
def auto_checkpoints(event_store, checkpoints) -> CheckpointManager:
    """Manager wired as an event-store listener."""
    event_store.add_listener(checkpoints.handle_event)
    return checkpoints


async def emit_epic(event_store, instance_id: str, epic_id: str) -> None:
    await event_store.emit(instance_id, EventType.EPIC_STARTED, {
        "epic_id": epic_id,
        "feature_name": f"Feature {epic_id}",
        "estimated_hours": 2,
        "spawned_by": "odin-MS-000001",
    })


async def emit_context(event_store, instance_id: str, percent: int) -> None:
    await event_store.emit(instance_id, EventType.CONTEXT_WINDOW_UPDATED, {
        "context_percent": percent,
        "tokens_used": percent * 2000,
        "tokens_available": 200_000,
    })


# ==========================================================================
# Create
# ==========================================================================

class TestCreate:
    """Tests for CheckpointManager.create."""

    async def test_checkpoint_at_current_head(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        await emit_context(event_store, registered, 40)

        checkpoint = await checkpoints.create(registered, note="before refactor")

        assert checkpoint.sequence_num == 2
        assert checkpoint.checkpoint_type == CheckpointType.MANUAL
        assert checkpoint.trigger == "manual_request"
        assert checkpoint.note == "before refactor"
        assert checkpoint.context_percent == 40
        assert checkpoint.work_state["epics"] == {"EPIC-1": "in_progress"}
        assert checkpoint.size_bytes > 0

    async def test_create_emits_checkpoint_created(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        checkpoint = await checkpoints.create(registered)

        latest = (await event_store.get_latest(registered, n=1))[0]
        assert latest.event_type == EventType.CHECKPOINT_CREATED
        assert latest.sequence_num == 2
        assert latest.event_data["checkpoint_id"] == checkpoint.checkpoint_id
        assert latest.event_data["watermark"] == 1

    async def test_no_events_to_checkpoint(self, checkpoints, registered):
        with pytest.raises(ValidationError):
            await checkpoints.create(registered)

    async def test_unknown_instance(self, checkpoints):
        with pytest.raises(InstanceNotFoundError):
            await checkpoints.create("ghost-PS-000000")

    async def test_list_and_stats(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        first = await checkpoints.create(registered)
        await emit_epic(event_store, registered, "EPIC-2")
        second = await checkpoints.create(registered)

        listed = await checkpoints.list_checkpoints(registered)
        assert [c.checkpoint_id for c in listed] == [second.checkpoint_id, first.checkpoint_id]

        stats = await checkpoints.stats(registered)
        assert stats.count == 2
        assert stats.total_bytes == first.size_bytes + second.size_bytes
        assert stats.latest_sequence_num == second.sequence_num

    async def test_stats_unknown_instance(self, checkpoints):
        with pytest.raises(InstanceNotFoundError):
            await checkpoints.stats("ghost-PS-000000")

    async def test_concurrent_creates_release_their_lock(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")

        first, second = await asyncio.gather(
            checkpoints.create(registered),
            checkpoints.create(registered),
        )

        assert sorted([first.sequence_num, second.sequence_num]) == [1, 2]
        assert registered not in checkpoints._locks


# ==========================================================================
# Resume
# ==========================================================================

class TestResume:
    """Tests for CheckpointManager.resume."""

    async def test_bounded_replay_equals_full_replay(self, checkpoints, event_store, registered):
        for epic in ("EPIC-1", "EPIC-2", "EPIC-3"):
            await emit_epic(event_store, registered, epic)
        checkpoint = await checkpoints.create(registered)
        await emit_context(event_store, registered, 61)
        await event_store.emit(registered, EventType.COMMIT_CREATED, {
            "commit_hash": "abc1234", "message": "wip",
        })
        full = await event_store.replay(registered)

        result = await checkpoints.resume(registered)

        assert result.from_checkpoint
        assert result.checkpoint_id == checkpoint.checkpoint_id
        assert result.watermark == 3
        assert result.events_replayed == 3  # checkpoint_created + 2 later events
        assert result.state == full.final_state

    async def test_resume_records_load(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        checkpoint = await checkpoints.create(registered)

        result = await checkpoints.resume(registered)

        latest = (await event_store.get_latest(registered, n=1))[0]
        assert latest.event_type == EventType.CHECKPOINT_LOADED
        assert latest.event_data["checkpoint_id"] == checkpoint.checkpoint_id
        assert result.state["last_event_type"] == "checkpoint_created"

    async def test_resume_without_recording(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        await checkpoints.create(registered)
        before = await event_store.count(registered)

        await checkpoints.resume(registered, record_load=False)
        assert await event_store.count(registered) == before

    async def test_resume_without_checkpoint(self, checkpoints, event_store, registered):
        """No checkpoint: state comes from a full replay."""
        await emit_epic(event_store, registered, "EPIC-1")

        result = await checkpoints.resume(registered)

        assert not result.from_checkpoint
        assert result.watermark == 0
        assert result.events_replayed == 1
        assert result.state["epics"] == {"EPIC-1": "in_progress"}

    async def test_missing_watermark_fails_loudly(self, checkpoints, event_store, registered):
        """A purged log must not silently fall back to a full replay."""
        await emit_epic(event_store, registered, "EPIC-1")
        await emit_epic(event_store, registered, "EPIC-2")
        await checkpoints.create(registered)

        await event_store.purge(registered)

        with pytest.raises(CheckpointError):
            await checkpoints.resume(registered)

    async def test_resume_specific_checkpoint(self, checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        first = await checkpoints.create(registered)
        await emit_epic(event_store, registered, "EPIC-2")
        await checkpoints.create(registered)
        full = await event_store.replay(registered)

        result = await checkpoints.resume(registered, checkpoint_id=first.checkpoint_id)

        assert result.watermark == first.sequence_num
        assert result.state == full.final_state

    async def test_checkpoint_of_other_instance(self, checkpoints, event_store, registry, registered):
        other = (await registry.register("thor", "PS")).instance_id
        await emit_epic(event_store, other, "EPIC-1")
        foreign = await checkpoints.create(other)

        with pytest.raises(CheckpointNotFoundError):
            await checkpoints.resume(registered, checkpoint_id=foreign.checkpoint_id)

    async def test_unknown_checkpoint(self, checkpoints):
        with pytest.raises(CheckpointNotFoundError):
            await checkpoints.get(uuid4())
        with pytest.raises(CheckpointNotFoundError):
            await checkpoints.get("not-a-uuid")


# ==========================================================================
# Automatic Triggers
# ==========================================================================

class TestTriggers:
    """Tests for checkpoints created from the event stream."""

    async def test_context_threshold_crossing(self, auto_checkpoints, event_store, registered):
        """Only the crossing from below the threshold checkpoints."""
        await emit_context(event_store, registered, 50)
        assert await auto_checkpoints.list_checkpoints(registered) == []

        await emit_context(event_store, registered, 85)
        await emit_context(event_store, registered, 90)
        created = await auto_checkpoints.list_checkpoints(registered)
        assert len(created) == 1
        assert created[0].checkpoint_type == CheckpointType.CONTEXT_WINDOW
        assert created[0].trigger == "automatic_threshold"
        assert created[0].context_percent == 85

        await emit_context(event_store, registered, 30)
        await emit_context(event_store, registered, 82)
        assert len(await auto_checkpoints.list_checkpoints(registered)) == 2

    async def test_epic_completed_triggers_checkpoint(self, auto_checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        await event_store.emit(registered, EventType.EPIC_COMPLETED, {
            "epic_id": "EPIC-1", "duration_hours": 1.5, "files_changed": 3, "tests_passed": 12,
        })

        [checkpoint] = await auto_checkpoints.list_checkpoints(registered)
        assert checkpoint.checkpoint_type == CheckpointType.EPIC_COMPLETION
        assert checkpoint.sequence_num == 2
        assert checkpoint.note == "Epic EPIC-1 completed"
        assert checkpoint.work_state["epics"] == {"EPIC-1": "completed"}

    async def test_other_events_do_not_trigger(self, auto_checkpoints, event_store, registered):
        await emit_epic(event_store, registered, "EPIC-1")
        assert await auto_checkpoints.list_checkpoints(registered) == []

    async def test_automatic_checkpoints_add_no_events(self, auto_checkpoints, event_store, registered):
        """The triggering event stays the head of the log."""
        await emit_epic(event_store, registered, "EPIC-1")
        await event_store.emit(registered, EventType.EPIC_COMPLETED, {
            "epic_id": "EPIC-1", "duration_hours": 1.5, "files_changed": 3, "tests_passed": 12,
        })
        await emit_context(event_store, registered, 90)

        assert len(await auto_checkpoints.list_checkpoints(registered)) == 2
        assert await event_store.count(registered) == 3
        assert await event_store.aggregate_by_type(registered) == {
            "epic_started": 1,
            "epic_completed": 1,
            "context_window_updated": 1,
        }


# ==========================================================================
# Resume Confidence
# ==========================================================================

class TestResumeConfidence:
    """Tests for the confidence score attached to resume results."""

    async def test_fresh_checkpoint(self, checkpoints, event_store, registered):
        await emit_context(event_store, registered, 40)
        await checkpoints.create(registered)

        result = await checkpoints.resume(registered)

        assert result.confidence.score == 100
        assert result.confidence.level == "high"
        assert result.confidence.auto_resume
        assert result.confidence.warnings == []

    async def test_old_checkpoint(self, checkpoints, event_store, registered, clock):
        await emit_context(event_store, registered, 40)
        await checkpoints.create(registered)
        clock.advance(45 * 60)

        result = await checkpoints.resume(registered)

        assert result.confidence.score == 80
        assert result.confidence.warnings == ["Checkpoint is 30-60 minutes old"]
        assert result.confidence.reason.startswith("Checkpoint loaded (age: 45 min)")

    async def test_events_only(self, checkpoints, event_store, registered, clock):
        await emit_context(event_store, registered, 40)
        clock.advance(95 * 60)

        result = await checkpoints.resume(registered)

        assert not result.from_checkpoint
        assert result.confidence.score == 70
        assert result.confidence.warnings == ["Last event over 95 minutes old"]

    async def test_no_events(self, checkpoints, registered):
        result = await checkpoints.resume(registered)

        assert result.confidence.score == 25
        assert result.confidence.level == "very_low"
        assert not result.confidence.auto_resume
        assert "Basic state only" in result.confidence.reason
