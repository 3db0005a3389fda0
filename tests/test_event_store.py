"""
Supervisor Continuity - Event Store Tests
=========================================

Sequencing, validation, queries and replay against a real database.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from continuity.core.errors import (
    EventNotFoundError,
    InstanceNotFoundError,
    InvalidEventError,
    ValidationError,
)
from continuity.core.models import EventType
from continuity.core.session.event_store import EventStore, validate_event


def started_payload(epic_id: str = "EPIC-1") -> dict:
    return {
        "epic_id": epic_id,
        "feature_name": "Checkout flow",
        "estimated_hours": 4,
        "spawned_by": "odin-MS-000001",
    }


def failed_payload(failed_count: int = 2) -> dict:
    return {"test_type": "unit", "failed_count": failed_count, "duration_seconds": 12.5}


def completed_payload(epic_id: str = "EPIC-1") -> dict:
    return {"epic_id": epic_id, "duration_hours": 3.5, "files_changed": 7, "tests_passed": 42}


# ==========================================================================
# Emit and Sequencing
# ==========================================================================

class TestEmit:
    """Tests for EventStore.emit."""

    async def test_epic_lifecycle_scenario(self, event_store: EventStore, registered: str):
        """Sequence numbers follow emit order, queries and replay see all three."""
        started = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        failed = await event_store.emit(registered, "test_failed", failed_payload())
        completed = await event_store.emit(registered, EventType.EPIC_COMPLETED, completed_payload())

        assert (started.sequence_num, failed.sequence_num, completed.sequence_num) == (1, 2, 3)

        result = await event_store.query(registered, event_types=EventType.TEST_FAILED)
        assert result.total_count == 1
        assert result.events[0].sequence_num == 2
        assert result.events[0].event_data["failed_count"] == 2

        replay = await event_store.replay(registered)
        assert replay.events_replayed == 3
        assert replay.final_state["last_event_type"] == "epic_completed"
        assert replay.final_state["epics"] == {"EPIC-1": "completed"}
        assert replay.final_state["last_test_result"] == "failed"

    async def test_concurrent_emits_are_gapless(self, event_store, registered):
        """Concurrent emitters of one instance get 1..N with no gaps or repeats."""
        results = await asyncio.gather(*[
            event_store.emit(
                registered,
                EventType.TASK_SPAWNED,
                {"task_type": "lint", "subagent_type": "SA", "task_id": f"t{i}"},
            )
            for i in range(20)
        ])

        assert sorted(r.sequence_num for r in results) == list(range(1, 21))
        assert await event_store.count(registered) == 20

    async def test_instances_are_sequenced_independently(self, event_store, registry):
        first = (await registry.register("odin", "PS")).instance_id
        second = (await registry.register("thor", "PS")).instance_id

        await event_store.emit(first, EventType.EPIC_STARTED, started_payload())
        await event_store.emit(first, EventType.EPIC_STARTED, started_payload("EPIC-2"))
        other = await event_store.emit(second, EventType.EPIC_STARTED, started_payload())

        assert other.sequence_num == 1
        assert await event_store.count(first) == 2
        assert (await event_store.query(second)).events[0].instance_id == second

    async def test_store_assigns_timestamp(self, event_store, registered, clock):
        result = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        assert result.timestamp == clock.now

    async def test_metadata_is_stored(self, event_store, registered):
        result = await event_store.emit(
            registered,
            EventType.COMMIT_CREATED,
            {"commit_hash": "abc1234", "message": "fix totals"},
            metadata={"source": "git-hook"},
        )
        event = await event_store.get_by_id(result.event_id)

        assert event.metadata == {"source": "git-hook"}
        assert event.event_data["commit_hash"] == "abc1234"

    async def test_listener_failure_does_not_undo_emit(self, event_store, registered):
        async def broken(record):
            raise RuntimeError("listener bug")

        event_store.add_listener(broken)
        result = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())

        assert result.sequence_num == 1
        assert await event_store.count(registered) == 1


# ==========================================================================
# Validation
# ==========================================================================

class TestValidation:
    """Tests for the write contract."""

    async def test_unknown_event_type(self, event_store, registered):
        with pytest.raises(InvalidEventError):
            await event_store.emit(registered, "epic_exploded", {})

    async def test_missing_required_fields(self, event_store, registered):
        with pytest.raises(InvalidEventError) as exc_info:
            await event_store.emit(registered, EventType.EPIC_STARTED, {"epic_id": "EPIC-1"})

        assert exc_info.value.context["missing"] == ["feature_name", "estimated_hours", "spawned_by"]

    async def test_payload_must_be_json(self, event_store, registered):
        with pytest.raises(InvalidEventError):
            await event_store.emit(
                registered,
                EventType.COMMIT_CREATED,
                {"commit_hash": "abc1234", "message": {"not", "json"}},
            )

    def test_payload_must_be_object(self):
        with pytest.raises(InvalidEventError):
            validate_event(EventType.EPIC_STARTED, ["epic_id"])

    async def test_unregistered_instance(self, event_store):
        with pytest.raises(InstanceNotFoundError):
            await event_store.emit("ghost-PS-000000", EventType.EPIC_STARTED, started_payload())

    async def test_rejected_emits_leave_no_gap(self, event_store, registered):
        """A rejected write never consumes a sequence number."""
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        with pytest.raises(InvalidEventError):
            await event_store.emit(registered, EventType.EPIC_COMPLETED, {"epic_id": "EPIC-1"})

        result = await event_store.emit(registered, EventType.EPIC_COMPLETED, completed_payload())
        assert result.sequence_num == 2


# ==========================================================================
# Queries
# ==========================================================================

class TestQuery:
    """Tests for query, latest, aggregate and lookups."""

    @pytest.fixture
    async def five_events(self, event_store, registered, clock) -> str:
        """epic_started, 3x test_failed, epic_completed, one minute apart."""
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        for count in (3, 2, 1):
            clock.advance(60)
            await event_store.emit(registered, EventType.TEST_FAILED, failed_payload(count))
        clock.advance(60)
        await event_store.emit(registered, EventType.EPIC_COMPLETED, completed_payload())
        return registered

    async def test_pagination(self, event_store, five_events):
        page = await event_store.query(five_events, limit=2)
        assert [e.sequence_num for e in page.events] == [1, 2]
        assert page.total_count == 5
        assert page.has_more

        last = await event_store.query(five_events, limit=2, offset=4)
        assert [e.sequence_num for e in last.events] == [5]
        assert not last.has_more

    async def test_descending_order(self, event_store, five_events):
        result = await event_store.query(five_events, order="desc", limit=3)
        assert [e.sequence_num for e in result.events] == [5, 4, 3]

    async def test_filter_by_several_types(self, event_store, five_events):
        result = await event_store.query(
            five_events,
            event_types=["epic_started", EventType.EPIC_COMPLETED],
        )
        assert [e.event_type for e in result.events] == [
            EventType.EPIC_STARTED,
            EventType.EPIC_COMPLETED,
        ]

    async def test_date_range_is_inclusive(self, event_store, five_events, clock):
        start = clock.now - timedelta(seconds=180)
        end = clock.now - timedelta(seconds=60)

        result = await event_store.query(five_events, start_date=start, end_date=end)
        assert [e.sequence_num for e in result.events] == [2, 3, 4]

    async def test_keyword_search(self, event_store, registered):
        await event_store.emit(
            registered,
            EventType.COMMIT_CREATED,
            {"commit_hash": "abc1234", "message": "Fix Rounding in invoice totals"},
        )
        await event_store.emit(
            registered,
            EventType.COMMIT_CREATED,
            {"commit_hash": "def5678", "message": "Add retry to webhook"},
        )

        result = await event_store.query(registered, keyword="rounding")
        assert [e.event_data["commit_hash"] for e in result.events] == ["abc1234"]

    async def test_limit_is_clamped(self, event_store, five_events):
        assert len((await event_store.query(five_events, limit=0)).events) == 1
        assert len((await event_store.query(five_events, limit=100_000)).events) == 5

    async def test_bad_arguments(self, event_store, five_events, clock):
        with pytest.raises(ValidationError):
            await event_store.query(five_events, order="sideways")
        with pytest.raises(ValidationError):
            await event_store.query(
                five_events,
                start_date=clock.now,
                end_date=clock.now - timedelta(seconds=1),
            )

    async def test_query_unknown_instance(self, event_store):
        with pytest.raises(InstanceNotFoundError):
            await event_store.query("ghost-PS-000000")

    async def test_latest_is_ascending(self, event_store, five_events):
        latest = await event_store.get_latest(five_events, n=2)
        assert [e.sequence_num for e in latest] == [4, 5]

    async def test_aggregate_by_type(self, event_store, five_events):
        assert await event_store.aggregate_by_type(five_events) == {
            "epic_started": 1,
            "test_failed": 3,
            "epic_completed": 1,
        }

    async def test_get_by_id(self, event_store, five_events):
        first = (await event_store.query(five_events, limit=1)).events[0]

        assert (await event_store.get_by_id(first.event_id)).sequence_num == 1
        assert await event_store.get_by_id(uuid4()) is None
        with pytest.raises(ValidationError):
            await event_store.get_by_id("not-a-uuid")


# ==========================================================================
# Replay
# ==========================================================================

class TestReplay:
    """Tests for EventStore.replay."""

    async def test_replay_is_idempotent(self, event_store, registered):
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        await event_store.emit(registered, EventType.TEST_FAILED, failed_payload())

        first = await event_store.replay(registered)
        second = await event_store.replay(registered)
        assert first.final_state == second.final_state

    async def test_replay_up_to_sequence(self, event_store, registered):
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        await event_store.emit(registered, EventType.EPIC_COMPLETED, completed_payload())

        partial = await event_store.replay(registered, to_sequence_num=1)
        assert partial.events_replayed == 1
        assert partial.to_sequence_num == 1
        assert partial.final_state["epics"] == {"EPIC-1": "in_progress"}

    async def test_replay_without_events(self, event_store, registered):
        replay = await event_store.replay(registered)

        assert replay.events_replayed == 0
        assert replay.final_state["last_sequence_num"] == 0
        assert replay.final_state["instance_id"] == registered

    async def test_replay_rejects_non_positive_bound(self, event_store, registered):
        with pytest.raises(ValidationError):
            await event_store.replay(registered, to_sequence_num=0)

    async def test_purge_resets_sequence(self, event_store, registered):
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload("EPIC-2"))

        assert await event_store.purge(registered) == 2
        assert await event_store.count(registered) == 0
        result = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        assert result.sequence_num == 1


# ==========================================================================
# Lineage
# ==========================================================================

class TestLineage:
    """Tests for parent / root / depth on events."""

    async def test_root_event(self, event_store, registered):
        emitted = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())

        event = await event_store.get_by_id(emitted.event_id)
        assert event.parent_event_id is None
        assert event.root_event_id == event.event_id
        assert event.depth == 0

    async def test_chain_is_root_first(self, event_store, registered):
        root = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        child = await event_store.emit(
            registered, EventType.TEST_FAILED, failed_payload(), parent_event_id=root.event_id,
        )
        grandchild = await event_store.emit(
            registered,
            EventType.COMMIT_CREATED,
            {"commit_hash": "abc1234", "message": "fix: totals"},
            parent_event_id=child.event_id,
        )

        chain = await event_store.get_chain(grandchild.event_id)

        assert [e.event_id for e in chain] == [root.event_id, child.event_id, grandchild.event_id]
        assert [e.depth for e in chain] == [0, 1, 2]
        assert {e.root_event_id for e in chain} == {root.event_id}

    async def test_children_and_tree(self, event_store, registry, registered):
        subagent = (await registry.register("odin", "SA")).instance_id
        root = await event_store.emit(registered, EventType.EPIC_STARTED, started_payload())
        spawned = await event_store.emit(
            registered,
            EventType.TASK_SPAWNED,
            {"task_type": "tests", "subagent_type": "SA"},
            parent_event_id=root.event_id,
        )
        failed = await event_store.emit(
            subagent, EventType.TEST_FAILED, failed_payload(), parent_event_id=spawned.event_id,
        )
        await event_store.emit(registered, EventType.EPIC_STARTED, started_payload("EPIC-2"))

        children = await event_store.get_children(root.event_id)
        tree = await event_store.get_tree(root.event_id)

        assert [e.event_id for e in children] == [spawned.event_id]
        assert [e.event_id for e in tree] == [root.event_id, spawned.event_id, failed.event_id]
        assert tree[2].instance_id == subagent

    async def test_unknown_parent(self, event_store, registered):
        """Rejected on write, and the sequence number is not consumed."""
        with pytest.raises(InvalidEventError):
            await event_store.emit(
                registered, EventType.TEST_FAILED, failed_payload(), parent_event_id=uuid4(),
            )
        with pytest.raises(InvalidEventError):
            await event_store.emit(
                registered, EventType.TEST_FAILED, failed_payload(), parent_event_id="not-a-uuid",
            )

        result = await event_store.emit(registered, EventType.TEST_FAILED, failed_payload())
        assert result.sequence_num == 1

    async def test_chain_of_unknown_event(self, event_store):
        with pytest.raises(EventNotFoundError):
            await event_store.get_chain(uuid4())


# ==========================================================================
# Full Service Graph
# ==========================================================================

class TestServiceGraph:
    """Event store behaviour with the checkpoint listener attached."""

    async def test_epic_lifecycle_scenario(self, services):
        instance_id = (await services.registry.register("odin", "PS")).instance_id
        store = services.event_store

        started = await store.emit(instance_id, EventType.EPIC_STARTED, started_payload())
        failed = await store.emit(instance_id, EventType.TEST_FAILED, failed_payload())
        completed = await store.emit(instance_id, EventType.EPIC_COMPLETED, completed_payload())

        assert (started.sequence_num, failed.sequence_num, completed.sequence_num) == (1, 2, 3)

        result = await store.query(instance_id, event_types=EventType.TEST_FAILED)
        assert result.total_count == 1
        assert result.events[0].sequence_num == 2

        replay = await store.replay(instance_id)
        assert replay.events_replayed == 3
        assert replay.final_state["last_event_type"] == "epic_completed"

        [checkpoint] = await services.checkpoints.list_checkpoints(instance_id)
        assert checkpoint.sequence_num == 3
        assert checkpoint.work_state == replay.final_state

    async def test_stored_payload_never_changes(self, services):
        """Later emits, replays, checkpoints and resumes leave an event as written."""
        instance_id = (await services.registry.register("odin", "PS")).instance_id
        store = services.event_store
        payload = started_payload()

        emitted = await store.emit(instance_id, EventType.EPIC_STARTED, payload)
        before = await store.get_by_id(emitted.event_id)
        payload["feature_name"] = "changed by the caller afterwards"

        await store.emit(instance_id, EventType.EPIC_COMPLETED, completed_payload())
        await store.emit(instance_id, EventType.CONTEXT_WINDOW_UPDATED, {
            "context_percent": 91, "tokens_used": 182_000, "tokens_available": 200_000,
        })
        await store.replay(instance_id)
        await services.checkpoints.create(instance_id)
        await services.checkpoints.resume(instance_id)

        after = await store.get_by_id(emitted.event_id)
        assert after == before
        assert after.event_data["feature_name"] == "Checkout flow"
