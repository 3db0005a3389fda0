"""
Supervisor Continuity - Instance Registry Tests
===============================================

Registration, heartbeats, close and computed status.
"""

from datetime import timedelta

import pytest

from continuity.core.errors import (
    DuplicateInstanceError,
    InstanceClosedError,
    InstanceNotFoundError,
    InvalidKeyFormatError,
    ValidationError,
)
from continuity.core.models import InstanceRole, InstanceStatus
from continuity.core.session.instance_ids import (
    INSTANCE_ID_PATTERN,
    generate_instance_id,
    is_valid_instance_id,
    parse_instance_id,
)
from continuity.core.session.registry import InstanceRegistry


# ==========================================================================
# Instance IDs
# ==========================================================================

class TestInstanceIds:
    """Tests for instance id generation and parsing."""

    def test_generated_id_format(self):
        """Generated ids are {project}-{role}-{6 hex}."""
        instance_id = generate_instance_id("odin", "PS")

        assert INSTANCE_ID_PATTERN.match(instance_id)
        assert instance_id.startswith("odin-PS-")

    def test_generated_ids_differ(self):
        """Two ids for the same project and role are distinct."""
        ids = {generate_instance_id("odin", InstanceRole.SA) for _ in range(50)}
        assert len(ids) == 50

    def test_project_is_lowercased(self):
        assert generate_instance_id("Odin", "MS").startswith("odin-MS-")

    @pytest.mark.parametrize("project", ["", "odin project", "odin_x", "a" * 65])
    def test_invalid_project_rejected(self, project: str):
        with pytest.raises(InvalidKeyFormatError):
            generate_instance_id(project, "PS")

    def test_invalid_role_rejected(self):
        with pytest.raises(InvalidKeyFormatError):
            generate_instance_id("odin", "XX")

    def test_parse(self):
        parsed = parse_instance_id("my-app-SA-0f9e8d")

        assert parsed.project == "my-app"
        assert parsed.role == InstanceRole.SA
        assert parsed.hash == "0f9e8d"

    @pytest.mark.parametrize("instance_id", ["odin-PS-ABCDEF", "odin-XX-ab12cd", "odin-PS-ab12c"])
    def test_parse_rejects_malformed(self, instance_id: str):
        assert not is_valid_instance_id(instance_id)
        with pytest.raises(InvalidKeyFormatError):
            parse_instance_id(instance_id)


# ==========================================================================
# Registration
# ==========================================================================

class TestRegister:
    """Tests for InstanceRegistry.register."""

    async def test_register_returns_active_instance(self, registry: InstanceRegistry, clock):
        """A new instance is active with its heartbeat at creation time."""
        view = await registry.register("odin", "PS", host="build-01")

        assert is_valid_instance_id(view.instance_id)
        assert view.project == "odin"
        assert view.role == InstanceRole.PS
        assert view.host == "build-01"
        assert view.status == InstanceStatus.ACTIVE
        assert view.created_at == clock.now
        assert view.last_heartbeat_at == clock.now
        assert view.closed_at is None

    async def test_register_starts_sequence_at_zero(self, registry, event_store):
        view = await registry.register("odin", "PS")
        assert await event_store.head_sequence(view.instance_id) == 0

    async def test_duplicate_id_rejected(self, session_factory, clock):
        """A colliding generated id is refused, not overwritten."""
        registry = InstanceRegistry(
            session_factory,
            clock=clock,
            id_generator=lambda project, role: f"{project}-{role.value}-ab12cd",
        )
        await registry.register("odin", "PS")

        with pytest.raises(DuplicateInstanceError):
            await registry.register("odin", "PS")

    async def test_invalid_project_rejected(self, registry):
        with pytest.raises(InvalidKeyFormatError):
            await registry.register("not a project", "PS")


# ==========================================================================
# Heartbeats and Close
# ==========================================================================

class TestHeartbeat:
    """Tests for heartbeats and closing."""

    async def test_heartbeat_updates_timestamp_and_context(self, registry, registered, clock):
        clock.advance(30)
        view = await registry.heartbeat(registered, context_percent=42, current_epic="EPIC-7")

        assert view.last_heartbeat_at == clock.now
        assert view.context_percent == 42
        assert view.current_epic == "EPIC-7"

    async def test_heartbeat_never_moves_backwards(self, registry, registered, clock):
        """An out-of-order heartbeat keeps the later timestamp."""
        clock.advance(60)
        latest = clock.now
        await registry.heartbeat(registered)

        clock.now = latest - timedelta(seconds=45)
        view = await registry.heartbeat(registered, context_percent=10)

        assert view.last_heartbeat_at == latest
        assert view.context_percent == 10

    @pytest.mark.parametrize("context_percent", [-1, 101])
    async def test_context_percent_out_of_range(self, registry, registered, context_percent):
        with pytest.raises(ValidationError):
            await registry.heartbeat(registered, context_percent=context_percent)

    async def test_heartbeat_unknown_instance(self, registry):
        with pytest.raises(InstanceNotFoundError):
            await registry.heartbeat("ghost-PS-000000")

    async def test_closed_instance_cannot_heartbeat(self, registry, registered):
        """Closed is terminal."""
        await registry.mark_closed(registered)

        with pytest.raises(InstanceClosedError):
            await registry.heartbeat(registered)

    async def test_close_is_idempotent(self, registry, registered, clock):
        first = await registry.mark_closed(registered)
        clock.advance(10)
        second = await registry.mark_closed(registered)

        assert first.status == InstanceStatus.CLOSED
        assert second.closed_at == first.closed_at


# ==========================================================================
# Status and Lookup
# ==========================================================================

class TestStatus:
    """Tests for computed status and lookups."""

    async def test_stale_after_timeout(self, registry, registered, clock):
        clock.advance(120)
        assert (await registry.get_instance_details(registered)).status == InstanceStatus.ACTIVE

        clock.advance(1)
        view = await registry.get_instance_details(registered)
        assert view.status == InstanceStatus.STALE
        assert view.is_stale
        assert view.heartbeat_age_seconds == pytest.approx(121)

    async def test_heartbeat_revives_stale_instance(self, registry, registered, clock):
        clock.advance(300)
        view = await registry.heartbeat(registered)
        assert view.status == InstanceStatus.ACTIVE

    async def test_subagents_get_longer_timeout(self, registry, clock):
        """Sub-agents run long tool calls and get their own timeout."""
        view = await registry.register("odin", "SA")

        clock.advance(600)
        assert (await registry.get_instance_details(view.instance_id)).status == InstanceStatus.ACTIVE

        clock.advance(301)
        assert (await registry.get_instance_details(view.instance_id)).status == InstanceStatus.STALE

    async def test_lookup_by_prefix(self, registry, registered):
        view = await registry.get_instance_details(registered[:-2])
        assert view.instance_id == registered

    async def test_ambiguous_prefix(self, registry):
        await registry.register("odin", "PS")
        await registry.register("odin", "PS")

        with pytest.raises(InstanceNotFoundError):
            await registry.get_instance_details("odin-PS-")

    async def test_unknown_instance(self, registry):
        with pytest.raises(InstanceNotFoundError):
            await registry.get_instance_details("ghost-PS-000000")

    async def test_list_filters(self, registry, clock):
        odin = await registry.register("odin", "PS")
        await registry.register("thor", "PS")
        closed = await registry.register("odin", "SA")
        await registry.mark_closed(closed.instance_id)

        assert {v.instance_id for v in await registry.list_instances(project="odin")} == {
            odin.instance_id,
            closed.instance_id,
        }
        assert [v.instance_id for v in await registry.list_instances(status="closed")] == [
            closed.instance_id,
        ]
        assert all(
            v.status != InstanceStatus.CLOSED
            for v in await registry.list_instances(include_closed=False)
        )

        clock.advance(121)
        stale = await registry.list_instances(status=InstanceStatus.STALE)
        assert {v.project for v in stale} == {"odin", "thor"}
