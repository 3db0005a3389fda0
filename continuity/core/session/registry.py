"""
Instance Registry
=================

Creates and tracks instances: one long-lived supervised session working
on one project. Instances are mutated only by heartbeats and an explicit
close. Status is a computed predicate over the heartbeat timestamp and is
recomputed on every read.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, ensure_utc, utcnow
from continuity.core.config import settings
from continuity.core.database import AsyncSessionLocal, get_db_session
from continuity.core.errors import (
    DuplicateInstanceError,
    InstanceClosedError,
    InstanceNotFoundError,
    ValidationError,
)
from continuity.core.models import Instance, InstanceRole, InstanceSequence, InstanceStatus
from continuity.core.session.instance_ids import (
    coerce_role,
    generate_instance_id,
    normalize_project,
    parse_instance_id,
)

logger = structlog.get_logger()


@dataclass
class InstanceView:
    """Snapshot of an instance with its status computed at read time."""
    instance_id: str
    project: str
    role: InstanceRole
    host: str
    status: InstanceStatus
    created_at: datetime
    last_heartbeat_at: datetime
    closed_at: Optional[datetime]
    context_percent: Optional[int]
    current_epic: Optional[str]
    heartbeat_age_seconds: float
    stale_timeout_seconds: float

    @property
    def is_stale(self) -> bool:
        return self.status == InstanceStatus.STALE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class InstanceRegistry:
    """
    Registry of supervised instances.

    Every operation runs in its own transaction taken from the session
    factory, so the registry is safe to share between tasks.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
        id_generator: Callable[[str, InstanceRole], str] = generate_instance_id,
        stale_timeout_seconds: Optional[float] = None,
        subagent_stale_timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock
        self.id_generator = id_generator
        self.stale_timeout_seconds = stale_timeout_seconds or settings.STALE_TIMEOUT_SECONDS
        self.subagent_stale_timeout_seconds = (
            subagent_stale_timeout_seconds or settings.SUBAGENT_STALE_TIMEOUT_SECONDS
        )

    def stale_timeout_for(self, role: InstanceRole) -> float:
        if role == InstanceRole.SA:
            return float(self.subagent_stale_timeout_seconds)
        return float(self.stale_timeout_seconds)

    # ==========================================================================
    # Mutations
    # ==========================================================================

    async def register(
        self,
        project: str,
        role: Union[InstanceRole, str],
        host: Optional[str] = None,
    ) -> InstanceView:
        """
        Register a new instance with a fresh id.

        Args:
            project: Project name (lowercase letters, digits, hyphens)
            role: PS, MS or SA
            host: Machine running the instance (defaults to HOST_MACHINE)

        Returns:
            The new instance, status active

        Raises:
            InvalidKeyFormatError: project or generated id is malformed
            DuplicateInstanceError: the generated id is already taken
        """
        project = normalize_project(project)
        role = coerce_role(role)
        instance_id = self.id_generator(project, role)
        parse_instance_id(instance_id)

        now = self.clock()
        instance = Instance(
            instance_id=instance_id,
            project=project,
            role=role,
            host=host or settings.HOST_MACHINE,
            created_at=now,
            last_heartbeat_at=now,
        )

        try:
            async with get_db_session(self.session_factory) as db:
                if await db.get(Instance, instance_id) is not None:
                    raise DuplicateInstanceError(instance_id)
                db.add(instance)
                db.add(InstanceSequence(instance_id=instance_id, last_sequence_num=0))
                await db.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent register of the same id
            raise DuplicateInstanceError(instance_id) from e

        logger.info("Instance registered", instance_id=instance_id, project=project, role=role.value)
        return self._view(instance, now)

    async def heartbeat(
        self,
        instance_id: str,
        context_percent: Optional[int] = None,
        current_epic: Optional[str] = None,
    ) -> InstanceView:
        """
        Record a liveness signal.

        last_heartbeat_at never moves backwards; a heartbeat carrying an
        older timestamp only updates the reported context.

        Raises:
            InstanceNotFoundError: unknown instance id
            InstanceClosedError: instance was closed
            ValidationError: context_percent outside [0, 100]
        """
        if context_percent is not None and not 0 <= context_percent <= 100:
            raise ValidationError(
                f"context_percent must be in [0, 100], got {context_percent}",
                context_percent=context_percent,
            )

        now = self.clock()
        async with get_db_session(self.session_factory) as db:
            instance = await self._get_for_update(db, instance_id)
            if instance.closed_at is not None:
                raise InstanceClosedError(
                    f"Instance {instance_id} is closed and cannot heartbeat",
                    instance_id=instance_id,
                )

            if now > ensure_utc(instance.last_heartbeat_at):
                instance.last_heartbeat_at = now
            if context_percent is not None:
                instance.context_percent = context_percent
            if current_epic is not None:
                instance.current_epic = current_epic

        logger.debug("Heartbeat", instance_id=instance_id, context_percent=context_percent)
        return self._view(instance, now)

    async def mark_closed(self, instance_id: str) -> InstanceView:
        """Close an instance. One-way; closing twice is a no-op."""
        now = self.clock()
        async with get_db_session(self.session_factory) as db:
            instance = await self._get_for_update(db, instance_id)
            if instance.closed_at is None:
                instance.closed_at = now
                logger.info("Instance closed", instance_id=instance_id)

        return self._view(instance, now)

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_instance_details(self, instance_id: str) -> InstanceView:
        """
        Look up an instance by exact id, falling back to a unique prefix.

        Raises:
            InstanceNotFoundError: no match, or the prefix is ambiguous
        """
        async with get_db_session(self.session_factory) as db:
            instance = await db.get(Instance, instance_id)
            if instance is None and instance_id:
                pattern = instance_id.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                result = await db.execute(
                    select(Instance)
                    .where(Instance.instance_id.like(f"{pattern}%", escape="\\"))
                    .limit(2)
                )
                matches = result.scalars().all()
                if len(matches) > 1:
                    raise InstanceNotFoundError(
                        instance_id,
                        detail=f"Instance prefix is ambiguous: {instance_id}",
                    )
                instance = matches[0] if matches else None

        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return self._view(instance, self.clock())

    async def list_instances(
        self,
        project: Optional[str] = None,
        role: Optional[Union[InstanceRole, str]] = None,
        status: Optional[Union[InstanceStatus, str]] = None,
        include_closed: bool = True,
        limit: Optional[int] = 100,
    ) -> list[InstanceView]:
        """List instances, newest first, with status computed now."""
        query = select(Instance).order_by(Instance.created_at.desc())
        if project:
            query = query.where(Instance.project == project.lower())
        if role:
            query = query.where(Instance.role == coerce_role(role))

        wanted = InstanceStatus(status) if status else None
        if wanted == InstanceStatus.CLOSED:
            query = query.where(Instance.closed_at.is_not(None))
        elif wanted is not None or not include_closed:
            query = query.where(Instance.closed_at.is_(None))

        async with get_db_session(self.session_factory) as db:
            result = await db.execute(query)
            instances = result.scalars().all()

        now = self.clock()
        views = [self._view(instance, now) for instance in instances]
        if wanted is not None:
            views = [view for view in views if view.status == wanted]
        if limit is not None:
            views = views[:limit]
        return views

    async def exists(self, instance_id: str) -> bool:
        async with get_db_session(self.session_factory) as db:
            return await db.get(Instance, instance_id) is not None

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def _get_for_update(self, db: AsyncSession, instance_id: str) -> Instance:
        result = await db.execute(
            select(Instance).where(Instance.instance_id == instance_id).with_for_update()
        )
        instance = result.scalar_one_or_none()
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def _view(self, instance: Instance, now: datetime) -> InstanceView:
        timeout = self.stale_timeout_for(instance.role)
        last_heartbeat = ensure_utc(instance.last_heartbeat_at)
        return InstanceView(
            instance_id=instance.instance_id,
            project=instance.project,
            role=instance.role,
            host=instance.host,
            status=instance.compute_status(now, timeout),
            created_at=ensure_utc(instance.created_at),
            last_heartbeat_at=last_heartbeat,
            closed_at=ensure_utc(instance.closed_at),
            context_percent=instance.context_percent,
            current_epic=instance.current_epic,
            heartbeat_age_seconds=max(0.0, (now - last_heartbeat).total_seconds()),
            stale_timeout_seconds=timeout,
        )
