"""
Fix Learning Store - What fixed what.

One row per (failure pattern, strategy). Every verified attempt updates
the counters so later sessions can start from a known fix.

record() is a single INSERT .. ON CONFLICT DO UPDATE, so concurrent first
records of one pair all land on the same row.
"""

from typing import Optional
from uuid import uuid4

import structlog
from sqlalchemy import Float, cast, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, utcnow
from continuity.core.config import settings
from continuity.core.database import AsyncSessionLocal, get_db_session
from continuity.core.models import (
    CapabilityTier,
    Complexity,
    FailureCategory,
    FixLearning,
    FixStrategy,
)

logger = structlog.get_logger()

PATTERN_LENGTH = 500


def failure_pattern(root_cause: str) -> str:
    """Normalised lookup key for a root cause."""
    return " ".join(root_cause.split())[:PATTERN_LENGTH]


class FixLearningStore:

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock

    async def record(
        self,
        root_cause: str,
        category: FailureCategory,
        strategy: FixStrategy,
        tier: CapabilityTier,
        success: bool,
        complexity: Optional[Complexity] = None,
    ) -> FixLearning:
        """
        Count one outcome for a root cause and strategy.

        Returns:
            The updated learning row
        """
        pattern = failure_pattern(root_cause)
        now = self.clock()

        async with get_db_session(self.session_factory) as db:
            insert = postgresql_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
            stmt = insert(FixLearning).values(
                id=uuid4(),
                failure_pattern=pattern,
                failure_category=category,
                fix_strategy=strategy,
                model_used=tier,
                complexity=complexity,
                times_tried=1,
                times_succeeded=int(success),
                success_rate=float(success),
                created_at=now,
                last_used=now,
            )
            tried = FixLearning.times_tried + 1
            succeeded = FixLearning.times_succeeded + int(success)
            stmt = stmt.on_conflict_do_update(
                index_elements=["failure_pattern", "fix_strategy"],
                set_={
                    "times_tried": tried,
                    "times_succeeded": succeeded,
                    "success_rate": cast(succeeded, Float) / tried,
                    "model_used": stmt.excluded.model_used,
                    "last_used": stmt.excluded.last_used,
                },
            ).returning(FixLearning)
            result = await db.execute(stmt, execution_options={"populate_existing": True})
            learning = result.scalar_one()

        logger.info(
            "Fix learning recorded",
            pattern=pattern[:80],
            strategy=strategy.value,
            success=success,
            success_rate=round(learning.success_rate, 2),
        )
        return learning

    async def get_best_fix(
        self,
        root_cause: str,
        min_success_rate: Optional[float] = None,
    ) -> Optional[FixLearning]:
        """Most successful strategy for this root cause above the threshold."""
        threshold = settings.FIX_KNOWN_FIX_MIN_SUCCESS_RATE if min_success_rate is None else min_success_rate
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(FixLearning)
                .where(
                    FixLearning.failure_pattern == failure_pattern(root_cause),
                    FixLearning.success_rate > threshold,
                )
                .order_by(FixLearning.success_rate.desc(), FixLearning.times_succeeded.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def reliable_learnings(
        self,
        min_success_rate: Optional[float] = None,
        limit: int = 50,
    ) -> list[FixLearning]:
        threshold = settings.FIX_KNOWN_FIX_MIN_SUCCESS_RATE if min_success_rate is None else min_success_rate
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(FixLearning)
                .where(FixLearning.success_rate >= threshold)
                .order_by(FixLearning.success_rate.desc(), FixLearning.times_tried.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
