"""
Retry Manager - Durable history of fix sessions and attempts.

Attempts are insert-only. Each one is written before the loop does
anything else with its outcome, so the history matches reality even if
the process dies right after. The only later write to an attempt is the
one-time fill of verification_passed.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, utcnow
from continuity.core.database import AsyncSessionLocal, get_db_session
from continuity.core.errors import (
    ConflictError,
    InvalidRetryNumberError,
    NotFoundError,
    ValidationError,
)
from continuity.core.models import (
    CapabilityTier,
    EscalationReason,
    FixAttempt,
    FixSession,
    FixSessionStatus,
    FixStrategy,
)

logger = structlog.get_logger()

TERMINAL_STATUSES = (FixSessionStatus.SUCCEEDED, FixSessionStatus.ESCALATED)


@dataclass
class AttemptRecord:
    """Outcome of one executed attempt, as handed to record_attempt()."""
    retry_number: int
    model_used: CapabilityTier
    fix_strategy: FixStrategy
    success: bool
    changes_made: str = ""
    error_message: Optional[str] = None
    commit_sha: Optional[str] = None
    cost_usd: Decimal = Decimal("0")
    tokens_used: int = 0
    duration_seconds: float = 0.0


class RetryManager:
    """Fix session lifecycle and attempt bookkeeping."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock

    # ==========================================================================
    # Sessions
    # ==========================================================================

    async def open_session(
        self,
        test_id: str,
        max_retries: int,
        instance_id: Optional[str] = None,
    ) -> FixSession:
        if max_retries < 1:
            raise ValidationError("max_retries must be >= 1", max_retries=max_retries)

        session = FixSession(
            id=uuid4(),
            test_id=test_id,
            instance_id=instance_id,
            status=FixSessionStatus.DIAGNOSING,
            max_retries=max_retries,
            started_at=self.clock(),
        )
        async with get_db_session(self.session_factory) as db:
            db.add(session)
        return session

    async def update_session(
        self,
        session_id: UUID,
        status: FixSessionStatus,
        rca_id: Optional[UUID] = None,
        escalation_reason: Optional[EscalationReason] = None,
        handoff_path: Optional[str] = None,
        handoff_markdown: Optional[str] = None,
    ) -> FixSession:
        """
        Move a session forward.

        Terminal sessions (succeeded / escalated) cannot change again.
        """
        async with get_db_session(self.session_factory) as db:
            session = await db.get(FixSession, session_id, with_for_update=True)
            if session is None:
                raise NotFoundError(f"Fix session not found: {session_id}", session_id=str(session_id))
            if session.status in TERMINAL_STATUSES:
                raise ConflictError(
                    f"Fix session {session_id} is already {session.status.value}",
                    session_id=str(session_id),
                )

            session.status = status
            if rca_id is not None:
                session.rca_id = rca_id
            if escalation_reason is not None:
                session.escalation_reason = escalation_reason
            if handoff_path is not None:
                session.handoff_path = handoff_path
            if handoff_markdown is not None:
                session.handoff_markdown = handoff_markdown
            if status in TERMINAL_STATUSES:
                session.completed_at = self.clock()

        logger.info("Fix session updated", session_id=str(session_id), status=status.value)
        return session

    async def get_session(self, session_id: UUID) -> Optional[FixSession]:
        async with get_db_session(self.session_factory) as db:
            return await db.get(FixSession, session_id)

    async def list_sessions(self, test_id: str) -> list[FixSession]:
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(FixSession)
                .where(FixSession.test_id == test_id)
                .order_by(FixSession.started_at.asc())
            )
            return list(result.scalars().all())

    async def find_escalated(self, test_id: str) -> Optional[FixSession]:
        """The escalated session for a test id, if the loop gave up on it."""
        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                select(FixSession)
                .where(
                    FixSession.test_id == test_id,
                    FixSession.status == FixSessionStatus.ESCALATED,
                )
                .order_by(FixSession.completed_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ==========================================================================
    # Attempts
    # ==========================================================================

    async def record_attempt(
        self,
        session: FixSession,
        attempt: AttemptRecord,
        rca_id: Optional[UUID] = None,
    ) -> FixAttempt:
        """
        Insert one attempt.

        Raises:
            InvalidRetryNumberError: retry outside [1, session.max_retries]
            ConflictError: retry number not above the session's last one
        """
        if not 1 <= attempt.retry_number <= session.max_retries:
            raise InvalidRetryNumberError(attempt.retry_number, session.max_retries)

        row = FixAttempt(
            id=uuid4(),
            session_id=session.id,
            test_id=session.test_id,
            rca_id=rca_id or session.rca_id,
            retry_number=attempt.retry_number,
            model_used=attempt.model_used,
            fix_strategy=attempt.fix_strategy,
            changes_made=attempt.changes_made or "",
            commit_sha=attempt.commit_sha,
            success=attempt.success,
            error_message=attempt.error_message,
            cost_usd=Decimal(attempt.cost_usd),
            tokens_used=attempt.tokens_used,
            duration_seconds=attempt.duration_seconds,
            attempted_at=self.clock(),
        )

        try:
            async with get_db_session(self.session_factory) as db:
                last = await db.scalar(
                    select(func.max(FixAttempt.retry_number))
                    .where(FixAttempt.session_id == session.id)
                )
                if last is not None and attempt.retry_number <= last:
                    raise ConflictError(
                        f"Retry {attempt.retry_number} already recorded (last: {last})",
                        session_id=str(session.id),
                        retry_number=attempt.retry_number,
                    )
                db.add(row)
        except IntegrityError as e:
            raise ConflictError(
                f"Retry {attempt.retry_number} already recorded",
                session_id=str(session.id),
                retry_number=attempt.retry_number,
            ) from e

        logger.info(
            "Fix attempt recorded",
            test_id=session.test_id,
            retry_number=row.retry_number,
            model=row.model_used.value,
            strategy=row.fix_strategy.value,
            success=row.success,
            cost_usd=str(row.cost_usd),
        )
        return row

    async def record_verification(self, attempt_id: UUID, passed: bool) -> FixAttempt:
        """Fill verification_passed; a second call is a conflict."""
        async with get_db_session(self.session_factory) as db:
            attempt = await db.get(FixAttempt, attempt_id, with_for_update=True)
            if attempt is None:
                raise NotFoundError(f"Fix attempt not found: {attempt_id}", attempt_id=str(attempt_id))
            if attempt.verification_passed is not None:
                raise ConflictError(
                    f"Verification already recorded for attempt {attempt_id}",
                    attempt_id=str(attempt_id),
                )
            attempt.verification_passed = passed
        return attempt

    async def get_attempts(
        self,
        test_id: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> list[FixAttempt]:
        if test_id is None and session_id is None:
            raise ValidationError("test_id or session_id is required")

        query = select(FixAttempt)
        if session_id is not None:
            query = query.where(FixAttempt.session_id == session_id)
        if test_id is not None:
            query = query.where(FixAttempt.test_id == test_id)

        async with get_db_session(self.session_factory) as db:
            result = await db.execute(
                query.order_by(FixAttempt.attempted_at.asc(), FixAttempt.retry_number.asc())
            )
            return list(result.scalars().all())

    async def failed_strategies(
        self,
        test_id: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> set[FixStrategy]:
        """Strategies whose attempt did not end in a verified fix."""
        return {
            attempt.fix_strategy
            for attempt in await self.get_attempts(test_id=test_id, session_id=session_id)
            if not attempt.fixed
        }

    # ==========================================================================
    # Cost Accounting
    # ==========================================================================

    async def total_cost(
        self,
        test_id: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> Decimal:
        """Sum of cost_usd across every recorded attempt, whatever its outcome."""
        if test_id is None and session_id is None:
            raise ValidationError("test_id or session_id is required")

        query = select(func.coalesce(func.sum(FixAttempt.cost_usd), 0))
        if session_id is not None:
            query = query.where(FixAttempt.session_id == session_id)
        if test_id is not None:
            query = query.where(FixAttempt.test_id == test_id)

        async with get_db_session(self.session_factory) as db:
            total = await db.scalar(query)
        return Decimal(str(total or 0)).quantize(Decimal("0.000001"))

    async def cost_breakdown(
        self,
        test_id: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> dict[str, dict[str, Union[int, str]]]:
        """Attempts, tokens and cost per capability tier."""
        breakdown: dict[str, dict[str, Any]] = {}
        for attempt in await self.get_attempts(test_id=test_id, session_id=session_id):
            entry = breakdown.setdefault(
                attempt.model_used.value,
                {"attempts": 0, "tokens_used": 0, "cost_usd": Decimal("0")},
            )
            entry["attempts"] += 1
            entry["tokens_used"] += attempt.tokens_used
            entry["cost_usd"] += Decimal(attempt.cost_usd)

        for entry in breakdown.values():
            entry["cost_usd"] = str(entry["cost_usd"].quantize(Decimal("0.000001")))
        return breakdown

    async def summary(self, test_id: str) -> dict[str, Any]:
        attempts = await self.get_attempts(test_id=test_id)
        total = await self.total_cost(test_id=test_id)
        return {
            "test_id": test_id,
            "total_attempts": len(attempts),
            "successful_attempts": sum(1 for attempt in attempts if attempt.fixed),
            "failed_strategies": sorted(
                {attempt.fix_strategy.value for attempt in attempts if not attempt.fixed}
            ),
            "models_used": sorted({attempt.model_used.value for attempt in attempts}),
            "total_cost_usd": str(total),
            "total_tokens": sum(attempt.tokens_used for attempt in attempts),
        }
