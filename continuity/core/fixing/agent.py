"""
Adaptive Fix Agent
==================

Drives one failing test through the fix loop:

    diagnosing -> (escalated | iterating) -> (succeeded | escalated)

Per retry the agent picks a capability tier from the complexity, picks a
strategy that has not already failed for the test, runs the executor
under a wall-clock timeout while listening for an operator cancel,
records the attempt, then re-runs the failing check.

Execution problems (agent error, timeout, cancellation, failed or hung
verification) are recorded as attempts and never raised. Only caller
mistakes (validation, not found, already escalated) propagate.

Cancelling the loop task at any await, in or between attempts, still
leaves the session escalated with reason "cancelled".
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, utcnow
from continuity.core.config import settings
from continuity.core.errors import AlreadyEscalatedError, ConflictError
from continuity.core.fixing.escalation import EscalationHandler
from continuity.core.fixing.executor import AgentExecutor, ExecutionResult, FixTask
from continuity.core.fixing.learning import FixLearningStore
from continuity.core.fixing.policy import FixStrategySelector, ModelSelector
from continuity.core.fixing.rca import FailureReport, RootCauseAnalyzer
from continuity.core.fixing.retry_manager import TERMINAL_STATUSES, AttemptRecord, RetryManager
from continuity.core.fixing.verification import VerificationResult, Verifier
from continuity.core.models import (
    CapabilityTier,
    EscalationReason,
    EventType,
    FailureCategory,
    FixAttempt,
    FixSession,
    FixSessionStatus,
    FixStrategy,
    RootCauseAnalysis,
)
from continuity.core.session.event_store import EventStore

logger = structlog.get_logger()

CANCELLED = "cancelled"


@dataclass
class FixOutcome:
    """Terminal result of one fix session."""
    test_id: str
    session_id: UUID
    status: FixSessionStatus
    retries_used: int
    total_cost_usd: Decimal
    rca_id: Optional[UUID] = None
    fix_strategy: Optional[FixStrategy] = None
    model_used: Optional[CapabilityTier] = None
    escalation_reason: Optional[EscalationReason] = None
    handoff_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == FixSessionStatus.SUCCEEDED

    @property
    def escalated(self) -> bool:
        return self.status == FixSessionStatus.ESCALATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "session_id": str(self.session_id),
            "status": self.status.value,
            "retries_used": self.retries_used,
            "total_cost_usd": str(self.total_cost_usd),
            "rca_id": str(self.rca_id) if self.rca_id else None,
            "fix_strategy": self.fix_strategy.value if self.fix_strategy else None,
            "model_used": self.model_used.value if self.model_used else None,
            "escalation_reason": self.escalation_reason.value if self.escalation_reason else None,
            "handoff_path": self.handoff_path,
        }


@dataclass
class _InFlight:
    instance_id: Optional[str]
    cancel_event: asyncio.Event
    task: Optional["asyncio.Task[FixOutcome]"] = None


@dataclass
class _Progress:
    session: Optional[FixSession] = None
    rca: Optional[RootCauseAnalysis] = None
    retries_used: int = 0


class AdaptiveFixAgent:
    """
    Orchestrates diagnosis, tiered retries, verification and escalation.

    One fix loop per test id runs at a time within an agent.
    """

    def __init__(
        self,
        executor: AgentExecutor,
        verifier: Verifier,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        event_store: Optional[EventStore] = None,
        analyzer: Optional[RootCauseAnalyzer] = None,
        model_selector: Optional[ModelSelector] = None,
        strategy_selector: Optional[FixStrategySelector] = None,
        retry_manager: Optional[RetryManager] = None,
        learning_store: Optional[FixLearningStore] = None,
        escalation_handler: Optional[EscalationHandler] = None,
        max_retries: Optional[int] = None,
        attempt_timeout: Optional[float] = None,
        verify_timeout: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.executor = executor
        self.verifier = verifier
        self.event_store = event_store
        self.max_retries = max_retries or settings.FIX_MAX_RETRIES
        self.attempt_timeout = attempt_timeout or settings.FIX_ATTEMPT_TIMEOUT_SECONDS
        self.verify_timeout = verify_timeout or settings.FIX_VERIFY_TIMEOUT_SECONDS

        self.analyzer = analyzer or RootCauseAnalyzer(session_factory, clock=clock)
        self.model_selector = model_selector or ModelSelector(self.max_retries)
        self.strategy_selector = strategy_selector or FixStrategySelector()
        self.retry_manager = retry_manager or RetryManager(session_factory, clock=clock)
        self.learning_store = learning_store or FixLearningStore(session_factory, clock=clock)
        self.escalation_handler = escalation_handler or EscalationHandler(clock=clock)

        self._in_flight: dict[str, _InFlight] = {}

    # ==========================================================================
    # Cancellation
    # ==========================================================================

    def cancel(self, test_id: str) -> bool:
        """
        Ask the running loop for test_id to stop.

        The in-flight attempt is killed and recorded as failed with
        error "cancelled"; the session ends escalated.

        Returns:
            False when no loop is running for test_id
        """
        in_flight = self._in_flight.get(test_id)
        if in_flight is None:
            return False
        in_flight.cancel_event.set()
        logger.warning("Fix loop cancel requested", test_id=test_id)
        return True

    def cancel_for_instance(self, instance_id: str) -> list[str]:
        """Cancel every running loop started for an instance."""
        test_ids = [
            test_id
            for test_id, in_flight in self._in_flight.items()
            if in_flight.instance_id == instance_id
        ]
        for test_id in test_ids:
            self.cancel(test_id)
        return test_ids

    @property
    def running(self) -> list[str]:
        return list(self._in_flight)

    # ==========================================================================
    # Fix Loop
    # ==========================================================================

    async def fix(self, failure: FailureReport) -> FixOutcome:
        """
        Run the fix loop for one failing test until it succeeds or escalates.

        Args:
            failure: The failing test

        Returns:
            FixOutcome in status succeeded or escalated

        Raises:
            AlreadyEscalatedError: the test was handed to a human before
            ConflictError: a loop for this test is already running
            InstanceNotFoundError: failure names an unregistered instance
        """
        return await (await self.start(failure))

    async def start(self, failure: FailureReport) -> "asyncio.Task[FixOutcome]":
        """
        Check the failure can be fixed, then run the loop as a task.

        Raises the same errors as fix(), before any task is created.
        """
        escalated = await self.retry_manager.find_escalated(failure.test_id)
        if escalated is not None:
            raise AlreadyEscalatedError(failure.test_id, escalated.handoff_path)
        if failure.test_id in self._in_flight:
            raise ConflictError(
                f"A fix loop is already running for {failure.test_id}",
                test_id=failure.test_id,
            )
        if failure.instance_id and self.event_store is not None:
            await self.event_store.head_sequence(failure.instance_id)

        cancel_event = asyncio.Event()
        in_flight = _InFlight(failure.instance_id, cancel_event)
        self._in_flight[failure.test_id] = in_flight
        in_flight.task = asyncio.create_task(self._run_tracked(failure, cancel_event))
        in_flight.task.add_done_callback(self._log_crash)
        return in_flight.task

    async def shutdown(self) -> None:
        """Cancel every running loop and wait for them to record it."""
        tasks = [in_flight.task for in_flight in self._in_flight.values() if in_flight.task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_tracked(self, failure: FailureReport, cancel_event: asyncio.Event) -> FixOutcome:
        try:
            return await self._run(failure, cancel_event)
        finally:
            self._in_flight.pop(failure.test_id, None)

    @staticmethod
    def _log_crash(task: "asyncio.Task[FixOutcome]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Fix loop crashed", error=str(error), error_type=type(error).__name__)

    async def _run(self, failure: FailureReport, cancel_event: asyncio.Event) -> FixOutcome:
        progress = _Progress()
        try:
            return await self._loop(failure, cancel_event, progress)
        except asyncio.CancelledError:
            # The surrounding task was cancelled: close the books, then propagate
            await self._close_cancelled(progress)
            raise

    async def _close_cancelled(self, progress: _Progress) -> None:
        if progress.session is None:
            return
        current = await self.retry_manager.get_session(progress.session.id)
        if current is None or current.status in TERMINAL_STATUSES:
            return
        logger.warning(
            "Fix loop cancelled",
            test_id=progress.session.test_id,
            retries_used=progress.retries_used,
        )
        await self._escalate(progress.session, progress.rca, EscalationReason.CANCELLED, progress.retries_used)

    async def _loop(
        self,
        failure: FailureReport,
        cancel_event: asyncio.Event,
        progress: _Progress,
    ) -> FixOutcome:
        log = logger.bind(test_id=failure.test_id)

        previous = await self.retry_manager.get_attempts(test_id=failure.test_id)
        session = progress.session = await self.retry_manager.open_session(
            failure.test_id,
            self.max_retries,
            instance_id=failure.instance_id,
        )
        rca = progress.rca = await self.analyzer.analyze(failure, previous_attempts=len(previous))
        session.rca_id = rca.id

        if self.escalation_handler.should_escalate_immediately(rca):
            log.info("Escalating without attempts", complexity=rca.complexity.value)
            return await self._escalate(
                session, rca, self.escalation_handler.immediate_reason(rca), retries_used=0
            )

        await self.retry_manager.update_session(session.id, FixSessionStatus.ITERATING, rca_id=rca.id)
        known = await self.learning_store.get_best_fix(rca.root_cause)
        known_fix = known.fix_strategy if known else None

        for retry in range(1, self.max_retries + 1):
            if cancel_event.is_set():
                return await self._escalate(session, rca, EscalationReason.CANCELLED, retry - 1)

            tier = self.model_selector.select(rca.complexity, retry)
            failed = await self.retry_manager.failed_strategies(test_id=failure.test_id)
            strategy = self.strategy_selector.select(
                rca.failure_category,
                tier,
                failed,
                recommended=rca.recommended_strategy,
                known_fix=known_fix,
            )
            if strategy is None:
                log.info("Fix strategies exhausted", retry=retry, failed=sorted(s.value for s in failed))
                reason = EscalationReason.MAX_RETRIES_EXHAUSTED
                if retry == 1 and rca.failure_category == FailureCategory.UNKNOWN:
                    reason = EscalationReason.UNKNOWN_FAILURE_PATTERN
                return await self._escalate(session, rca, reason, retry - 1)

            log.info("Fix attempt starting", retry=retry, model=tier.value, strategy=strategy.value)
            task = FixTask(
                test_id=failure.test_id,
                retry_number=retry,
                tier=tier,
                strategy=strategy,
                prompt=self.build_prompt(failure, rca, strategy, failed),
            )

            progress.retries_used = retry
            started = time.monotonic()
            try:
                result = await self._execute(task, cancel_event)
            except asyncio.CancelledError:
                await self._record(session, task, self._interrupted(task, CANCELLED), started)
                raise

            attempt = await self._record(session, task, result, started)
            if result.error == CANCELLED:
                return await self._escalate(session, rca, EscalationReason.CANCELLED, retry)
            if not result.success:
                log.info("Fix execution failed", retry=retry, error=result.error)
                continue

            try:
                verification = await self._verify(failure, cancel_event)
            except asyncio.CancelledError:
                await self.retry_manager.record_verification(attempt.id, False)
                raise
            await self.retry_manager.record_verification(attempt.id, verification.passed)
            if cancel_event.is_set() and not verification.passed:
                return await self._escalate(session, rca, EscalationReason.CANCELLED, retry)

            await self._emit_verification(failure, attempt, verification)
            await self.learning_store.record(
                rca.root_cause,
                rca.failure_category,
                strategy,
                tier,
                verification.passed,
                complexity=rca.complexity,
            )

            if verification.passed:
                await self.retry_manager.update_session(session.id, FixSessionStatus.SUCCEEDED)
                total = await self.retry_manager.total_cost(session_id=session.id)
                log.info("Fix verified", retry=retry, model=tier.value, strategy=strategy.value)
                return FixOutcome(
                    test_id=failure.test_id,
                    session_id=session.id,
                    status=FixSessionStatus.SUCCEEDED,
                    retries_used=retry,
                    total_cost_usd=total,
                    rca_id=rca.id,
                    fix_strategy=strategy,
                    model_used=tier,
                )

            log.info("Verification failed", retry=retry)

        return await self._escalate(
            session, rca, EscalationReason.MAX_RETRIES_EXHAUSTED, self.max_retries
        )

    # ==========================================================================
    # Attempt Steps
    # ==========================================================================

    async def _execute(self, task: FixTask, cancel_event: asyncio.Event) -> ExecutionResult:
        """
        Run the executor, racing the timeout and the cancel signal.

        A timed out or cancelled executor task is cancelled and awaited, so
        its process tree is gone before this returns.
        """
        execution = asyncio.create_task(self._safe_execute(task))
        cancelled = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {execution, cancelled},
                timeout=self.attempt_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._stop(execution, cancelled)
            raise

        if execution in done:
            cancelled.cancel()
            return execution.result()

        await self._stop(execution, cancelled)
        if cancel_event.is_set():
            logger.warning("Fix attempt cancelled", test_id=task.test_id, retry=task.retry_number)
            return self._interrupted(task, CANCELLED)

        logger.warning(
            "Fix attempt timed out",
            test_id=task.test_id,
            retry=task.retry_number,
            timeout=self.attempt_timeout,
        )
        return self._interrupted(task, f"timed out after {self.attempt_timeout:g}s")

    async def _safe_execute(self, task: FixTask) -> ExecutionResult:
        try:
            return await self.executor.execute(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Agent executor raised", test_id=task.test_id)
            return ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

    async def _verify(self, failure: FailureReport, cancel_event: asyncio.Event) -> VerificationResult:
        """Re-run the failing check; a hung verifier counts as failed after verify_timeout."""
        verification = asyncio.create_task(self.verifier.verify(failure))
        cancelled = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {verification, cancelled},
                timeout=self.verify_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._stop(verification, cancelled)
            raise

        if verification in done:
            cancelled.cancel()
            try:
                return verification.result()
            except Exception as e:
                logger.exception("Verifier raised", test_id=failure.test_id)
                return VerificationResult(passed=False, output=f"{type(e).__name__}: {e}")

        await self._stop(verification, cancelled)
        if cancel_event.is_set():
            return VerificationResult(passed=False, output=CANCELLED)

        logger.warning("Verification timed out", test_id=failure.test_id, timeout=self.verify_timeout)
        return VerificationResult(passed=False, output=f"verification timed out after {self.verify_timeout:g}s")

    @staticmethod
    async def _stop(*tasks: asyncio.Task) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _interrupted(self, task: FixTask, error: str) -> ExecutionResult:
        # Tokens were spent before the interruption; charge the tier estimate
        return ExecutionResult(
            success=False,
            cost_usd=self.model_selector.estimate_cost(task.tier),
            error=error,
        )

    async def _record(
        self,
        session: FixSession,
        task: FixTask,
        result: ExecutionResult,
        started: float,
    ) -> FixAttempt:
        return await self.retry_manager.record_attempt(
            session,
            AttemptRecord(
                retry_number=task.retry_number,
                model_used=task.tier,
                fix_strategy=task.strategy,
                success=result.success,
                changes_made=result.output,
                error_message=result.error,
                commit_sha=result.commit_sha,
                cost_usd=result.cost_usd,
                tokens_used=result.tokens_used,
                duration_seconds=round(time.monotonic() - started, 3),
            ),
            rca_id=session.rca_id,
        )

    async def _emit_verification(
        self,
        failure: FailureReport,
        attempt: FixAttempt,
        verification: VerificationResult,
    ) -> None:
        if not failure.instance_id or self.event_store is None:
            return

        common = {
            "validation_type": "fix_verification",
            "test_id": failure.test_id,
            "retry_number": attempt.retry_number,
            "model_used": attempt.model_used.value,
            "fix_strategy": attempt.fix_strategy.value,
        }
        if failure.epic_id:
            common["epic_id"] = failure.epic_id

        if verification.passed:
            await self.event_store.emit(
                failure.instance_id,
                EventType.VALIDATION_PASSED,
                {**common, "confidence_score": 1.0, "duration_seconds": attempt.duration_seconds},
            )
        else:
            await self.event_store.emit(
                failure.instance_id,
                EventType.VALIDATION_FAILED,
                {**common, "failed_checks": [failure.test_id], "output": verification.output[-500:]},
            )

    async def _escalate(
        self,
        session: FixSession,
        rca: Optional[RootCauseAnalysis],
        reason: EscalationReason,
        retries_used: int,
    ) -> FixOutcome:
        attempts = await self.retry_manager.get_attempts(session_id=session.id)
        result = self.escalation_handler.escalate(session, rca, attempts, reason)
        await self.retry_manager.update_session(
            session.id,
            FixSessionStatus.ESCALATED,
            rca_id=rca.id if rca else None,
            escalation_reason=reason,
            handoff_path=result.handoff_path,
            handoff_markdown=result.handoff_markdown,
        )
        return FixOutcome(
            test_id=session.test_id,
            session_id=session.id,
            status=FixSessionStatus.ESCALATED,
            retries_used=retries_used,
            total_cost_usd=result.total_cost_usd,
            rca_id=rca.id if rca else None,
            escalation_reason=reason,
            handoff_path=result.handoff_path,
        )

    def build_prompt(
        self,
        failure: FailureReport,
        rca: RootCauseAnalysis,
        strategy: FixStrategy,
        failed: set[FixStrategy],
    ) -> str:
        lines = [
            f"Fix the failing test {failure.test_id}.",
            f"Root cause: {rca.root_cause}",
            f"Strategy: {strategy.value} - {self.strategy_selector.describe(strategy)}",
        ]
        if failure.error_message:
            lines.append(f"Error: {failure.error_message[:1000]}")
        if failed:
            lines.append(f"Already tried without success: {', '.join(sorted(s.value for s in failed))}")
        lines.append("Make the smallest change that makes the test pass, then commit it.")
        return "\n".join(lines)
