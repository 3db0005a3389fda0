"""
Escalation Handler - Hand a failing test over to a human.

Escalation is the loop's terminal state when automation cannot (or must
not) fix a test. It always renders a markdown handoff and writes it to
HANDOFF_DIR:

    {HANDOFF_DIR}/{timestamp}-escalation-{test_id}.md

with the analysis, every attempt, the total cost, why the loop stopped
and what to do next. When the file cannot be written the markdown is
still returned, and the session keeps it in the database instead.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

import structlog

from continuity.core.clock import Clock, utcnow
from continuity.core.config import settings
from continuity.core.models import (
    Complexity,
    EscalationReason,
    FixAttempt,
    FixSession,
    RootCauseAnalysis,
)

logger = structlog.get_logger()


@dataclass
class EscalationResult:
    reason: EscalationReason
    handoff_path: Optional[str]
    rca_summary: str
    handoff_markdown: str = ""
    attempted_fixes: list[str] = field(default_factory=list)
    total_cost_usd: Decimal = Decimal("0")


class EscalationHandler:
    """Writes handoff documents for escalated fix sessions."""

    REASON_LABELS = {
        EscalationReason.REQUIRES_HUMAN: "Root cause requires human decision",
        EscalationReason.ARCHITECTURAL_CHANGE: "Architectural change needed",
        EscalationReason.BUSINESS_LOGIC_AMBIGUITY: "Business logic ambiguity",
        EscalationReason.MAX_RETRIES_EXHAUSTED: "Max retries exhausted",
        EscalationReason.UNKNOWN_FAILURE_PATTERN: "Unknown failure pattern",
        EscalationReason.CANCELLED: "Cancelled by operator",
    }

    EXPLANATIONS = {
        EscalationReason.REQUIRES_HUMAN: (
            "The root cause involves architectural or design decisions that require human "
            "judgment. Automated fixes could introduce technical debt or violate system constraints."
        ),
        EscalationReason.ARCHITECTURAL_CHANGE: (
            "The issue requires changes to system architecture that are beyond the scope of "
            "automated fixes. This may involve refactoring, new patterns, or design changes."
        ),
        EscalationReason.BUSINESS_LOGIC_AMBIGUITY: (
            "The correct fix depends on business requirements or domain knowledge that is not "
            "encoded in the codebase. Human clarification is needed."
        ),
        EscalationReason.MAX_RETRIES_EXHAUSTED: (
            "All {attempts} automated fix attempts have been exhausted without resolving the "
            "issue. Further attempts are unlikely to succeed without human analysis."
        ),
        EscalationReason.UNKNOWN_FAILURE_PATTERN: (
            "The failure pattern is not recognized and does not match any known fix strategies. "
            "Manual investigation is required."
        ),
        EscalationReason.CANCELLED: (
            "An operator cancelled the fix loop while an attempt was in flight. The interrupted "
            "attempt is recorded as failed; no further automated attempts will be made."
        ),
    }

    NEXT_STEPS = {
        EscalationReason.REQUIRES_HUMAN: [
            "Review root cause analysis above",
            "Assess architectural impact",
            "Create ADR if needed",
            "Design appropriate solution",
            "Implement fix with proper testing",
        ],
        EscalationReason.BUSINESS_LOGIC_AMBIGUITY: [
            "Clarify business requirements",
            "Document expected behavior",
            "Update test expectations if needed",
            "Implement fix based on clarified requirements",
        ],
        EscalationReason.MAX_RETRIES_EXHAUSTED: [
            "Review all attempted fixes above",
            "Analyze why each fix failed",
            "Consider alternative approaches",
            "May need to update RCA with new insights",
            "Implement fix manually",
        ],
        EscalationReason.CANCELLED: [
            "Check the working tree for partial changes from the interrupted attempt",
            "Decide whether to fix manually",
            "Review root cause analysis above",
        ],
    }
    NEXT_STEPS[EscalationReason.ARCHITECTURAL_CHANGE] = NEXT_STEPS[EscalationReason.REQUIRES_HUMAN]

    DEFAULT_NEXT_STEPS = [
        "Review root cause analysis",
        "Investigate failure pattern",
        "Design appropriate fix",
        "Implement and test",
    ]

    # Signals that refine a requires_human diagnosis
    REASON_SIGNALS = [
        (("architecture", "architectural"), EscalationReason.ARCHITECTURAL_CHANGE),
        (("business logic", "ambiguous", "unclear requirement"), EscalationReason.BUSINESS_LOGIC_AMBIGUITY),
    ]

    def __init__(
        self,
        handoff_dir: Optional[Union[str, Path]] = None,
        clock: Clock = utcnow,
    ):
        self.handoff_dir = Path(handoff_dir or settings.HANDOFF_DIR)
        self.clock = clock

    def should_escalate_immediately(self, rca: RootCauseAnalysis) -> bool:
        return rca.complexity == Complexity.REQUIRES_HUMAN

    def immediate_reason(self, rca: RootCauseAnalysis) -> EscalationReason:
        text = " ".join([rca.root_cause, *rca.symptoms]).lower()
        for signals, reason in self.REASON_SIGNALS:
            if any(signal in text for signal in signals):
                return reason
        return EscalationReason.REQUIRES_HUMAN

    def escalate(
        self,
        session: FixSession,
        rca: Optional[RootCauseAnalysis],
        attempts: Sequence[FixAttempt],
        reason: EscalationReason,
    ) -> EscalationResult:
        """
        Write the handoff for a session.

        Args:
            session: The fix session being escalated
            rca: Its root-cause analysis, if one was made
            attempts: Every recorded attempt, in retry order
            reason: Why the loop stopped

        Returns:
            EscalationResult with the handoff text, and its path when the
            file was written
        """
        now = self.clock()
        total_cost = sum((Decimal(attempt.cost_usd) for attempt in attempts), Decimal("0"))
        markdown = self.render(session, rca, attempts, reason, total_cost)

        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path: Optional[Path] = self.handoff_dir / f"{timestamp}-escalation-{self._slug(session.test_id)}.md"
        try:
            self.handoff_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(markdown, encoding="utf-8")
        except OSError as e:
            logger.error(
                "Handoff file not written",
                test_id=session.test_id,
                handoff_dir=str(self.handoff_dir),
                error=str(e),
            )
            path = None

        logger.warning(
            "Fix escalated to human",
            test_id=session.test_id,
            reason=reason.value,
            attempts=len(attempts),
            total_cost_usd=str(total_cost),
            handoff_path=str(path) if path else None,
        )

        return EscalationResult(
            reason=reason,
            handoff_path=str(path) if path else None,
            handoff_markdown=markdown,
            rca_summary=self.rca_summary(rca),
            attempted_fixes=[
                f"{attempt.fix_strategy.value} ({attempt.model_used.value})" for attempt in attempts
            ],
            total_cost_usd=total_cost,
        )

    def render(
        self,
        session: FixSession,
        rca: Optional[RootCauseAnalysis],
        attempts: Sequence[FixAttempt],
        reason: EscalationReason,
        total_cost: Decimal,
    ) -> str:
        lines = [
            "# Fix Escalation Handoff",
            "",
            f"**Test ID:** {session.test_id}",
            f"**Instance ID:** {session.instance_id or 'N/A'}",
            f"**Epic ID:** {(rca.epic_id if rca else None) or 'N/A'}",
            f"**Escalation Reason:** {self.REASON_LABELS[reason]}",
            f"**Date:** {self.clock().isoformat()}",
            "",
            "## Status",
            "",
            "**ESCALATED** - Human intervention required",
            "",
            "## Root Cause Analysis",
            "",
        ]

        if rca is not None:
            lines += [
                f"**Category:** {rca.failure_category.value}",
                f"**Complexity:** {rca.complexity.value}",
                f"**Confidence:** {rca.confidence:.0%}",
                "",
                "**Root Cause:**",
                rca.root_cause,
                "",
                "**Diagnosis Reasoning:**",
                rca.diagnosis_reasoning,
                "",
            ]
        else:
            lines += ["No analysis was recorded.", ""]

        lines += ["## Attempted Fixes", "", f"**Total Attempts:** {len(attempts)}", ""]
        for attempt in attempts:
            result = "Success" if attempt.fixed else "Failed"
            lines += [
                f"### Retry {attempt.retry_number} - {attempt.model_used.value}",
                "",
                f"**Strategy:** {attempt.fix_strategy.value}",
                f"**Result:** {result}",
                f"**Cost:** ${Decimal(attempt.cost_usd):.4f} ({attempt.tokens_used} tokens)",
            ]
            if attempt.error_message:
                lines.append(f"**Error:** {attempt.error_message}")
            if attempt.changes_made:
                lines += ["", "**Changes:**", "```", attempt.changes_made, "```"]
            lines.append("")

        lines += [
            f"**Total Cost:** ${total_cost:.4f}",
            "",
            "## Why Escalated",
            "",
            self.EXPLANATIONS[reason].format(attempts=len(attempts)),
            "",
            "## Next Steps",
            "",
        ]
        steps = self.NEXT_STEPS.get(reason, self.DEFAULT_NEXT_STEPS)
        lines += [f"{number}. {step}" for number, step in enumerate(steps, start=1)]
        lines.append("")
        return "\n".join(lines)

    @staticmethod
    def rca_summary(rca: Optional[RootCauseAnalysis]) -> str:
        if rca is None:
            return "No analysis"
        return f"[{rca.complexity.value}] {rca.failure_category.value}: {rca.root_cause}"

    @staticmethod
    def _slug(test_id: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]+", "_", test_id).strip("_")[:100] or "test"
