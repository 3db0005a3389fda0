"""
Resume Confidence
=================

Scores how far a resumed work state can be trusted, 0-100.

    base (by source) + age adjustment + state checks, clamped to [0, 100]

Sources, best first:
- checkpoint: stored snapshot plus the events after its watermark
- events: full replay without any checkpoint
- basic: the instance has no events, only its registration row
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from continuity.core.clock import ensure_utc
from continuity.core.session.replay import WorkState

AUTO_RESUME_THRESHOLD = 80


class ResumeSource(str, enum.Enum):
    CHECKPOINT = "checkpoint"
    EVENTS = "events"
    BASIC = "basic"


BASE_SCORES = {
    ResumeSource.CHECKPOINT: 100,
    ResumeSource.EVENTS: 85,
    ResumeSource.BASIC: 40,
}


@dataclass
class ConfidenceScore:
    score: int
    reason: str
    warnings: list[str] = field(default_factory=list)

    @property
    def level(self) -> str:
        if self.score >= 90:
            return "high"
        if self.score >= 70:
            return "moderate"
        if self.score >= 50:
            return "low"
        return "very_low"

    @property
    def auto_resume(self) -> bool:
        return self.score >= AUTO_RESUME_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "reason": self.reason,
            "warnings": list(self.warnings),
        }


def age_minutes(since: Optional[datetime], now: datetime) -> int:
    """Whole minutes between two instants, 0 when since is unknown or ahead."""
    if since is None:
        return 0
    seconds = (ensure_utc(now) - ensure_utc(since)).total_seconds()
    return max(0, int(seconds // 60))


def age_adjustment(source: ResumeSource, minutes: int) -> tuple[int, Optional[str]]:
    if source == ResumeSource.CHECKPOINT:
        if minutes <= 5:
            return 0, None
        if minutes <= 30:
            return -10, None
        if minutes <= 60:
            return -20, "Checkpoint is 30-60 minutes old"
        return -30, "Checkpoint is over 1 hour old. Verify state manually."

    if source == ResumeSource.EVENTS:
        # 5 points per full half hour since the last event
        periods = minutes // 30
        if periods > 2:
            return -5 * periods, f"Last event over {minutes} minutes old"
        return -5 * periods, None

    if minutes > 60:
        return -10, "Instance has been idle for over 1 hour"
    return 0, None


def state_adjustment(state: WorkState) -> tuple[int, list[str]]:
    adjustment = 0
    warnings = []
    if state.get("last_event_type") is None:
        adjustment -= 10
        warnings.append("State has no folded events")
    if state.get("context_percent") is None:
        adjustment -= 5
        warnings.append("Context usage was never reported")
    return adjustment, warnings


def score_resume(
    source: ResumeSource,
    state: WorkState,
    since: Optional[datetime],
    now: datetime,
) -> ConfidenceScore:
    """
    Score a resumed state.

    Args:
        source: Where the state came from
        state: The resumed work state
        since: Checkpoint creation time (checkpoint source) or the last
            event's timestamp
        now: Current time from the service clock
    """
    minutes = age_minutes(since, now)
    score = BASE_SCORES[source]

    adjustment, warning = age_adjustment(source, minutes)
    score += adjustment
    warnings = [warning] if warning else []

    adjustment, state_warnings = state_adjustment(state)
    score += adjustment
    warnings.extend(state_warnings)

    score = max(0, min(100, score))
    return ConfidenceScore(score=score, reason=_reason(source, minutes, score, warnings), warnings=warnings)


def _reason(source: ResumeSource, minutes: int, score: int, warnings: list[str]) -> str:
    parts = {
        ResumeSource.CHECKPOINT: [f"Checkpoint loaded (age: {minutes} min)"],
        ResumeSource.EVENTS: [f"Reconstructed from events (age: {minutes} min)"],
        ResumeSource.BASIC: [f"Basic state only (age: {minutes} min, no event history)"],
    }[source]
    parts.append(f"{len(warnings)} validation warnings" if warnings else "all state valid")

    if score >= 90:
        parts.append("HIGH confidence")
    elif score >= 70:
        parts.append("MODERATE confidence")
    elif score >= 50:
        parts.append("LOW confidence - verify manually")
    else:
        parts.append("VERY LOW confidence - manual verification required")
    return ", ".join(parts)
