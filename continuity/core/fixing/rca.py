"""
Root-Cause Analyzer - Diagnose failing tests before fixing them.

Collects evidence from the failure report, classifies it, names a root
cause and recommends a first strategy. Every analysis is persisted so the
fix loop, the escalation handoff and later reporting share one diagnosis.
"""

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from continuity.core.clock import Clock, utcnow
from continuity.core.database import AsyncSessionLocal, get_db_session
from continuity.core.errors import InvalidEventError, ValidationError
from continuity.core.fixing.classifier import FailureClassifier
from continuity.core.models import (
    Complexity,
    EventType,
    FailureCategory,
    FixStrategy,
    RootCauseAnalysis,
)

if TYPE_CHECKING:
    from continuity.core.session.event_store import EventRecord

logger = structlog.get_logger()


# ==========================================================================
# Failure Input
# ==========================================================================

@dataclass
class EvidenceArtifact:
    """One piece of captured evidence."""
    artifact_type: str  # error_log, stack_trace, screenshot, network_log
    content: str = ""
    source: Optional[str] = None


@dataclass
class FailureReport:
    """A failing test as handed to the fix loop."""
    test_id: str
    error_message: str
    stack_trace: Optional[str] = None
    instance_id: Optional[str] = None
    epic_id: Optional[str] = None
    files_involved: list[str] = field(default_factory=list)
    artifacts: list[EvidenceArtifact] = field(default_factory=list)

    @classmethod
    def from_event(cls, record: "EventRecord") -> "FailureReport":
        """
        Build a report from a stored test_failed event.

        The payload's test_id wins; otherwise the first entry of
        failed_tests, otherwise "{instance}#{sequence}".
        """
        if record.event_type != EventType.TEST_FAILED:
            raise InvalidEventError(
                f"Expected a test_failed event, got {record.event_type.value}",
                event_id=record.event_id,
            )
        data = record.event_data
        failed_tests = data.get("failed_tests") or []

        test_id = data.get("test_id")
        if not test_id and failed_tests:
            first = failed_tests[0]
            test_id = first.get("name") if isinstance(first, dict) else str(first)
        if not test_id:
            test_id = f"{record.instance_id}#{record.sequence_num}"

        error_message = data.get("error_message") or data.get("error_summary") or ""
        if not error_message and failed_tests and isinstance(failed_tests[0], dict):
            error_message = failed_tests[0].get("error", "")

        return cls(
            test_id=test_id,
            error_message=error_message,
            stack_trace=data.get("stack_trace"),
            instance_id=record.instance_id,
            epic_id=data.get("epic_id"),
            files_involved=list(data.get("files_involved") or []),
        )


@dataclass
class Evidence:
    error_message: str
    stack_trace: Optional[str]
    files_involved: list[str]
    symptoms: list[str]
    artifacts: list[dict[str, Any]]


# ==========================================================================
# Analyzer
# ==========================================================================

class RootCauseAnalyzer:
    """
    Rule-based root-cause analysis.

    Flow:
        evidence -> classification -> root cause -> recommended strategy
    """

    # Node "at fn (file:line:col)" and Python 'File "x", line N' frames
    STACK_FRAME_PATTERNS = [
        re.compile(r"at .+ \((.+):\d+:\d+\)"),
        re.compile(r'File "(.+?)", line \d+'),
    ]

    MISSING_MODULE_PATTERN = re.compile(
        r"(?:cannot find module|no module named) ['\"]?([\w./@-]+)",
        re.IGNORECASE,
    )

    # Root-cause keyword -> strategy, checked before the category default
    ROOT_CAUSE_STRATEGIES = [
        ("missing module", FixStrategy.DEPENDENCY_ADD),
        ("permission denied", FixStrategy.PERMISSION_FIX),
        ("environment variable", FixStrategy.ENV_VAR_ADD),
        ("unexpected token", FixStrategy.SYNTAX_FIX),
        ("missing semicolon", FixStrategy.TYPO_CORRECTION),
        ("404", FixStrategy.API_UPDATE),
    ]

    CATEGORY_STRATEGIES = {
        FailureCategory.SYNTAX: FixStrategy.SYNTAX_FIX,
        FailureCategory.INTEGRATION: FixStrategy.IMPORT_FIX,
        FailureCategory.ENVIRONMENT: FixStrategy.CONFIG_FIX,
        FailureCategory.LOGIC: FixStrategy.REFACTOR,
    }

    # Expected number of retries; 0 means no automated attempt
    DIFFICULTY = {
        Complexity.SIMPLE: 1,
        Complexity.MODERATE: 2,
        Complexity.COMPLEX: 3,
        Complexity.REQUIRES_HUMAN: 0,
    }

    SYMPTOM_LENGTH = 100

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        classifier: Optional[FailureClassifier] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.classifier = classifier or FailureClassifier()
        self.clock = clock

    async def analyze(
        self,
        failure: FailureReport,
        previous_attempts: int = 0,
    ) -> RootCauseAnalysis:
        """
        Diagnose a failure and persist the analysis.

        Args:
            failure: The failing test
            previous_attempts: Fix attempts already made for this test

        Returns:
            The stored RootCauseAnalysis row
        """
        if not failure.test_id:
            raise ValidationError("test_id is required")

        evidence = self.gather_evidence(failure)
        classification = self.classifier.classify(
            evidence.error_message,
            evidence.stack_trace,
            evidence.files_involved,
        )
        root_cause = self.determine_root_cause(
            classification.category,
            evidence,
            previous_attempts,
        )

        rca = RootCauseAnalysis(
            id=uuid4(),
            test_id=failure.test_id,
            instance_id=failure.instance_id,
            epic_id=failure.epic_id,
            failure_category=classification.category,
            complexity=classification.complexity,
            root_cause=root_cause,
            symptoms=evidence.symptoms,
            evidence=evidence.artifacts,
            diagnosis_reasoning=classification.reasoning,
            confidence=classification.confidence,
            recommended_strategy=self.recommend_strategy(root_cause, classification.category),
            estimated_difficulty=self.DIFFICULTY[classification.complexity],
            analyzed_at=self.clock(),
        )

        async with get_db_session(self.session_factory) as db:
            db.add(rca)

        logger.info(
            "Root cause analyzed",
            test_id=failure.test_id,
            category=rca.failure_category.value,
            complexity=rca.complexity.value,
            confidence=rca.confidence,
        )
        return rca

    # ==========================================================================
    # Evidence
    # ==========================================================================

    def gather_evidence(self, failure: FailureReport) -> Evidence:
        error_message = failure.error_message or ""
        stack_trace = failure.stack_trace
        files = list(failure.files_involved)
        symptoms: list[str] = []
        artifacts: list[dict[str, Any]] = []

        if error_message:
            symptoms.append(f"Error: {error_message[:self.SYMPTOM_LENGTH]}")
            artifacts.append({"type": "error_log", "content": error_message})
        if stack_trace:
            files.extend(self.extract_files(stack_trace))
            artifacts.append({"type": "stack_trace", "content": stack_trace})

        for artifact in failure.artifacts:
            artifacts.append({
                "type": artifact.artifact_type,
                "content": artifact.content,
                "source": artifact.source,
            })
            if artifact.artifact_type == "error_log" and artifact.content:
                if not error_message:
                    error_message = artifact.content
                symptoms.append(f"Error: {artifact.content[:self.SYMPTOM_LENGTH]}")
            elif artifact.artifact_type == "stack_trace" and artifact.content:
                stack_trace = stack_trace or artifact.content
                files.extend(self.extract_files(artifact.content))
            elif artifact.artifact_type == "screenshot":
                symptoms.append("Visual failure captured in screenshot")
            elif artifact.artifact_type == "network_log":
                symptoms.append("Network request failed or returned unexpected response")

        return Evidence(
            error_message=error_message,
            stack_trace=stack_trace,
            files_involved=list(dict.fromkeys(f for f in files if f)),
            symptoms=symptoms,
            artifacts=artifacts,
        )

    def extract_files(self, stack_trace: str) -> list[str]:
        files = []
        for pattern in self.STACK_FRAME_PATTERNS:
            files.extend(pattern.findall(stack_trace))
        return files

    # ==========================================================================
    # Diagnosis
    # ==========================================================================

    def determine_root_cause(
        self,
        category: FailureCategory,
        evidence: Evidence,
        previous_attempts: int = 0,
    ) -> str:
        message = evidence.error_message.lower()

        if category == FailureCategory.SYNTAX:
            if "unexpected token" in message:
                return "Syntax error: Unexpected token in code"
            if "missing semicolon" in message:
                return "Syntax error: Missing semicolon"
            return "Syntax error in code"

        if category == FailureCategory.INTEGRATION:
            match = self.MISSING_MODULE_PATTERN.search(evidence.error_message)
            if match:
                return f"Missing module dependency: {match.group(1)}"
            if "404" in message:
                return "API endpoint not found (404)"
            if "connection refused" in message:
                return "Service not running or connection refused"
            return "Integration failure with external dependency"

        if category == FailureCategory.ENVIRONMENT:
            if "permission denied" in message or "eacces" in message:
                return "Permission denied: Insufficient file or resource permissions"
            if "environment variable" in message:
                return "Missing or invalid environment variable"
            if "not defined" in message or "undefined" in message:
                return "Variable or property accessed before initialization"
            return "Environment configuration issue"

        if category == FailureCategory.UNKNOWN:
            return "Unknown failure: no error output captured"

        if previous_attempts > 0:
            return f"Logic error: Previous {previous_attempts} fix(es) did not address underlying issue"
        return "Logic error: Test assertion failed due to incorrect behavior"

    def recommend_strategy(
        self,
        root_cause: str,
        category: FailureCategory,
    ) -> Optional[FixStrategy]:
        cause = root_cause.lower()
        for keyword, strategy in self.ROOT_CAUSE_STRATEGIES:
            if keyword in cause:
                return strategy
        return self.CATEGORY_STRATEGIES.get(category)


# ==========================================================================
# Reporting
# ==========================================================================

def build_rca_report(rca: RootCauseAnalysis) -> str:
    """Markdown section describing an analysis."""
    lines = [
        "## Root Cause Analysis",
        "",
        f"**Test:** `{rca.test_id}`",
        f"**Category:** {rca.failure_category.value}",
        f"**Complexity:** {rca.complexity.value}",
        f"**Confidence:** {rca.confidence:.0%}",
        "",
        "### Root Cause",
        "",
        rca.root_cause,
        "",
        "### Diagnosis",
        "",
        rca.diagnosis_reasoning,
    ]

    if rca.symptoms:
        lines += ["", "### Symptoms", ""]
        lines += [f"- {symptom}" for symptom in rca.symptoms]

    strategy = rca.recommended_strategy.value if rca.recommended_strategy else "none"
    lines += [
        "",
        f"**Recommended strategy:** {strategy}",
        f"**Estimated difficulty:** {rca.estimated_difficulty} retr{'y' if rca.estimated_difficulty == 1 else 'ies'}",
    ]
    return "\n".join(lines)
