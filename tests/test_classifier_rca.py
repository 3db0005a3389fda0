"""
Supervisor Continuity - Classifier and Root-Cause Analysis Tests
================================================================
"""

from datetime import datetime, timezone

import pytest

from continuity.core.errors import InvalidEventError, ValidationError
from continuity.core.fixing.classifier import FailureClassifier
from continuity.core.fixing.rca import (
    EvidenceArtifact,
    FailureReport,
    RootCauseAnalyzer,
    build_rca_report,
)
from continuity.core.models import Complexity, EventType, FailureCategory, FixStrategy
from continuity.core.session.event_store import EventRecord

PYTHON_TRACE = """Traceback (most recent call last):
  File "/app/tests/test_pricing.py", line 18, in test_total
    assert total(cart) == 42
  File "/app/src/pricing.py", line 7, in total
    return sum(items)
"""

NODE_TRACE = """TypeError: Cannot read properties of undefined (reading 'id')
    at renderCart (/app/src/cart.js:12:5)
    at main (/app/src/index.js:3:1)
"""


# ==========================================================================
# Classifier
# ==========================================================================

class TestFailureClassifier:
    """Tests for keyword classification."""

    @pytest.mark.parametrize("message,category,complexity", [
        ("SyntaxError: invalid syntax", FailureCategory.SYNTAX, Complexity.SIMPLE),
        ("ModuleNotFoundError: No module named 'boto3'", FailureCategory.INTEGRATION, Complexity.SIMPLE),
        ("ConnectionError: connection refused by localhost:5432", FailureCategory.INTEGRATION, Complexity.MODERATE),
        ("PermissionError: [Errno 13] Permission denied: '/var/log/app.log'", FailureCategory.ENVIRONMENT, Complexity.MODERATE),
        ("AssertionError: assert 3 == 7", FailureCategory.LOGIC, Complexity.MODERATE),
        ("AssertionError: race condition between workers", FailureCategory.LOGIC, Complexity.COMPLEX),
        ("", FailureCategory.UNKNOWN, Complexity.MODERATE),
    ])
    def test_classify(self, message, category, complexity):
        result = FailureClassifier().classify(message)

        assert result.category == category
        assert result.complexity == complexity

    def test_requires_human_checked_before_simple(self):
        """A human-only signal wins even when the fix looks trivial."""
        result = FailureClassifier().classify("Typo or design decision? Expected 'net' vs 'gross'")
        assert result.complexity == Complexity.REQUIRES_HUMAN

    def test_many_files_is_complex(self):
        files = [f"src/module_{i}.py" for i in range(4)]
        result = FailureClassifier().classify("AssertionError: totals differ", files_involved=files)

        assert result.complexity == Complexity.COMPLEX
        assert "4 file(s) involved" in result.reasoning

    def test_complex_signal_in_trace(self):
        result = FailureClassifier().classify("AssertionError", stack_trace="possible deadlock in pool")
        assert result.complexity == Complexity.COMPLEX

    def test_confidence(self):
        classifier = FailureClassifier()

        assert classifier.classify("SyntaxError: invalid syntax").confidence == 1.0
        assert classifier.classify("").confidence == 0.2
        assert classifier.classify("AssertionError: assert 3 == 7").confidence == 0.5


# ==========================================================================
# Failure Reports
# ==========================================================================

def failed_record(event_data: dict, event_type: EventType = EventType.TEST_FAILED) -> EventRecord:
    return EventRecord(
        event_id="6f1c2a4e-0000-4000-8000-000000000001",
        instance_id="odin-PS-ab12cd",
        event_type=event_type,
        sequence_num=4,
        timestamp=datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc),
        event_data=event_data,
    )


class TestFailureReport:
    """Tests for FailureReport.from_event."""

    def test_from_failed_tests_list(self):
        report = FailureReport.from_event(failed_record({
            "test_type": "unit",
            "failed_count": 1,
            "duration_seconds": 3.2,
            "epic_id": "EPIC-4",
            "failed_tests": [{"name": "tests/test_cart.py::test_total", "error": "AssertionError: 3 != 4"}],
        }))

        assert report.test_id == "tests/test_cart.py::test_total"
        assert report.error_message == "AssertionError: 3 != 4"
        assert report.instance_id == "odin-PS-ab12cd"
        assert report.epic_id == "EPIC-4"

    def test_explicit_test_id_wins(self):
        report = FailureReport.from_event(failed_record({
            "test_id": "e2e/checkout.spec.ts",
            "error_message": "Timeout 30000ms exceeded",
            "failed_tests": ["other"],
        }))

        assert report.test_id == "e2e/checkout.spec.ts"
        assert report.error_message == "Timeout 30000ms exceeded"

    def test_fallback_test_id(self):
        report = FailureReport.from_event(failed_record({"test_type": "unit"}))
        assert report.test_id == "odin-PS-ab12cd#4"

    def test_only_test_failed_events(self):
        with pytest.raises(InvalidEventError):
            FailureReport.from_event(failed_record({}, event_type=EventType.TEST_PASSED))


# ==========================================================================
# Root-Cause Analyzer
# ==========================================================================

class TestRootCauseAnalyzer:
    """Tests for evidence gathering and diagnosis."""

    @pytest.fixture
    def analyzer(self, session_factory, clock) -> RootCauseAnalyzer:
        return RootCauseAnalyzer(session_factory, clock=clock)

    def test_extract_files(self, analyzer):
        assert analyzer.extract_files(PYTHON_TRACE) == [
            "/app/tests/test_pricing.py",
            "/app/src/pricing.py",
        ]
        assert analyzer.extract_files(NODE_TRACE) == ["/app/src/cart.js", "/app/src/index.js"]

    def test_gather_evidence_merges_artifacts(self, analyzer):
        failure = FailureReport(
            test_id="tests/test_pricing.py::test_total",
            error_message="",
            files_involved=["/app/src/pricing.py"],
            artifacts=[
                EvidenceArtifact("error_log", "AssertionError: assert 41 == 42"),
                EvidenceArtifact("stack_trace", PYTHON_TRACE),
                EvidenceArtifact("screenshot", "", source="shots/total.png"),
            ],
        )

        evidence = analyzer.gather_evidence(failure)

        assert evidence.error_message == "AssertionError: assert 41 == 42"
        assert evidence.files_involved == ["/app/src/pricing.py", "/app/tests/test_pricing.py"]
        assert "Visual failure captured in screenshot" in evidence.symptoms
        assert len(evidence.artifacts) == 3

    @pytest.mark.parametrize("message,root_cause,strategy", [
        ("SyntaxError: invalid syntax", "Syntax error in code", FixStrategy.SYNTAX_FIX),
        ("SyntaxError: Unexpected token '}'", "Syntax error: Unexpected token in code", FixStrategy.SYNTAX_FIX),
        ("ModuleNotFoundError: No module named 'boto3'", "Missing module dependency: boto3", FixStrategy.DEPENDENCY_ADD),
        ("GET /api/v2/cart returned 404", "API endpoint not found (404)", FixStrategy.API_UPDATE),
        ("PermissionError: Permission denied: 'out.log'",
         "Permission denied: Insufficient file or resource permissions", FixStrategy.PERMISSION_FIX),
        ("AssertionError: assert 3 == 7",
         "Logic error: Test assertion failed due to incorrect behavior", FixStrategy.REFACTOR),
        ("", "Unknown failure: no error output captured", None),
    ])
    async def test_analyze(self, analyzer, message, root_cause, strategy):
        rca = await analyzer.analyze(FailureReport(test_id="tests/test_x.py::test_y", error_message=message))

        assert rca.root_cause == root_cause
        assert rca.recommended_strategy == strategy
        assert rca.id is not None

    async def test_previous_attempts_in_logic_root_cause(self, analyzer):
        rca = await analyzer.analyze(
            FailureReport(test_id="t", error_message="AssertionError: assert 3 == 7"),
            previous_attempts=2,
        )
        assert rca.root_cause.startswith("Logic error: Previous 2 fix(es)")

    async def test_difficulty_follows_complexity(self, analyzer):
        simple = await analyzer.analyze(FailureReport(test_id="a", error_message="SyntaxError: invalid syntax"))
        human = await analyzer.analyze(
            FailureReport(test_id="b", error_message="Unclear requirement: business logic for refunds"),
        )

        assert simple.estimated_difficulty == 1
        assert human.complexity == Complexity.REQUIRES_HUMAN
        assert human.estimated_difficulty == 0

    async def test_test_id_required(self, analyzer):
        with pytest.raises(ValidationError):
            await analyzer.analyze(FailureReport(test_id="", error_message="boom"))

    async def test_report(self, analyzer):
        rca = await analyzer.analyze(FailureReport(test_id="t", error_message="SyntaxError: invalid syntax"))
        report = build_rca_report(rca)

        assert "## Root Cause Analysis" in report
        assert "**Recommended strategy:** syntax_fix" in report
        assert "1 retry" in report
