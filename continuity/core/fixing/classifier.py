"""
Failure Classifier - Quick heuristics over error text.

Maps a failing check to a (failure_category, complexity) pair with a
confidence score. Pure keyword matching; no I/O.
"""

from dataclasses import dataclass
from typing import Optional

from continuity.core.models import Complexity, FailureCategory


@dataclass
class Classification:
    """Result of failure classification."""
    category: FailureCategory
    complexity: Complexity
    confidence: float  # 0-1
    reasoning: str


class FailureClassifier:
    """
    Keyword classifier for failing tests.

    Category is decided by the first pattern group that matches, in the
    order of CATEGORY_PATTERNS; anything unmatched is a logic failure.
    Complexity looks for human-only signals first, then obvious
    single-file fixes, then spread across many files.
    """

    CATEGORY_PATTERNS: list[tuple[FailureCategory, tuple[str, ...]]] = [
        (FailureCategory.SYNTAX, (
            "syntaxerror",
            "indentationerror",
            "unexpected token",
            "unexpected identifier",
            "unexpected indent",
            "missing semicolon",
            "invalid syntax",
        )),
        (FailureCategory.INTEGRATION, (
            "cannot find module",
            "modulenotfounderror",
            "no module named",
            "importerror",
            "import error",
            "no such file",
            "enoent",
            "404",
            "connection refused",
            "network error",
            "timeout",
            "timed out",
        )),
        (FailureCategory.ENVIRONMENT, (
            "permission denied",
            "eacces",
            "environment variable",
            "config",
            "not defined",
            "undefined is not",
            "cannot read properties of undefined",
            "keyerror: '",
        )),
    ]

    REQUIRES_HUMAN_SIGNALS = (
        "architecture",
        "design decision",
        "business logic",
        "ambiguous",
        "unclear requirement",
        "product decision",
        "credentials",
        "production data",
    )

    SIMPLE_SIGNALS = (
        "typo",
        "missing semicolon",
        "unexpected token",
        "invalid syntax",
        "indentationerror",
        "import",
        "no module named",
    )

    COMPLEX_SIGNALS = (
        "race condition",
        "deadlock",
        "concurrency",
        "memory leak",
        "flaky",
    )

    # More files than this in the trace means the fix is not local
    COMPLEX_FILE_COUNT = 3

    CATEGORY_REASONS = {
        FailureCategory.SYNTAX: "Error message indicates syntax issue",
        FailureCategory.INTEGRATION: "Error suggests missing dependency or API issue",
        FailureCategory.ENVIRONMENT: "Error points to configuration or environment problem",
        FailureCategory.LOGIC: "Error indicates logic or assertion failure",
        FailureCategory.UNKNOWN: "No error text to classify",
    }

    COMPLEXITY_REASONS = {
        Complexity.SIMPLE: "Issue appears straightforward to fix",
        Complexity.MODERATE: "Issue requires moderate analysis and changes",
        Complexity.COMPLEX: "Issue spans multiple files or involves subtle runtime behaviour",
        Complexity.REQUIRES_HUMAN: "Issue requires human judgment or architectural decision",
    }

    def classify(
        self,
        error_message: str,
        stack_trace: Optional[str] = None,
        files_involved: Optional[list[str]] = None,
    ) -> Classification:
        """
        Classify a failure.

        Args:
            error_message: The failing check's error text
            stack_trace: Optional trace
            files_involved: Source files named by the trace

        Returns:
            Classification with category, complexity, confidence, reasoning
        """
        message = (error_message or "").lower()
        files = files_involved or []

        category = self._classify_category(message)
        complexity = self._classify_complexity(message, (stack_trace or "").lower(), files)
        confidence = self._confidence(category, complexity, message)

        reasons = [self.CATEGORY_REASONS[category], self.COMPLEXITY_REASONS[complexity]]
        if files:
            reasons.append(f"{len(files)} file(s) involved")

        return Classification(
            category=category,
            complexity=complexity,
            confidence=confidence,
            reasoning=". ".join(reasons),
        )

    def _classify_category(self, message: str) -> FailureCategory:
        if not message.strip():
            return FailureCategory.UNKNOWN
        for category, patterns in self.CATEGORY_PATTERNS:
            if any(pattern in message for pattern in patterns):
                return category
        return FailureCategory.LOGIC

    def _classify_complexity(self, message: str, trace: str, files: list[str]) -> Complexity:
        if any(signal in message for signal in self.REQUIRES_HUMAN_SIGNALS):
            return Complexity.REQUIRES_HUMAN

        if len(files) <= 1 and any(signal in message for signal in self.SIMPLE_SIGNALS):
            return Complexity.SIMPLE

        if len(set(files)) > self.COMPLEX_FILE_COUNT:
            return Complexity.COMPLEX
        if any(signal in message or signal in trace for signal in self.COMPLEX_SIGNALS):
            return Complexity.COMPLEX

        return Complexity.MODERATE

    def _confidence(self, category: FailureCategory, complexity: Complexity, message: str) -> float:
        confidence = 0.5

        if category == FailureCategory.SYNTAX and "syntaxerror" in message:
            confidence += 0.4
        elif category == FailureCategory.INTEGRATION and (
            "modulenotfounderror" in message or "no module named" in message or "404" in message
        ):
            confidence += 0.3
        elif category == FailureCategory.ENVIRONMENT and "permission denied" in message:
            confidence += 0.3
        elif category == FailureCategory.UNKNOWN:
            confidence = 0.2

        if complexity == Complexity.SIMPLE and len(message) < 100:
            confidence += 0.2

        return round(min(confidence, 1.0), 2)
