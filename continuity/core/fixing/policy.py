"""
Fix Policy - Capability tier and strategy selection.

Both selectors are pure lookups over class-level tables, so the retry
policy can be read (and tested) apart from the loop that applies it.

Tier schedule per complexity:

    simple:    haiku  -> sonnet -> opus
    moderate:  sonnet -> opus   -> opus
    complex:   opus   -> opus   -> opus

A later retry never gets a cheaper tier than an earlier one.
"""

from collections.abc import Collection
from decimal import Decimal
from typing import Optional

from continuity.core.config import settings
from continuity.core.errors import InvalidRetryNumberError, ValidationError
from continuity.core.models import CapabilityTier, Complexity, FailureCategory, FixStrategy


class ModelSelector:
    """Maps (complexity, retry_number) to a capability tier."""

    TIER_SCHEDULE = {
        Complexity.SIMPLE: [CapabilityTier.HAIKU, CapabilityTier.SONNET, CapabilityTier.OPUS],
        Complexity.MODERATE: [CapabilityTier.SONNET, CapabilityTier.OPUS, CapabilityTier.OPUS],
        Complexity.COMPLEX: [CapabilityTier.OPUS, CapabilityTier.OPUS, CapabilityTier.OPUS],
    }

    # USD per million tokens
    COST_PER_MILLION_TOKENS = {
        CapabilityTier.HAIKU: Decimal("1.25"),
        CapabilityTier.SONNET: Decimal("15"),
        CapabilityTier.OPUS: Decimal("75"),
    }

    DEFAULT_TOKEN_ESTIMATE = 5000

    TIER_DESCRIPTIONS = {
        CapabilityTier.HAIKU: "Fast and cheap; simple, well-defined fixes",
        CapabilityTier.SONNET: "Balanced; moderate complexity fixes",
        CapabilityTier.OPUS: "Most capable; complex fixes needing deep reasoning",
    }

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries or settings.FIX_MAX_RETRIES
        if self.max_retries < 1:
            raise ValidationError("max_retries must be >= 1", max_retries=self.max_retries)

    def select(self, complexity: Complexity, retry_number: int) -> CapabilityTier:
        """
        Pick the tier for one retry.

        Args:
            complexity: Diagnosed complexity
            retry_number: 1-based retry within the fix session

        Returns:
            CapabilityTier for this retry

        Raises:
            InvalidRetryNumberError: retry_number outside [1, max_retries]
            ValidationError: complexity is requires_human
        """
        if not 1 <= retry_number <= self.max_retries:
            raise InvalidRetryNumberError(retry_number, self.max_retries)
        return self.schedule(complexity)[retry_number - 1]

    def schedule(self, complexity: Complexity) -> list[CapabilityTier]:
        """Full tier sequence for a session, padded with the top entry."""
        complexity = Complexity(complexity)
        if complexity == Complexity.REQUIRES_HUMAN:
            raise ValidationError(
                "requires_human failures are escalated, never assigned a tier",
                complexity=complexity.value,
            )
        tiers = self.TIER_SCHEDULE[complexity]
        if len(tiers) >= self.max_retries:
            return tiers[:self.max_retries]
        return tiers + [tiers[-1]] * (self.max_retries - len(tiers))

    def estimate_cost(self, tier: CapabilityTier, tokens: Optional[int] = None) -> Decimal:
        if tokens is None:
            tokens = self.DEFAULT_TOKEN_ESTIMATE
        cost = Decimal(tokens) / Decimal(1_000_000) * self.COST_PER_MILLION_TOKENS[tier]
        return cost.quantize(Decimal("0.000001"))

    def describe(self, tier: CapabilityTier) -> str:
        return self.TIER_DESCRIPTIONS[tier]


class FixStrategySelector:
    """
    Picks the next strategy for a failure, never one that already failed.

    Order of preference:
    1. A known fix from the learning store (if it has not failed here)
    2. The root-cause analysis recommendation (same condition)
    3. The category's candidates, the tier's preferred ones first

    None means every candidate has been tried.
    """

    STRATEGIES_BY_CATEGORY = {
        FailureCategory.SYNTAX: [
            FixStrategy.TYPO_CORRECTION,
            FixStrategy.SYNTAX_FIX,
            FixStrategy.FORMATTING,
        ],
        FailureCategory.LOGIC: [
            FixStrategy.REFACTOR,
            FixStrategy.ALGORITHM_FIX,
            FixStrategy.CONDITION_FIX,
        ],
        FailureCategory.INTEGRATION: [
            FixStrategy.IMPORT_FIX,
            FixStrategy.DEPENDENCY_ADD,
            FixStrategy.API_UPDATE,
        ],
        FailureCategory.ENVIRONMENT: [
            FixStrategy.ENV_VAR_ADD,
            FixStrategy.CONFIG_FIX,
            FixStrategy.PERMISSION_FIX,
        ],
        FailureCategory.UNKNOWN: [],
    }

    # Strategies each tier handles best
    TIER_PREFERENCES = {
        CapabilityTier.HAIKU: {
            FixStrategy.TYPO_CORRECTION,
            FixStrategy.IMPORT_FIX,
            FixStrategy.FORMATTING,
        },
        CapabilityTier.SONNET: {
            FixStrategy.SYNTAX_FIX,
            FixStrategy.DEPENDENCY_ADD,
            FixStrategy.ENV_VAR_ADD,
            FixStrategy.CONFIG_FIX,
        },
        CapabilityTier.OPUS: {
            FixStrategy.REFACTOR,
            FixStrategy.ALGORITHM_FIX,
            FixStrategy.CONDITION_FIX,
            FixStrategy.API_UPDATE,
            FixStrategy.PERMISSION_FIX,
        },
    }

    DESCRIPTIONS = {
        FixStrategy.TYPO_CORRECTION: "Correct typos in variable/function names",
        FixStrategy.SYNTAX_FIX: "Fix syntax errors (missing brackets, semicolons)",
        FixStrategy.FORMATTING: "Fix code formatting issues",
        FixStrategy.REFACTOR: "Refactor code structure or logic",
        FixStrategy.ALGORITHM_FIX: "Fix algorithm or data structure issues",
        FixStrategy.CONDITION_FIX: "Fix conditional logic or boolean expressions",
        FixStrategy.IMPORT_FIX: "Fix import statements or module paths",
        FixStrategy.DEPENDENCY_ADD: "Add missing dependencies",
        FixStrategy.API_UPDATE: "Update API calls to match current interface",
        FixStrategy.ENV_VAR_ADD: "Add missing environment variables",
        FixStrategy.CONFIG_FIX: "Fix configuration files",
        FixStrategy.PERMISSION_FIX: "Fix file or resource permissions",
    }

    def select(
        self,
        category: FailureCategory,
        tier: CapabilityTier,
        failed: Collection[FixStrategy] = (),
        recommended: Optional[FixStrategy] = None,
        known_fix: Optional[FixStrategy] = None,
    ) -> Optional[FixStrategy]:
        """
        Choose an untried strategy.

        Args:
            category: Failure category from the analysis
            tier: Tier chosen for this retry
            failed: Strategies already recorded as failed for the test
            recommended: Strategy suggested by root-cause analysis
            known_fix: Strategy that fixed this root cause before

        Returns:
            The strategy to try, or None when all candidates are exhausted
        """
        failed = set(failed)

        if known_fix is not None and known_fix not in failed:
            return known_fix
        if recommended is not None and recommended not in failed:
            return recommended

        available = self.available(category, failed)
        if not available:
            return None

        preferred = self.TIER_PREFERENCES.get(tier, set())
        for strategy in available:
            if strategy in preferred:
                return strategy
        return available[0]

    def available(
        self,
        category: FailureCategory,
        failed: Collection[FixStrategy] = (),
    ) -> list[FixStrategy]:
        return [
            strategy
            for strategy in self.STRATEGIES_BY_CATEGORY[FailureCategory(category)]
            if strategy not in failed
        ]

    def describe(self, strategy: FixStrategy) -> str:
        return self.DESCRIPTIONS[strategy]
