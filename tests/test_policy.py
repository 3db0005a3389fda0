"""
Supervisor Continuity - Fix Policy Tests
========================================

Tier schedule, strategy selection and cost estimates.
"""

from decimal import Decimal

import pytest

from continuity.core.errors import InvalidRetryNumberError, ValidationError
from continuity.core.fixing.policy import FixStrategySelector, ModelSelector
from continuity.core.models import CapabilityTier, Complexity, FailureCategory, FixStrategy

HAIKU, SONNET, OPUS = CapabilityTier.HAIKU, CapabilityTier.SONNET, CapabilityTier.OPUS


# ==========================================================================
# Model Selector
# ==========================================================================

class TestModelSelector:
    """Tests for capability tier selection."""

    @pytest.mark.parametrize("complexity,expected", [
        (Complexity.SIMPLE, [HAIKU, SONNET, OPUS]),
        (Complexity.MODERATE, [SONNET, OPUS, OPUS]),
        (Complexity.COMPLEX, [OPUS, OPUS, OPUS]),
    ])
    def test_schedule(self, complexity, expected):
        selector = ModelSelector(3)
        assert [selector.select(complexity, retry) for retry in (1, 2, 3)] == expected

    @pytest.mark.parametrize("max_retries", [1, 2, 3, 5, 8])
    @pytest.mark.parametrize("complexity", [Complexity.SIMPLE, Complexity.MODERATE, Complexity.COMPLEX])
    def test_tiers_never_get_cheaper(self, complexity, max_retries):
        schedule = ModelSelector(max_retries).schedule(complexity)

        assert len(schedule) == max_retries
        ranks = [tier.rank for tier in schedule]
        assert ranks == sorted(ranks)

    def test_schedule_padded_with_top_tier(self):
        assert ModelSelector(5).schedule(Complexity.SIMPLE) == [HAIKU, SONNET, OPUS, OPUS, OPUS]

    def test_schedule_truncated(self):
        assert ModelSelector(2).schedule(Complexity.SIMPLE) == [HAIKU, SONNET]

    @pytest.mark.parametrize("retry", [0, 4, -1])
    def test_retry_out_of_range(self, retry):
        with pytest.raises(InvalidRetryNumberError):
            ModelSelector(3).select(Complexity.SIMPLE, retry)

    def test_requires_human_has_no_tier(self):
        with pytest.raises(ValidationError):
            ModelSelector(3).select(Complexity.REQUIRES_HUMAN, 1)

    def test_estimate_cost(self):
        selector = ModelSelector(3)

        assert selector.estimate_cost(HAIKU) == Decimal("0.006250")
        assert selector.estimate_cost(SONNET) == Decimal("0.075000")
        assert selector.estimate_cost(OPUS, tokens=2000) == Decimal("0.150000")


# ==========================================================================
# Strategy Selector
# ==========================================================================

class TestFixStrategySelector:
    """Tests for strategy selection and exhaustion."""

    def test_recommended_first(self):
        selector = FixStrategySelector()
        strategy = selector.select(
            FailureCategory.SYNTAX, HAIKU, recommended=FixStrategy.SYNTAX_FIX,
        )
        assert strategy == FixStrategy.SYNTAX_FIX

    def test_known_fix_beats_recommendation(self):
        selector = FixStrategySelector()
        strategy = selector.select(
            FailureCategory.SYNTAX,
            HAIKU,
            recommended=FixStrategy.SYNTAX_FIX,
            known_fix=FixStrategy.FORMATTING,
        )
        assert strategy == FixStrategy.FORMATTING

    def test_failed_strategies_are_skipped(self):
        """Neither a failed known fix nor a failed recommendation is retried."""
        selector = FixStrategySelector()
        strategy = selector.select(
            FailureCategory.SYNTAX,
            SONNET,
            failed={FixStrategy.SYNTAX_FIX, FixStrategy.FORMATTING},
            recommended=FixStrategy.SYNTAX_FIX,
            known_fix=FixStrategy.FORMATTING,
        )
        assert strategy == FixStrategy.TYPO_CORRECTION

    def test_tier_preference(self):
        selector = FixStrategySelector()

        assert selector.select(FailureCategory.INTEGRATION, OPUS) == FixStrategy.API_UPDATE
        assert selector.select(FailureCategory.INTEGRATION, SONNET) == FixStrategy.DEPENDENCY_ADD
        assert selector.select(FailureCategory.INTEGRATION, HAIKU) == FixStrategy.IMPORT_FIX

    def test_falls_back_to_category_order(self):
        selector = FixStrategySelector()
        strategy = selector.select(
            FailureCategory.ENVIRONMENT,
            HAIKU,
            failed={FixStrategy.ENV_VAR_ADD},
        )
        assert strategy == FixStrategy.CONFIG_FIX

    def test_exhaustion(self):
        selector = FixStrategySelector()
        failed = set(selector.STRATEGIES_BY_CATEGORY[FailureCategory.LOGIC])

        assert selector.select(FailureCategory.LOGIC, OPUS, failed=failed) is None

    def test_unknown_category_has_no_strategy(self):
        assert FixStrategySelector().select(FailureCategory.UNKNOWN, SONNET) is None

    def test_every_strategy_is_described(self):
        selector = FixStrategySelector()
        for strategy in FixStrategy:
            assert selector.describe(strategy)
