"""
Adaptive Fix Loop
=================

Components:
- FailureClassifier / RootCauseAnalyzer: diagnose before fixing
- ModelSelector / FixStrategySelector: capability tier and strategy per retry
- RetryManager: fix sessions, attempts and cost accounting
- FixLearningStore: which strategy fixed which failure pattern
- EscalationHandler: human handoff documents
- AdaptiveFixAgent: the loop itself
"""

from continuity.core.fixing.agent import AdaptiveFixAgent, FixOutcome
from continuity.core.fixing.classifier import FailureClassifier
from continuity.core.fixing.escalation import EscalationHandler
from continuity.core.fixing.learning import FixLearningStore
from continuity.core.fixing.policy import FixStrategySelector, ModelSelector
from continuity.core.fixing.rca import FailureReport, RootCauseAnalyzer
from continuity.core.fixing.retry_manager import RetryManager

__all__ = [
    "AdaptiveFixAgent",
    "EscalationHandler",
    "FailureClassifier",
    "FailureReport",
    "FixLearningStore",
    "FixOutcome",
    "FixStrategySelector",
    "ModelSelector",
    "RetryManager",
    "RootCauseAnalyzer",
]
