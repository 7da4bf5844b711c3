"""Service-layer components used by the labeling pipeline."""

from .calls import ProviderCaller
from .context import ContextInjector, ContextSnapshot, NoContext
from .executor import LabelModelExecutor, Prediction
from .quality import FLAG_LOW_AGREEMENT, QAResult, QualityAssuranceEngine
from .routing import ACCEPT, REJECT, REVIEW, ConfidenceRouter, RoutingDecision
from .selection import ActiveLearningSelector, NeighborConfidenceUncertainty

__all__ = [
    "ACCEPT",
    "ActiveLearningSelector",
    "ConfidenceRouter",
    "ContextInjector",
    "ContextSnapshot",
    "FLAG_LOW_AGREEMENT",
    "LabelModelExecutor",
    "NeighborConfidenceUncertainty",
    "NoContext",
    "Prediction",
    "ProviderCaller",
    "QAResult",
    "QualityAssuranceEngine",
    "REJECT",
    "REVIEW",
    "RoutingDecision",
]
