"""Agreement metrics."""
from __future__ import annotations

from itertools import combinations
from typing import Callable, Dict, Optional, Sequence

from .label_schema import MULTI_VALUE_TASKS, split_label

AgreementFn = Callable[[str, str], float]


def exact_match(a: str, b: str) -> float:
    """1.0 when two categorical labels are identical, else 0.0."""
    return 1.0 if str(a).strip() == str(b).strip() else 0.0


def set_jaccard(a: str, b: str) -> float:
    """Jaccard overlap of comma separated label sets (entity/span style labels)."""
    left = set(split_label(a, "multilabel"))
    right = set(split_label(b, "multilabel"))
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


DEFAULT_METRICS: Dict[str, AgreementFn] = {"classification": exact_match}
DEFAULT_METRICS.update({task: set_jaccard for task in MULTI_VALUE_TASKS})


def metric_for_task(task_type: str, registry: Optional[Dict[str, AgreementFn]] = None) -> AgreementFn:
    registry = registry if registry is not None else DEFAULT_METRICS
    return registry.get(str(task_type).lower(), exact_match)


def pairwise_agreement(labels: Sequence[str], metric: AgreementFn = exact_match) -> Optional[float]:
    """Mean agreement over every unordered pair of labels.

    Returns ``None`` when fewer than two labels are available.
    """
    pairs = list(combinations(labels, 2))
    if not pairs:
        return None
    return sum(metric(a, b) for a, b in pairs) / len(pairs)


__all__ = [
    "DEFAULT_METRICS",
    "exact_match",
    "metric_for_task",
    "pairwise_agreement",
    "set_jaccard",
]
