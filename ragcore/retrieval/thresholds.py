from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from ragcore.core.types import QueryType, RetrievedItem

logger = logging.getLogger(__name__)


def _default_by_type() -> Dict[QueryType, float]:
    return {
        QueryType.FACTUAL: 0.75,        # precise matches
        QueryType.CONCEPTUAL: 0.65,
        QueryType.PROCEDURAL: 0.70,
        QueryType.EXPLORATORY: 0.60,    # wider net
    }


@dataclass(frozen=True)
class ThresholdConfig:
    by_type: Dict[QueryType, float] = field(default_factory=_default_by_type)
    min_threshold: float = 0.3
    max_threshold: float = 0.95
    fallback_step: float = 0.1
    min_results: int = 3

    def clamp(self, value: float) -> float:
        return max(self.min_threshold, min(self.max_threshold, value))


def threshold_for(query_type: QueryType, config: ThresholdConfig = ThresholdConfig()) -> float:
    return config.clamp(config.by_type.get(query_type, 0.7))


def apply_threshold(
    items: List[RetrievedItem],
    query_type: QueryType,
    config: ThresholdConfig = ThresholdConfig(),
) -> Tuple[List[RetrievedItem], float]:
    """
    Keep items whose similarity clears the query-type threshold.

    When fewer than ``min_results`` survive, the threshold is lowered once
    by ``fallback_step`` (never below ``min_threshold``) and re-applied.
    Returns the kept items and the threshold actually used.
    """
    threshold = threshold_for(query_type, config)
    kept = [it for it in items if it.raw_score >= threshold]

    if len(kept) < config.min_results and threshold > config.min_threshold:
        lowered = config.clamp(threshold - config.fallback_step)
        logger.debug(
            "only %d items above %.2f for %s query, lowering threshold to %.2f",
            len(kept), threshold, query_type.value, lowered,
        )
        threshold = lowered
        kept = [it for it in items if it.raw_score >= threshold]

    return kept, threshold
