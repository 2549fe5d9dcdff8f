from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled, RAGError
from ragcore.core.resilience import NO_RETRY, ExternalCall
from ragcore.core.types import RankedItem
from ragcore.providers.protocols import PairwiseScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RerankOutcome:
    items: List[RankedItem]
    applied: bool
    error: Optional[str] = None


class RerankStage:
    """
    Optional second pass: a pairwise scorer rescores the top-K fused items
    and keeps the best M. Any failure or timeout returns the input unchanged.
    """

    def __init__(
        self,
        scorer: PairwiseScorer,
        top_k: int = 20,
        top_m: int = 5,
        call: Optional[ExternalCall] = None,
        timeout: float = 1.0,
    ):
        self.scorer = scorer
        self.top_k = top_k
        self.top_m = top_m
        self.call = call or ExternalCall("rerank", timeout=timeout, retry=NO_RETRY)
        self.timeout = timeout

    async def rerank(
        self,
        query: str,
        items: List[RankedItem],
        token: Optional[CancellationToken] = None,
    ) -> RerankOutcome:
        token = token or CancellationToken.none()
        if not items:
            return RerankOutcome(items=[], applied=False)

        candidates = items[: self.top_k]
        docs = [c.content for c in candidates]
        try:
            scores = await self.call(lambda: self.scorer.score(query, docs), token=token, timeout=self.timeout)
        except PipelineCancelled:
            raise
        except RAGError as exc:
            logger.warning("rerank skipped, keeping fused order: %s", exc)
            return RerankOutcome(items=list(items), applied=False, error=str(exc))

        if len(scores) != len(candidates):
            logger.warning("rerank returned %d scores for %d candidates, skipping", len(scores), len(candidates))
            return RerankOutcome(items=list(items), applied=False, error="score count mismatch")

        rescored = [
            replace(
                c,
                combined_score=min(1.0, max(0.0, float(s))),
                provenance=c.provenance + ("rerank",),
            )
            for c, s in zip(candidates, scores)
        ]
        rescored.sort(key=lambda r: (-r.combined_score, r.identity))
        return RerankOutcome(items=rescored[: self.top_m], applied=True)
