from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled, RAGError
from ragcore.core.types import RankedItem, RetrievedItem
from ragcore.providers.protocols import IndexFilter
from ragcore.query.processor import ProcessedQuery
from ragcore.retrieval.fusion import FusionConfig, FusionWeights, combine, merge_variants
from ragcore.retrieval.keyword import KeywordRetriever
from ragcore.retrieval.semantic import DocumentRetriever

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HybridResult:
    items: List[RankedItem]
    semantic_count: int = 0
    keyword_count: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return len(self.failures) == 2


async def run_variants(
    branch: str,
    variants: Sequence[str],
    fn: Callable[[str], Awaitable[List[RetrievedItem]]],
) -> List[RetrievedItem]:
    """
    Run one retriever for every variant concurrently and merge by max score.
    Raises the first error only when every variant failed.
    """
    results = await asyncio.gather(*(fn(v) for v in variants), return_exceptions=True)
    sets = []
    errors: List[RAGError] = []
    for variant, r in zip(variants, results):
        if isinstance(r, PipelineCancelled):
            raise r
        if isinstance(r, RAGError):
            errors.append(r)
            logger.warning("%s retrieval failed for variant %r: %s", branch, variant, r)
        elif isinstance(r, BaseException):
            raise r
        else:
            sets.append((variant, r))
    if errors and not sets:
        raise errors[0]
    return merge_variants(sets)


class HybridRetriever:
    def __init__(
        self,
        semantic: DocumentRetriever,
        keyword: KeywordRetriever,
        fusion: FusionConfig = FusionConfig(),
    ):
        self.semantic = semantic
        self.keyword = keyword
        self.fusion = fusion

    async def retrieve(
        self,
        query: ProcessedQuery,
        filter: IndexFilter,
        token: Optional[CancellationToken] = None,
        weights: Optional[FusionWeights] = None,
    ) -> HybridResult:
        token = token or CancellationToken.none()
        variants = list(query.variants) or [query.text]

        sem, kw = await asyncio.gather(
            run_variants(
                "semantic",
                variants,
                lambda v: self.semantic.retrieve(v, filter, query.query_type, token),
            ),
            run_variants("keyword", variants, lambda v: self.keyword.retrieve(v, filter, token)),
            return_exceptions=True,
        )

        failures: Dict[str, str] = {}
        branches = {"semantic": sem, "keyword": kw}
        for name, r in branches.items():
            if isinstance(r, PipelineCancelled):
                raise r
            if isinstance(r, RAGError):
                failures[name] = str(r)
                logger.warning("%s branch degraded to empty: %s", name, r)
                branches[name] = []
            elif isinstance(r, BaseException):
                raise r

        ranked = combine(
            branches["semantic"],
            branches["keyword"],
            self.fusion,
            user_id=query.query.user_id,
            weights=weights,
        )
        return HybridResult(
            items=ranked,
            semantic_count=len(branches["semantic"]),
            keyword_count=len(branches["keyword"]),
            failures=failures,
        )
