from __future__ import annotations

import logging
from typing import List, Optional

from ragcore.core.cache import TTLCache, normalize_text
from ragcore.core.cancellation import CancellationToken
from ragcore.core.resilience import ExternalCall
from ragcore.core.types import QueryType, RetrievedItem
from ragcore.providers.protocols import EmbeddingProvider, IndexFilter, VectorIndex
from ragcore.retrieval.thresholds import ThresholdConfig, apply_threshold

logger = logging.getLogger(__name__)


class DocumentRetriever:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: VectorIndex,
        top_k: int = 30,
        embed_call: Optional[ExternalCall] = None,
        index_call: Optional[ExternalCall] = None,
        embedding_cache: Optional[TTLCache] = None,
        thresholds: ThresholdConfig = ThresholdConfig(),
    ):
        """
        embedder/index are capabilities; keep them injected so the vector
        backend can be swapped without touching retrieval.
        """
        self.embedder = embedder
        self.index = index
        self.top_k = top_k
        self.embed_call = embed_call or ExternalCall("embeddings")
        self.index_call = index_call or ExternalCall("vector-index")
        self.embedding_cache = embedding_cache
        self.thresholds = thresholds

    async def embed(self, text: str, token: CancellationToken) -> List[float]:
        def load(load_token: CancellationToken):
            return self.embed_call(lambda: self.embedder.embed(text), token=load_token)

        if self.embedding_cache is None:
            return await load(token)
        return await self.embedding_cache.get_or_load(
            ("embedding", normalize_text(text)), lambda: load(CancellationToken.none()), token=token
        )

    async def retrieve(
        self,
        text: str,
        filter: IndexFilter,
        query_type: QueryType,
        token: Optional[CancellationToken] = None,
    ) -> List[RetrievedItem]:
        token = token or CancellationToken.none()
        vector = await self.embed(text, token)
        items = await self.index_call(lambda: self.index.query(vector, filter, self.top_k), token=token)
        kept, threshold = apply_threshold(items, query_type, self.thresholds)
        logger.debug("semantic: %d/%d items kept at threshold %.2f", len(kept), len(items), threshold)
        return kept
