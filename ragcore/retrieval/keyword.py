from __future__ import annotations

import logging
from typing import List, Optional

from ragcore.core.cache import TTLCache
from ragcore.core.cancellation import CancellationToken
from ragcore.core.resilience import ExternalCall
from ragcore.core.types import DocumentRef, RetrievedItem, SourceType
from ragcore.indexing.bm25_index import BM25Index
from ragcore.providers.protocols import DocumentStore, IndexFilter

logger = logging.getLogger(__name__)


def user_tag(user_id: str) -> str:
    return f"user:{user_id}"


class KeywordRetriever:
    """BM25 over the user's chunk corpus; independent of embeddings."""

    def __init__(
        self,
        store: DocumentStore,
        top_k: int = 30,
        store_call: Optional[ExternalCall] = None,
        index_cache: Optional[TTLCache] = None,
    ):
        self.store = store
        self.top_k = top_k
        self.store_call = store_call or ExternalCall("document-store")
        self.index_cache = index_cache

    async def index_for(self, filter: IndexFilter, token: CancellationToken) -> BM25Index:
        async def load(load_token: CancellationToken) -> BM25Index:
            chunks = await self.store_call(lambda: self.store.list_chunks(filter), token=load_token)
            logger.info("built BM25 index over %d chunks for user %s", len(chunks), filter.user_id)
            return BM25Index.build(chunks)

        if self.index_cache is None:
            return await load(token)
        return await self.index_cache.get_or_load(
            ("bm25", filter.user_id, filter.topic_id),
            lambda: load(CancellationToken.none()),
            tags=[user_tag(filter.user_id)],
            token=token,
        )

    async def retrieve(
        self, text: str, filter: IndexFilter, token: Optional[CancellationToken] = None
    ) -> List[RetrievedItem]:
        token = token or CancellationToken.none()
        index = await self.index_for(filter, token)
        items: List[RetrievedItem] = []
        for chunk, score in index.search(text, top_k=self.top_k):
            items.append(
                RetrievedItem(
                    id=chunk.chunk_id,
                    content=chunk.text,
                    raw_score=score,
                    source_type=SourceType.DOCUMENT,
                    source_ref=DocumentRef(chunk.document_id, chunk.chunk_index, chunk.title),
                    retriever="keyword",
                    metadata=chunk.metadata,
                )
            )
        return items
