from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from ragcore.core.errors import ProviderError
from ragcore.core.tokens import TokenCounter
from ragcore.core.types import (
    DocumentRef,
    RankedItem,
    RetrievedItem,
    SourceType,
    TimeFilter,
    WebRef,
)
from ragcore.providers.protocols import CompletionOptions, CorpusChunk, IndexFilter, RawWebResult


class WhitespaceEncoding:
    """One token per whitespace-separated word; keeps token arithmetic exact offline."""

    def __init__(self):
        self._ids: Dict[str, int] = {}
        self._words: List[str] = []

    def encode(self, text: str) -> List[int]:
        out = []
        for w in text.split():
            if w not in self._ids:
                self._ids[w] = len(self._words)
                self._words.append(w)
            out.append(self._ids[w])
        return out

    def decode(self, tokens: List[int]) -> str:
        return " ".join(self._words[t] for t in tokens)


def words(n: int, prefix: str = "w") -> str:
    return " ".join(f"{prefix}{i}" for i in range(n))


def doc_item(
    chunk_id: str,
    content: str,
    score: float,
    retriever: str = "semantic",
    document_id: Optional[str] = None,
    chunk_index: int = 0,
    title: Optional[str] = None,
) -> RetrievedItem:
    return RetrievedItem(
        id=chunk_id,
        content=content,
        raw_score=score,
        source_type=SourceType.DOCUMENT,
        source_ref=DocumentRef(document_id or chunk_id, chunk_index, title),
        retriever=retriever,
    )


def web_item(url: str, content: str, score: float, title: Optional[str] = None) -> RetrievedItem:
    return RetrievedItem(
        id=url,
        content=content,
        raw_score=score,
        source_type=SourceType.WEB,
        source_ref=WebRef(url=url, title=title),
        retriever="web",
    )


def ranked(item: RetrievedItem, score: float) -> RankedItem:
    return RankedItem(item=item, normalized_score=score, combined_score=score, provenance=(item.retriever,))


class FakeLLM:
    """Replies from a list (or a callable); records every call."""

    def __init__(self, replies: Any = "ok", delay: float = 0.0, error: Optional[Exception] = None):
        self.replies = replies
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages: List[Dict[str, str]], options: CompletionOptions):
        self.calls.append({"messages": messages, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.replies):
            reply = self.replies(messages, options)
        elif isinstance(self.replies, list):
            reply = self.replies.pop(0)
        else:
            reply = self.replies
        if options.stream:
            return _stream(reply)
        return reply


async def _stream(text: str):
    for piece in text.split(" "):
        yield piece + " "


class FakeEmbedder:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [float(len(text)), 1.0, 0.0]


class FakeVectorIndex:
    def __init__(self, items: Sequence[RetrievedItem] = (), error: Optional[Exception] = None):
        self.items = list(items)
        self.error = error

    async def query(self, vector, filter: IndexFilter, top_k: int) -> List[RetrievedItem]:
        if self.error is not None:
            raise self.error
        return self.items[:top_k]


class FakeDocumentStore:
    def __init__(self, chunks: Sequence[CorpusChunk] = (), error: Optional[Exception] = None):
        self.chunks = list(chunks)
        self.error = error
        self.calls = 0

    async def list_chunks(self, filter: IndexFilter) -> List[CorpusChunk]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.chunks)


class FakeWebSearch:
    def __init__(self, results: Sequence[RawWebResult] = (), error: Optional[Exception] = None):
        self.results = list(results)
        self.error = error
        self.queries: List[str] = []

    async def search(self, query: str, filter: TimeFilter, max_results: int) -> List[RawWebResult]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.results[:max_results]


class FakeScorer:
    def __init__(self, scores: Optional[Sequence[float]] = None, delay: float = 0.0, error: Optional[Exception] = None):
        self.scores = scores
        self.delay = delay
        self.error = error

    async def score(self, query: str, documents: Sequence[str]) -> List[float]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.scores is None:
            return [1.0 / (i + 1) for i in range(len(documents))]
        return list(self.scores)


def provider_down(name: str = "fake") -> ProviderError:
    return ProviderError(name, "service unavailable", status_code=503, retryable=False)


@pytest.fixture
def counter() -> TokenCounter:
    return TokenCounter(model="gpt-4o-mini", encoding=WhitespaceEncoding())
