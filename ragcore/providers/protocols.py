from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union

from ragcore.core.types import ConversationTurn, RetrievedItem, TimeFilter


@dataclass(frozen=True)
class IndexFilter:
    user_id: str
    topic_id: Optional[str] = None


@dataclass(frozen=True)
class RawWebResult:
    title: str
    url: str
    content: str
    score: Optional[float] = None
    published_date: Optional[str] = None
    author: Optional[str] = None


@dataclass(frozen=True)
class CompletionOptions:
    model: str
    max_tokens: Optional[int] = None
    temperature: float = 0.0
    stream: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CorpusChunk:
    chunk_id: str
    document_id: str
    chunk_index: int
    text: str
    title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class VectorIndex(Protocol):
    async def query(self, vector: Sequence[float], filter: IndexFilter, top_k: int) -> List[RetrievedItem]: ...


class WebSearchProvider(Protocol):
    async def search(self, query: str, filter: TimeFilter, max_results: int) -> List[RawWebResult]: ...


class LLMProvider(Protocol):
    async def complete(
        self, messages: List[Dict[str, str]], options: CompletionOptions
    ) -> Union[str, AsyncIterator[str]]: ...


class PairwiseScorer(Protocol):
    async def score(self, query: str, documents: Sequence[str]) -> List[float]: ...


class DocumentStore(Protocol):
    async def list_chunks(self, filter: IndexFilter) -> List[CorpusChunk]: ...


class ConversationStore(Protocol):
    async def load_turns(self, conversation_id: str, limit: Optional[int] = None) -> List[ConversationTurn]: ...
