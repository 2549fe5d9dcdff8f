from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class SourceType(str, Enum):
    DOCUMENT = "document"
    WEB = "web"


class QueryType(str, Enum):
    FACTUAL = "factual"
    CONCEPTUAL = "conceptual"
    PROCEDURAL = "procedural"
    EXPLORATORY = "exploratory"


class TimeRange(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class CitationKind(str, Enum):
    DOCUMENT = "document"
    WEB = "web"
    REFERENCE = "reference"


@dataclass(frozen=True)
class DocumentRef:
    document_id: str
    chunk_index: int
    title: Optional[str] = None


@dataclass(frozen=True)
class WebRef:
    url: str
    title: Optional[str] = None
    published_at: Optional[datetime] = None


SourceRef = Union[DocumentRef, WebRef]


@dataclass(frozen=True)
class TopicScope:
    name: str
    description: str = ""
    strict: bool = False          # strict: refuse off-topic questions; soft: de-prioritize
    topic_id: Optional[str] = None


@dataclass(frozen=True)
class TimeFilter:
    time_range: Optional[TimeRange] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    country: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.time_range is None and self.start is None and self.end is None


@dataclass(frozen=True)
class Query:
    text: str
    user_id: str
    topic: Optional[TopicScope] = None
    time_filter: Optional[TimeFilter] = None
    variants: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RetrievedItem:
    id: str
    content: str
    raw_score: float
    source_type: SourceType
    source_ref: SourceRef
    retriever: str                      # "semantic" | "keyword" | "web"
    metadata: Mapping[str, Any] = field(default_factory=dict)
    variants: Tuple[str, ...] = ()      # query variants that found this item

    @property
    def identity(self) -> Tuple[str, ...]:
        ref = self.source_ref
        if isinstance(ref, DocumentRef):
            return (SourceType.DOCUMENT.value, ref.document_id, str(ref.chunk_index))
        return (SourceType.WEB.value, ref.url)

    @property
    def title(self) -> str:
        ref = self.source_ref
        if ref.title:
            return ref.title
        if isinstance(ref, DocumentRef):
            return ref.document_id
        return ref.url


@dataclass(frozen=True)
class RankedItem:
    item: RetrievedItem
    normalized_score: float
    combined_score: float
    provenance: Tuple[str, ...]
    token_count: int = 0
    truncated: bool = False

    @property
    def content(self) -> str:
        return self.item.content

    @property
    def source_type(self) -> SourceType:
        return self.item.source_type

    @property
    def source_ref(self) -> SourceRef:
        return self.item.source_ref

    @property
    def identity(self) -> Tuple[str, ...]:
        return self.item.identity

    @property
    def title(self) -> str:
        return self.item.title


@dataclass(frozen=True)
class ConversationTurn:
    role: str       # "user" | "assistant"
    content: str


@dataclass(frozen=True)
class ConversationSummary:
    summary_text: str
    preserved_recent_turns: Tuple[ConversationTurn, ...]
    summarized_turn_count: int = 0

    def as_turns(self) -> Tuple[ConversationTurn, ...]:
        if not self.summary_text:
            return self.preserved_recent_turns
        head = ConversationTurn(role="user", content=f"[CONVERSATION SUMMARY] {self.summary_text}")
        return (head,) + self.preserved_recent_turns


@dataclass(frozen=True)
class Citation:
    kind: CitationKind
    raw_marker: str
    start: int
    end: int
    index: Optional[int] = None
    url: Optional[str] = None
    document_id: Optional[str] = None
    name: Optional[str] = None
    resolved_source_id: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    matched_count: int
    unmatched_count: int
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()
    citations: Tuple[Citation, ...] = ()
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class MessageSet:
    messages: Tuple[Message, ...]
    token_count: int = 0

    def to_openai(self) -> list[Dict[str, str]]:
        return [m.to_dict() for m in self.messages]
