from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from ragcore.core.errors import CitationUnresolved
from ragcore.core.types import Citation, CitationKind, DocumentRef, RankedItem, ValidationResult, WebRef
from ragcore.generation.citation_parser import parse_citations
from ragcore.retrieval.similarity import jaccard
from ragcore.web.dedup import normalize_url

logger = logging.getLogger(__name__)

SLOW_VALIDATION_MS = 200.0
FUZZY_NAME_THRESHOLD = 0.5
TRAILING_CLUSTER_RATIO = 0.8

_NAME_CLEAN_RE = re.compile(r"[^\w\s]")


def normalize_name(name: str) -> str:
    return " ".join(_NAME_CLEAN_RE.sub(" ", name.lower()).split())


def source_label(item: RankedItem, position: int) -> str:
    if isinstance(item.source_ref, WebRef):
        return f"[Web Source {position}]"
    return f"[Document {position}]"


@dataclass
class SourceIndex:
    """O(1) lookups over the sources that were actually sent to the model."""

    documents: List[RankedItem] = field(default_factory=list)
    web: List[RankedItem] = field(default_factory=list)
    by_url: Dict[str, RankedItem] = field(default_factory=dict)
    by_document_id: Dict[str, RankedItem] = field(default_factory=dict)
    by_name: Dict[str, RankedItem] = field(default_factory=dict)

    @classmethod
    def build(cls, items: Sequence[RankedItem]) -> "SourceIndex":
        index = cls()
        for r in items:
            ref = r.source_ref
            if isinstance(ref, DocumentRef):
                index.documents.append(r)
                index.by_document_id.setdefault(ref.document_id, r)
            else:
                index.web.append(r)
                index.by_url.setdefault(normalize_url(ref.url), r)
            name = normalize_name(r.title)
            if name:
                index.by_name.setdefault(name, r)
        return index

    @property
    def combined(self) -> List[RankedItem]:
        return self.documents + self.web

    @staticmethod
    def _at(items: List[RankedItem], index: Optional[int]) -> Optional[RankedItem]:
        if index is None or index < 1 or index > len(items):
            return None
        return items[index - 1]

    def document_at(self, index: Optional[int]) -> Optional[RankedItem]:
        return self._at(self.documents, index)

    def web_at(self, index: Optional[int]) -> Optional[RankedItem]:
        return self._at(self.web, index)

    def reference_at(self, index: Optional[int]) -> Optional[RankedItem]:
        return self._at(self.combined, index)

    def url(self, url: Optional[str]) -> Optional[RankedItem]:
        if not url:
            return None
        return self.by_url.get(normalize_url(url))

    def fuzzy_name(self, name: Optional[str]) -> Optional[RankedItem]:
        if not name:
            return None
        key = normalize_name(name)
        if not key:
            return None
        if key in self.by_name:
            return self.by_name[key]
        for title, item in self.by_name.items():
            if key in title or title in key:
                return item
        words = frozenset(key.split())
        best, best_score = None, FUZZY_NAME_THRESHOLD
        for title, item in self.by_name.items():
            score = jaccard(words, frozenset(title.split()))
            if score >= best_score:
                best, best_score = item, score
        return best


def _label(c: Citation) -> str:
    if c.index is not None:
        return str(c.index)
    return c.url or c.document_id or c.name or c.raw_marker


class CitationValidator:
    def __init__(self, slow_ms: float = SLOW_VALIDATION_MS):
        self.slow_ms = slow_ms

    def validate(self, answer: str, sources: Sequence[RankedItem]) -> ValidationResult:
        """
        Resolve every citation in ``answer`` against ``sources`` (documents
        first, then web, as they were numbered in the prompt). Never raises:
        unresolved markers become errors on the result.
        """
        started = time.perf_counter()
        index = SourceIndex.build(sources)
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []
        resolved: List[Citation] = []

        citations = parse_citations(answer)
        for c in citations:
            item, notes = self._resolve(c, index)
            warnings.extend(notes)
            if item is None:
                errors.append(str(CitationUnresolved(c.raw_marker, _label(c))))
                resolved.append(c)
                continue
            resolved.append(replace(c, resolved_source_id=item.item.id))

        matched = sum(1 for c in resolved if c.resolved_source_id is not None)
        unmatched = len(resolved) - matched

        if sources and not citations:
            warnings.append("answer contains no citations")
        suggestions.extend(self._uncited(index, resolved))
        if self._trailing_cluster(answer, citations):
            suggestions.append("citations are clustered at the end of the answer; cite inline next to each claim")

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms > self.slow_ms:
            logger.warning("citation validation took %.1fms for %d citations", elapsed_ms, len(citations))
            warnings.append(f"citation validation took {elapsed_ms:.0f}ms")
        if errors:
            logger.warning("%d of %d citations unresolved", unmatched, len(citations))

        return ValidationResult(
            is_valid=not errors,
            matched_count=matched,
            unmatched_count=unmatched,
            errors=tuple(errors),
            warnings=tuple(warnings),
            suggestions=tuple(suggestions),
            citations=tuple(resolved),
            elapsed_ms=elapsed_ms,
        )

    def _resolve(self, c: Citation, index: SourceIndex) -> Tuple[Optional[RankedItem], List[str]]:
        notes: List[str] = []

        if c.kind is CitationKind.DOCUMENT:
            item = index.document_at(c.index)
            if item is None and c.document_id:
                item = index.by_document_id.get(c.document_id)
                if item is not None and c.index is not None:
                    notes.append(f"Citation {c.raw_marker} matched by document id, not by index")
            if item is None and c.name:
                item = index.fuzzy_name(c.name)
                if item is not None:
                    notes.append(f"Citation {c.raw_marker} matched by name only")
            return item, notes

        if c.kind is CitationKind.WEB:
            item = index.web_at(c.index)
            if item is not None:
                expected = item.source_ref.url
                if not c.url:
                    notes.append(f"Citation {c.raw_marker} is missing its URL")
                elif normalize_url(c.url) != normalize_url(expected):
                    notes.append(f"Citation {c.raw_marker} URL does not match source URL {expected}")
                return item, notes
            item = index.url(c.url)
            if item is not None:
                if c.index is not None:
                    notes.append(f"Citation {c.raw_marker} matched by URL, not by index")
                return item, notes
            item = index.fuzzy_name(c.name)
            if item is not None:
                notes.append(f"Citation {c.raw_marker} matched by name only")
            return item, notes

        return index.reference_at(c.index), notes

    @staticmethod
    def _uncited(index: SourceIndex, citations: Sequence[Citation]) -> List[str]:
        cited = {c.resolved_source_id for c in citations if c.resolved_source_id}
        out = []
        for pos, r in enumerate(index.documents, start=1):
            if r.item.id not in cited:
                out.append(f"{source_label(r, pos)} ({r.title}) was provided but not cited")
        for pos, r in enumerate(index.web, start=1):
            if r.item.id not in cited:
                out.append(f"{source_label(r, pos)} ({r.title}) was provided but not cited")
        return out

    @staticmethod
    def _trailing_cluster(answer: str, citations: Sequence[Citation]) -> bool:
        if len(citations) < 3 or not answer:
            return False
        cutoff = len(answer) * TRAILING_CLUSTER_RATIO
        return all(c.start >= cutoff for c in citations)


def validate_citations(answer: str, sources: Sequence[RankedItem]) -> ValidationResult:
    return CitationValidator().validate(answer, sources)
