from __future__ import annotations

import re
from typing import List

from ragcore.core.types import Citation, CitationKind

# [Document 2]
_DOC_INDEX_RE = re.compile(r"\[Document\s+(\d+)\]", re.I)
# [Document Annual Report](document://doc-42)
_DOC_LINK_RE = re.compile(r"\[Document\s+([^\]]+)\]\(document://([^)\s]+)\)", re.I)
# [Document Annual Report]
_DOC_NAME_RE = re.compile(r"\[Document\s+([^\]]+)\](?!\()", re.I)
# [Web Source 1](https://...) and the URL-less [Web Source 1]
_WEB_INDEX_RE = re.compile(r"\[Web\s+Source\s+(\d+)\](?:\(([^)\s]+)\))?", re.I)
# [Some title](https://...)
_WEB_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)", re.I)
# [3], [Source 3], [Ref 3], [Reference 3]
_REF_RE = re.compile(r"\[(?:(?:Source|Ref|Reference)\s+)?(\d+)\](?!\()", re.I)

_WEB_SOURCE_LABEL_RE = re.compile(r"^Web\s+Source\s+\d+$", re.I)
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,;:!?])")
_MULTI_SPACE_RE = re.compile(r"[ \t]{2,}")


def _document_citations(text: str) -> List[Citation]:
    out = [
        Citation(CitationKind.DOCUMENT, m.group(0), m.start(), m.end(), index=int(m.group(1)))
        for m in _DOC_INDEX_RE.finditer(text)
    ]
    out += [
        Citation(
            CitationKind.DOCUMENT,
            m.group(0),
            m.start(),
            m.end(),
            name=m.group(1).strip(),
            document_id=m.group(2),
        )
        for m in _DOC_LINK_RE.finditer(text)
    ]
    out += [
        Citation(CitationKind.DOCUMENT, m.group(0), m.start(), m.end(), name=m.group(1).strip())
        for m in _DOC_NAME_RE.finditer(text)
        if not m.group(1).strip().isdigit()
    ]
    return out


def _web_citations(text: str) -> List[Citation]:
    out = [
        Citation(CitationKind.WEB, m.group(0), m.start(), m.end(), index=int(m.group(1)), url=m.group(2))
        for m in _WEB_INDEX_RE.finditer(text)
    ]
    for m in _WEB_LINK_RE.finditer(text):
        name = m.group(1).strip()
        if _WEB_SOURCE_LABEL_RE.match(name):
            continue
        out.append(Citation(CitationKind.WEB, m.group(0), m.start(), m.end(), name=name, url=m.group(2)))
    return out


def _reference_citations(text: str) -> List[Citation]:
    return [
        Citation(CitationKind.REFERENCE, m.group(0), m.start(), m.end(), index=int(m.group(1)))
        for m in _REF_RE.finditer(text)
    ]


def _drop_overlaps(citations: List[Citation]) -> List[Citation]:
    # earliest start wins; on a tie the longer match wins
    ordered = sorted(citations, key=lambda c: (c.start, -(c.end - c.start)))
    kept: List[Citation] = []
    for c in ordered:
        if kept and c.start < kept[-1].end:
            continue
        kept.append(c)
    return kept


def parse_citations(text: str) -> List[Citation]:
    """All citation markers in ``text``, in order of appearance."""
    if not text:
        return []
    found = _document_citations(text) + _web_citations(text) + _reference_citations(text)
    return _drop_overlaps(found)


def strip_citations(text: str) -> str:
    """``text`` with every citation marker removed and spacing tidied."""
    citations = parse_citations(text)
    if not citations:
        return text
    parts = []
    pos = 0
    for c in citations:
        parts.append(text[pos:c.start])
        pos = c.end
    parts.append(text[pos:])
    out = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", "".join(parts))
    return _MULTI_SPACE_RE.sub(" ", out).strip()
