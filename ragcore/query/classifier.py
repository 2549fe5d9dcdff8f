from __future__ import annotations

import re
from typing import List

from ragcore.core.types import QueryType

# Checked in this order; conceptual first because it overlaps factual.
_CONCEPTUAL = [
    re.compile(r"\b(explain|understand|meaning|concept|theory|idea|definition)\b", re.I),
    re.compile(r"\b(compare|comparison|difference|differences|versus|vs\.?)\b", re.I),
    re.compile(r"^(what does|what do|what means)\b", re.I),
]
_FACTUAL = [
    re.compile(r"^(what|who|when|where|which)\s+(is|are|was|were|did|does|do)\b", re.I),
    re.compile(r"^(how many|how much)\b", re.I),
    re.compile(r"^(who|what|when|where|which)\s+\w+", re.I),
]
_PROCEDURAL = [
    re.compile(r"^(how to|how do|how can|how should)\b", re.I),
    re.compile(r"\b(steps|process|method|procedure|guide|tutorial|way to)\b", re.I),
]
_EXPLORATORY = [
    re.compile(r"^(tell me about|learn about|information about|know about|find out about)\b", re.I),
    re.compile(r"\b(overview|introduction|background|general)\b", re.I),
]

_SHORT_QUERY_WORDS = 4

STOP_WORDS = frozenset(
    """
    a an and are as at be been but by can could did do does for from had has have how
    i if in into is it its me my of on or our should so than that the their them then
    there these they this to was we were what when where which who why will with would
    you your about tell explain please
    """.split()
)

_WORD_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_\-']*")


def classify_query(text: str) -> QueryType:
    """Heuristic question type: question word first, then cue words, then length."""
    q = text.strip()
    if any(p.search(q) for p in _CONCEPTUAL):
        return QueryType.CONCEPTUAL
    if any(p.search(q) for p in _FACTUAL):
        return QueryType.FACTUAL
    if any(p.search(q) for p in _PROCEDURAL):
        return QueryType.PROCEDURAL
    if any(p.search(q) for p in _EXPLORATORY):
        return QueryType.EXPLORATORY
    # bare noun phrases ("solar subsidies") read as browsing
    if len(q.split()) <= _SHORT_QUERY_WORDS:
        return QueryType.EXPLORATORY
    return QueryType.FACTUAL


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    seen = set()
    out: List[str] = []
    for w in _WORD_RE.findall(text.lower()):
        w = w.strip("'-")
        if len(w) < 3 or w in STOP_WORDS or w in seen:
            continue
        seen.add(w)
        out.append(w)
        if len(out) >= limit:
            break
    return out
