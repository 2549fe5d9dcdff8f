from __future__ import annotations

from typing import FrozenSet


def word_set(text: str) -> FrozenSet[str]:
    return frozenset(text.lower().split())


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0
