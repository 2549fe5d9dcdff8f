from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ragcore.core.tokens import TokenCounter
from ragcore.core.types import QueryType

logger = logging.getLogger(__name__)

FEW_SHOT_PATH = Path(__file__).resolve().parent.parent / "data" / "few_shot_examples.json"


@dataclass(frozen=True)
class FewShotExample:
    id: str
    query_type: QueryType
    question: str
    answer: str
    has_documents: bool = True
    has_web_results: bool = False

    def render(self) -> str:
        return f"Question: {self.question}\nAnswer: {self.answer}"


@lru_cache(maxsize=1)
def load_examples(path: Path = FEW_SHOT_PATH) -> Tuple[FewShotExample, ...]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return tuple(
        FewShotExample(
            id=e["id"],
            query_type=QueryType(e["query_type"]),
            question=e["question"],
            answer=e["answer"],
            has_documents=bool(e.get("has_documents", True)),
            has_web_results=bool(e.get("has_web_results", False)),
        )
        for e in raw.get("examples", [])
    )


def _relevance(ex: FewShotExample, query: str, query_type: QueryType, has_docs: bool, has_web: bool) -> float:
    score = 0.0
    if ex.query_type is query_type:
        score += 10
    if ex.has_documents == has_docs and ex.has_web_results == has_web:
        score += 8
    elif ex.has_documents == has_docs or ex.has_web_results == has_web:
        score += 4
    words = set(query.lower().split())
    overlap = words & set(f"{ex.question} {ex.answer}".lower().split())
    return score + min(len(overlap) * 0.5, 3.0)


class FewShotSelector:
    def __init__(
        self,
        counter: TokenCounter,
        examples: Optional[Sequence[FewShotExample]] = None,
        max_examples: int = 2,
    ):
        self.counter = counter
        self.examples = tuple(examples) if examples is not None else load_examples()
        self.max_examples = max_examples

    def select(
        self,
        query: str,
        query_type: QueryType,
        has_documents: bool,
        has_web_results: bool,
        max_tokens: int,
    ) -> List[FewShotExample]:
        """Best-matching examples whose rendered text fits ``max_tokens``."""
        if max_tokens <= 0 or not self.examples:
            return []
        ranked = sorted(
            self.examples,
            key=lambda e: (-_relevance(e, query, query_type, has_documents, has_web_results), e.id),
        )
        chosen: List[FewShotExample] = []
        used = 0
        for ex in ranked:
            if len(chosen) >= self.max_examples:
                break
            n = self.counter.count(ex.render())
            if used + n > max_tokens:
                continue
            chosen.append(ex)
            used += n
        logger.debug("few-shot: %d examples, %d tokens (cap %d)", len(chosen), used, max_tokens)
        return chosen


def format_examples(examples: Sequence[FewShotExample]) -> str:
    if not examples:
        return ""
    blocks = [f"Example {i}:\n{ex.render()}" for i, ex in enumerate(examples, start=1)]
    return "The following examples demonstrate the expected format and citation style:\n\n" + "\n\n".join(blocks)
