from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from ragcore.context.budget import BudgetAllocation, ContextBudget, compute_budget
from ragcore.core.errors import BudgetExceeded
from ragcore.core.tokens import TokenCounter
from ragcore.core.types import ConversationTurn, RankedItem, RetrievedItem, SourceType
from ragcore.retrieval.fusion import sort_ranked
from ragcore.retrieval.similarity import jaccard, word_set

logger = logging.getLogger(__name__)

MIN_TRUNCATE_TOKENS = 100


@dataclass(frozen=True)
class AssembledContext:
    items: Tuple[RankedItem, ...]        # documents first, then web
    budget: ContextBudget
    document_tokens: int = 0
    web_tokens: int = 0
    system_tokens: int = 0
    user_tokens: int = 0
    history: Tuple[ConversationTurn, ...] = ()
    history_tokens: int = 0
    dropped: int = 0
    warnings: Tuple[str, ...] = ()

    @property
    def documents(self) -> List[RankedItem]:
        return [r for r in self.items if r.source_type is SourceType.DOCUMENT]

    @property
    def web_results(self) -> List[RankedItem]:
        return [r for r in self.items if r.source_type is SourceType.WEB]

    @property
    def context_tokens(self) -> int:
        return sum(r.token_count for r in self.items)

    def is_empty(self) -> bool:
        return not self.items


def fit_to_budget(
    candidates: Sequence[RankedItem],
    budget_tokens: int,
    counter: TokenCounter,
    min_truncate_tokens: int = MIN_TRUNCATE_TOKENS,
) -> Tuple[List[RankedItem], int]:
    """
    Greedy fill by combined score. The first item that does not fit is
    truncated into the remaining space when more than ``min_truncate_tokens``
    remain; selection stops there, so a lower-scored item never displaces a
    higher-scored one. Returns (selected, tokens used).
    """
    remaining = max(0, budget_tokens)
    selected: List[RankedItem] = []

    for r in sort_ranked(candidates):
        n = counter.count(r.content)
        if n <= remaining:
            selected.append(replace(r, token_count=n))
            remaining -= n
            continue

        if remaining > min_truncate_tokens:
            cut = _truncate_within(r.content, remaining, counter)
            if cut:
                text, used = cut
                selected.append(
                    replace(r, item=replace(r.item, content=text), token_count=used, truncated=True)
                )
                remaining -= used
        break

    return selected, max(0, budget_tokens) - remaining


def _truncate_within(text: str, limit: int, counter: TokenCounter) -> Optional[Tuple[str, int]]:
    target = limit
    while target > 0:
        cut = counter.truncate(text, target)
        used = counter.count(cut)
        if 0 < used <= limit:
            return cut, used
        # decoding a prefix can re-tokenize longer; shrink and retry
        target -= max(1, used - limit)
    return None


def fit_history(
    history: Sequence[ConversationTurn], cap: int, counter: TokenCounter
) -> Tuple[List[ConversationTurn], int]:
    # newest turns win; a leading summary turn goes first when space runs out
    kept: List[ConversationTurn] = []
    used = 0
    for turn in reversed(history):
        n = counter.count(turn.content)
        if used + n > cap:
            break
        kept.append(turn)
        used += n
    kept.reverse()
    return kept, used


def rank_web(items: Sequence[RetrievedItem]) -> List[RankedItem]:
    """Web items are already blended into [0, 1]; keep that as combined score."""
    if not items:
        return []
    top = max(it.raw_score for it in items) or 1.0
    return sort_ranked(
        RankedItem(
            item=it,
            normalized_score=max(0.0, it.raw_score) / top,
            combined_score=min(1.0, max(0.0, it.raw_score)),
            provenance=(it.retriever,),
        )
        for it in items
    )


def prioritize_sources(
    documents: Sequence[RankedItem],
    web: Sequence[RankedItem],
    document_priority: float = 1.1,
    overlap_threshold: float = 0.85,
) -> List[RankedItem]:
    """
    Drop web items that repeat a document's content unless they outscore
    that document by the document priority factor.
    """
    doc_words = [(word_set(d.content), d.combined_score) for d in documents]
    kept: List[RankedItem] = []
    for w in web:
        words = word_set(w.content)
        shadowed = any(
            jaccard(words, dw) >= overlap_threshold and w.combined_score <= ds * document_priority
            for dw, ds in doc_words
        )
        if shadowed:
            logger.debug("web result %s overlaps a document source, dropped", w.source_ref.url)
            continue
        kept.append(w)
    return kept


class ContextAssembler:
    def __init__(
        self,
        counter: TokenCounter,
        allocation: BudgetAllocation = BudgetAllocation(),
        document_priority: float = 1.1,
        overlap_threshold: float = 0.85,
        model_limit: Optional[int] = None,
    ):
        self.counter = counter
        self.allocation = allocation
        self.document_priority = document_priority
        self.overlap_threshold = overlap_threshold
        self.model_limit = model_limit

    def budget(self) -> ContextBudget:
        return compute_budget(self.counter.model, self.allocation, self.model_limit)

    def assemble(
        self,
        documents: Sequence[RankedItem],
        web: Sequence[RankedItem] = (),
        system_prompt: str = "",
        user_prompt: str = "",
        history: Sequence[ConversationTurn] = (),
        budget: Optional[ContextBudget] = None,
    ) -> AssembledContext:
        budget = budget or self.budget()
        warnings: List[str] = []

        system_tokens = self.counter.count(system_prompt)
        user_tokens = self.counter.count(user_prompt)
        for category, used, cap in (("system", system_tokens, budget.system), ("user", user_tokens, budget.user)):
            if used > cap:
                exc = BudgetExceeded(category, used, cap)
                logger.warning("%s", exc)
                warnings.append(str(exc))

        docs, doc_tokens = fit_to_budget(documents, budget.documents, self.counter)
        web_pool = prioritize_sources(docs, web, self.document_priority, self.overlap_threshold)
        web_items, web_tokens = fit_to_budget(web_pool, budget.web, self.counter)

        kept_history, history_tokens = fit_history(history, max(0, budget.user - user_tokens), self.counter)
        dropped = len(documents) + len(web) - len(docs) - len(web_items)
        if dropped:
            logger.info("context: dropped %d of %d candidates to fit budget", dropped, len(documents) + len(web))

        return AssembledContext(
            items=tuple(docs) + tuple(web_items),
            budget=budget,
            document_tokens=doc_tokens,
            web_tokens=web_tokens,
            system_tokens=system_tokens,
            user_tokens=user_tokens,
            history=tuple(kept_history),
            history_tokens=history_tokens,
            dropped=dropped,
            warnings=tuple(warnings),
        )
