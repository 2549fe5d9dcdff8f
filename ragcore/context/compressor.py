from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import replace
from typing import List, Optional, Sequence

from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled, ProviderError, RAGError
from ragcore.core.resilience import NO_RETRY, ExternalCall
from ragcore.core.tokens import TokenCounter
from ragcore.core.types import RankedItem
from ragcore.providers.protocols import CompletionOptions, LLMProvider
from ragcore.retrieval.fusion import sort_ranked

logger = logging.getLogger(__name__)

COMPRESS_SYSTEM_PROMPT = (
    "You create concise summaries while preserving all important information: "
    "facts, numbers, dates, names and direct quotations."
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_KEY_SENTENCE_RE = re.compile(
    r"\d|[\"“”]|\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\b",
    re.I,
)


def key_sentences(text: str) -> List[str]:
    """Sentences carrying numbers, dates or quotations."""
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip() and _KEY_SENTENCE_RE.search(s)]


class ContextCompressor:
    """
    Best-effort LLM summarization of lower-priority context items. Runs only
    when candidates overflow their budget by ``overflow_ratio`` and enough of
    the request deadline is left; any failure keeps the original text.
    """

    def __init__(
        self,
        llm: LLMProvider,
        counter: TokenCounter,
        model: str = "gpt-4o-mini",
        call: Optional[ExternalCall] = None,
        timeout: float = 2.0,
        overflow_ratio: float = 1.25,
        max_summary_tokens: int = 300,
    ):
        self.llm = llm
        self.counter = counter
        self.model = model
        self.call = call or ExternalCall("compression", timeout=timeout, retry=NO_RETRY)
        self.timeout = timeout
        self.overflow_ratio = overflow_ratio
        self.max_summary_tokens = max_summary_tokens

    def needs_compression(self, items: Sequence[RankedItem], budget_tokens: int) -> bool:
        if budget_tokens <= 0 or not items:
            return False
        total = sum(self.counter.count(r.content) for r in items)
        return total >= budget_tokens * self.overflow_ratio

    async def compress(
        self,
        query: str,
        items: Sequence[RankedItem],
        budget_tokens: int,
        token: Optional[CancellationToken] = None,
    ) -> List[RankedItem]:
        token = token or CancellationToken.none()
        ordered = sort_ranked(items)
        if not self.needs_compression(ordered, budget_tokens):
            return ordered
        left = token.remaining()
        if left is not None and left < self.timeout:
            logger.warning("compression skipped: %.2fs left before deadline", left)
            return ordered

        # keep the highest-ranked items verbatim while they fit half the budget
        head: List[RankedItem] = []
        used = 0
        for r in ordered:
            n = self.counter.count(r.content)
            if used + n > budget_tokens // 2:
                break
            head.append(r)
            used += n
        tail = ordered[len(head):]

        try:
            compressed = await token.guard(
                asyncio.wait_for(
                    asyncio.gather(*(self._compress_one(query, r, token) for r in tail)),
                    timeout=self.timeout,
                )
            )
        except asyncio.TimeoutError:
            logger.warning("compression timed out after %.1fs, keeping original context", self.timeout)
            return ordered
        return head + list(compressed)

    async def _compress_one(self, query: str, r: RankedItem, token: CancellationToken) -> RankedItem:
        original = r.content
        try:
            summary = await self.call(lambda: self._summarize(query, original), token=token)
        except PipelineCancelled:
            raise
        except RAGError as exc:
            logger.debug("compression failed for %s: %s", r.item.id, exc)
            return r

        missing = [s for s in key_sentences(original) if s not in summary]
        text = " ".join([summary.strip()] + missing)
        if self.counter.count(text) >= self.counter.count(original):
            return r
        return replace(r, item=replace(r.item, content=text), provenance=r.provenance + ("compressed",))

    async def _summarize(self, query: str, content: str) -> str:
        prompt = (
            f'Summarize the following content in relation to the query "{query}". '
            "Preserve all key facts, numbers, dates, and quotations. Keep it concise.\n\n"
            f"Content:\n{content}"
        )
        out = await self.llm.complete(
            [
                {"role": "system", "content": COMPRESS_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            CompletionOptions(model=self.model, max_tokens=self.max_summary_tokens, temperature=0.2),
        )
        if not isinstance(out, str):
            raise ProviderError("compression", "unexpected streaming response", retryable=False)
        return out
