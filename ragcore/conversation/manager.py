from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled, ProviderError, RAGError, SummarizationFailure
from ragcore.core.resilience import NO_RETRY, ExternalCall
from ragcore.core.types import ConversationSummary, ConversationTurn
from ragcore.generation.citation_parser import strip_citations
from ragcore.providers.protocols import CompletionOptions, ConversationStore, LLMProvider

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You create concise, informative summaries of conversations while preserving "
    "key context and information."
)

SUMMARY_PROMPT = """Summarize the following conversation history, preserving:
1. Key topics and themes discussed
2. Important facts, decisions, or conclusions
3. User preferences or context mentioned
4. Any information needed for future responses

Keep the summary under {max_tokens} tokens.

Conversation History:
{history}"""

_HISTORY_STOP_WORDS = frozenset(
    "the a an and or but in on at to for of with by is are was were be been have has had "
    "do does did will would could should may might must can".split()
)
_NON_WORD_RE = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class ConversationConfig:
    window: int = 5
    summary_threshold: int = 20
    timeout: float = 2.0
    max_summary_tokens: int = 300
    relevance_filter: bool = False
    min_relevance: float = 0.3
    max_history: int = 10


def _content_words(text: str) -> set:
    return {
        w for w in _NON_WORD_RE.sub(" ", text.lower()).split()
        if len(w) > 2 and w not in _HISTORY_STOP_WORDS
    }


def keyword_relevance(query: str, message: str) -> float:
    q, m = _content_words(query), _content_words(message)
    if not q or not m:
        return 0.0
    return len(q & m) / len(q | m)


def filter_relevant(
    turns: Sequence[ConversationTurn],
    query: str,
    config: ConversationConfig = ConversationConfig(),
) -> List[ConversationTurn]:
    """
    Keep the recent window verbatim; older turns survive only if they relate
    to the current query. Conversation order is preserved.
    """
    if len(turns) <= config.max_history:
        return list(turns)
    older, recent = list(turns[: -config.window]), list(turns[-config.window:])
    scored = [(i, keyword_relevance(query, t.content)) for i, t in enumerate(older)]
    relevant = [x for x in scored if x[1] >= config.min_relevance]
    relevant.sort(key=lambda x: x[1], reverse=True)
    keep = sorted(i for i, _ in relevant[: max(0, config.max_history - config.window)])
    return [older[i] for i in keep] + recent


class ConversationManager:
    def __init__(
        self,
        llm: Optional[LLMProvider] = None,
        config: ConversationConfig = ConversationConfig(),
        model: str = "gpt-4o-mini",
        call: Optional[ExternalCall] = None,
        store: Optional[ConversationStore] = None,
        store_call: Optional[ExternalCall] = None,
    ):
        self.llm = llm
        self.config = config
        self.model = model
        self.call = call or ExternalCall("summarizer", timeout=config.timeout, retry=NO_RETRY)
        self.store = store
        self.store_call = store_call or ExternalCall("conversation-store")

    async def load(self, conversation_id: str, token: Optional[CancellationToken] = None) -> List[ConversationTurn]:
        if self.store is None:
            return []
        return await self.store_call(lambda: self.store.load_turns(conversation_id), token=token)

    async def prepare(
        self,
        turns: Sequence[ConversationTurn],
        query: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ConversationSummary:
        """
        Above the threshold, everything older than the recent window is
        summarized into one block. A failed or slow summary falls back to
        the recent window alone.
        """
        token = token or CancellationToken.none()
        turns = list(turns)
        cfg = self.config

        if len(turns) <= cfg.summary_threshold:
            kept = filter_relevant(turns, query, cfg) if (cfg.relevance_filter and query) else turns
            return ConversationSummary(summary_text="", preserved_recent_turns=tuple(kept))

        older, recent = turns[: -cfg.window], turns[-cfg.window:]
        try:
            summary = await self.summarize(older, token)
        except PipelineCancelled:
            raise
        except SummarizationFailure as exc:
            logger.warning("history summary failed, keeping last %d turns: %s", len(recent), exc)
            return ConversationSummary(summary_text="", preserved_recent_turns=tuple(recent))

        return ConversationSummary(
            summary_text=summary,
            preserved_recent_turns=tuple(recent),
            summarized_turn_count=len(older),
        )

    async def summarize(self, turns: Sequence[ConversationTurn], token: CancellationToken) -> str:
        if self.llm is None:
            raise SummarizationFailure("no LLM configured for summarization")
        history = "\n\n".join(f"{t.role.upper()}: {strip_citations(t.content)}" for t in turns)
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": SUMMARY_PROMPT.format(max_tokens=self.config.max_summary_tokens, history=history),
            },
        ]
        options = CompletionOptions(model=self.model, max_tokens=self.config.max_summary_tokens, temperature=0.3)

        async def run() -> str:
            out = await self.llm.complete(messages, options)
            if not isinstance(out, str):
                raise ProviderError("summarizer", "unexpected streaming response", retryable=False)
            return out

        try:
            text = await self.call(run, token=token, timeout=self.config.timeout)
        except PipelineCancelled:
            raise
        except RAGError as exc:
            raise SummarizationFailure(str(exc)) from exc
        if not text.strip():
            raise SummarizationFailure("empty summary")
        return text.strip()
