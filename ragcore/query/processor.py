from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from ragcore.core.cache import TTLCache, normalize_text
from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled, RAGError
from ragcore.core.resilience import ExternalCall
from ragcore.core.types import Query, QueryType, TopicScope
from ragcore.providers.protocols import CompletionOptions, LLMProvider
from ragcore.query.classifier import classify_query, extract_keywords

logger = logging.getLogger(__name__)

REWRITE_SYSTEM_PROMPT = """You are a query rewriting assistant. Generate {n} different variations of the user's search query. Each variation must:
1. Preserve the core intent and meaning
2. Use different wording and phrasing
3. Be concise and clear

Return a JSON object with a "variations" array of strings, e.g. {{"variations": ["query 1", "query 2"]}}"""

_ARRAY_RE = re.compile(r"\[.*\]", re.S)


@dataclass(frozen=True)
class ProcessedQuery:
    query: Query
    query_type: QueryType
    text: str                       # topic-merged retrieval text
    keywords: Tuple[str, ...]
    variants: Tuple[str, ...]       # variants[0] is always ``text``


def _phrase(topic: str) -> str:
    return f'"{topic}"' if " " in topic else topic


def merge_topic(text: str, topic: Optional[TopicScope], query_type: QueryType) -> str:
    """Weave the topic into the query so retrievers read it as context."""
    if topic is None or not topic.name.strip():
        return text
    name = topic.name.strip()
    topic_kw = [k for k in extract_keywords(f"{name} {topic.description}") if k not in text.lower()]

    if name.lower() in text.lower():
        return f"{text} {' '.join(topic_kw[:3])}".strip()
    if query_type is QueryType.FACTUAL:
        if topic_kw:
            return f"{text} {' '.join(topic_kw[:2])}"
        return f"{name} {text}"
    if query_type is QueryType.CONCEPTUAL:
        return f"{text} related to {_phrase(name)}"
    if query_type is QueryType.PROCEDURAL:
        return f"{text} in {_phrase(name)}"
    return f"{_phrase(name)} {text}"


def dedupe_variants(variants: List[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for v in variants:
        key = normalize_text(v)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(v.strip())
    return out


def parse_variations(content: str) -> List[str]:
    """Accept {"variations": [...]}, a bare array, or any object holding an array."""
    try:
        parsed: Any = json.loads(content)
    except json.JSONDecodeError:
        m = _ARRAY_RE.search(content)
        if not m:
            raise ValueError("no JSON array in rewrite response")
        parsed = json.loads(m.group(0))

    if isinstance(parsed, dict):
        values = parsed.get("variations")
        if not isinstance(values, list):
            values = next((v for v in parsed.values() if isinstance(v, list)), [])
        parsed = values
    if not isinstance(parsed, list):
        raise ValueError("rewrite response is not a list")
    return [v.strip() for v in parsed if isinstance(v, str) and v.strip()]


class QueryProcessor:
    def __init__(
        self,
        llm: Optional[LLMProvider] = None,
        call: Optional[ExternalCall] = None,
        cache: Optional[TTLCache] = None,
        model: str = "gpt-4o-mini",
        max_variants: int = 3,
    ):
        self.llm = llm
        self.call = call or ExternalCall("query-rewrite")
        self.cache = cache
        self.model = model
        self.max_variants = max_variants

    async def process(self, query: Query, token: Optional[CancellationToken] = None) -> ProcessedQuery:
        token = token or CancellationToken.none()
        query_type = classify_query(query.text)
        merged = merge_topic(query.text, query.topic, query_type)

        if query.variants:
            rewrites = list(query.variants)
        else:
            rewrites = await self.rewrite(query.text, token)

        variants = dedupe_variants(
            [merged] + [merge_topic(v, query.topic, query_type) for v in rewrites]
        )[: self.max_variants + 1]

        return ProcessedQuery(
            query=Query(
                text=query.text,
                user_id=query.user_id,
                topic=query.topic,
                time_filter=query.time_filter,
                variants=tuple(variants[1:]),
            ),
            query_type=query_type,
            text=merged,
            keywords=tuple(extract_keywords(merged)),
            variants=tuple(variants),
        )

    async def rewrite(self, text: str, token: CancellationToken) -> List[str]:
        """LLM paraphrases of ``text``; empty on any failure."""
        if self.llm is None or self.max_variants <= 0 or not text.strip():
            return []

        def load(load_token: CancellationToken):
            return self.call(lambda: self._generate(text), token=load_token)

        try:
            if self.cache is None:
                return await load(token)
            return await self.cache.get_or_load(
                ("rewrite", normalize_text(text), self.max_variants),
                lambda: load(CancellationToken.none()),
                token=token,
            )
        except PipelineCancelled:
            raise
        except (RAGError, ValueError) as exc:
            logger.warning("query rewrite failed, using original query only: %s", exc)
            return []

    async def _generate(self, text: str) -> List[str]:
        messages = [
            {"role": "system", "content": REWRITE_SYSTEM_PROMPT.format(n=self.max_variants)},
            {"role": "user", "content": f'Original query: "{text}"\n\nGenerate {self.max_variants} query variations.'},
        ]
        content = await self.llm.complete(
            messages,
            CompletionOptions(
                model=self.model,
                max_tokens=200,
                temperature=0.7,
                extra={"response_format": {"type": "json_object"}},
            ),
        )
        if not isinstance(content, str):
            raise ValueError("rewrite call must not stream")
        return dedupe_variants(parse_variations(content))[: self.max_variants]
