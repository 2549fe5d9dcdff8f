from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from rank_bm25 import BM25Okapi

from ragcore.providers.protocols import CorpusChunk


_WORD_RE = re.compile(r"[A-Za-z0-9_]+")


def simple_tokenize(s: str) -> List[str]:
    return [t.lower() for t in _WORD_RE.findall(s)]


@dataclass
class BM25Index:
    chunks: List[CorpusChunk]
    tokenized: List[List[str]]
    bm25: Optional[BM25Okapi]

    @classmethod
    def build(cls, chunks: Sequence[CorpusChunk]) -> "BM25Index":
        chunks = list(chunks)
        # rank_bm25 divides by corpus size; an empty corpus gets no scorer
        if not chunks:
            return cls(chunks=[], tokenized=[], bm25=None)

        tokenized = [simple_tokenize(c.text) for c in chunks]
        return cls(chunks=chunks, tokenized=tokenized, bm25=BM25Okapi(tokenized))

    def __len__(self) -> int:
        return len(self.chunks)

    def search(self, query: str, top_k: int = 20) -> List[Tuple[CorpusChunk, float]]:
        """Top-k chunks by BM25 score. Chunks sharing no query term are skipped."""
        if self.bm25 is None or not self.chunks:
            return []

        q_tokens = simple_tokenize(query)
        if not q_tokens:
            return []
        scores = self.bm25.get_scores(q_tokens)
        q_set = set(q_tokens)

        ranked = sorted(range(len(scores)), key=lambda i: scores[i], reverse=True)
        out: List[Tuple[CorpusChunk, float]] = []
        for i in ranked:
            if len(out) >= top_k:
                break
            if not q_set.intersection(self.tokenized[i]):
                continue
            # Okapi idf goes negative for terms in most documents; clamp at 0
            out.append((self.chunks[i], max(0.0, float(scores[i]))))
        return out
