from __future__ import annotations

from typing import List, Optional, Sequence

import cohere
from cohere.core.api_error import ApiError

from ragcore.core.errors import ProviderError


class CohereReranker:
    """Pairwise (query, passage) relevance via Cohere rerank."""

    name = "cohere-rerank"

    def __init__(
        self,
        api_key: str,
        model: str = "rerank-english-v3.0",
        client: Optional[cohere.AsyncClient] = None,
    ):
        self.client = client or cohere.AsyncClient(api_key)
        self.model = model

    async def score(self, query: str, documents: Sequence[str]) -> List[float]:
        """Return one relevance score per input document, in input order."""
        if not documents:
            return []
        try:
            resp = await self.client.rerank(
                model=self.model,
                query=query,
                documents=list(documents),
                top_n=len(documents),
            )
        except ApiError as exc:
            raise ProviderError(self.name, str(exc.body), status_code=exc.status_code) from exc

        scores = [0.0] * len(documents)
        for r in resp.results:
            scores[r.index] = float(r.relevance_score)
        return scores
