from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ragcore.core.cancellation import CancellationToken
from ragcore.core.resilience import ExternalCall
from ragcore.core.types import RetrievedItem, SourceType, TimeFilter, WebRef
from ragcore.providers.protocols import RawWebResult, WebSearchProvider
from ragcore.web.authority import DomainAuthority
from ragcore.web.dedup import dedupe_web, normalize_url
from ragcore.web.quality import QualityConfig, score_quality
from ragcore.web.time_filter import TimeWindowFilter, parse_published, query_hint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebBlend:
    native: float = 0.5
    quality: float = 0.2
    authority: float = 0.3
    default_native: float = 0.5    # when the provider reports no score


class WebRetriever:
    def __init__(
        self,
        provider: WebSearchProvider,
        max_results: int = 8,
        call: Optional[ExternalCall] = None,
        authority: Optional[DomainAuthority] = None,
        time_filter: Optional[TimeWindowFilter] = None,
        quality: QualityConfig = QualityConfig(),
        blend: WebBlend = WebBlend(),
    ):
        self.provider = provider
        self.max_results = max_results
        self.call = call or ExternalCall("web-search")
        self.authority = authority or DomainAuthority()
        self.time_filter = time_filter or TimeWindowFilter()
        self.quality = quality
        self.blend = blend

    def score(self, r: RawWebResult) -> RetrievedItem:
        quality = score_quality(r.title, r.content, self.quality)
        auth = self.authority.score(r.url)
        native = r.score if r.score is not None else self.blend.default_native
        blended = (
            self.blend.native * native
            + self.blend.quality * quality.overall
            + self.blend.authority * auth.score
        )
        return RetrievedItem(
            id=normalize_url(r.url),
            content=r.content,
            raw_score=self.authority.adjust(blended, auth),
            source_type=SourceType.WEB,
            source_ref=WebRef(url=r.url, title=r.title or None, published_at=parse_published(r.published_date)),
            retriever="web",
            metadata={
                "native_score": native,
                "quality": quality.overall,
                "authority": auth.score,
                "authority_source": auth.source,
                "published_date": r.published_date,
                "author": r.author,
            },
        )

    async def retrieve(
        self,
        text: str,
        time_filter: Optional[TimeFilter] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[RetrievedItem]:
        token = token or CancellationToken.none()
        tf = time_filter or TimeFilter()
        search_query = f"{text} {query_hint(tf)}".strip()

        raw = await self.call(lambda: self.provider.search(search_query, tf, self.max_results), token=token)
        fresh = self.time_filter.apply(raw, tf)
        items = dedupe_web([self.score(r) for r in fresh])
        items.sort(key=lambda it: it.raw_score, reverse=True)

        logger.info(
            "web: %d results, %d after time filter, %d after dedup",
            len(raw), len(fresh), len(items),
        )
        return items
