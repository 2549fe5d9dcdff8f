from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from ragcore.core.errors import ProviderError, ProviderTimeout
from ragcore.core.types import TimeFilter
from ragcore.providers.protocols import RawWebResult

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class TavilySearch:
    name = "tavily"

    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        search_depth: str = "basic",
        timeout: float = 10.0,
        url: str = TAVILY_SEARCH_URL,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.search_depth = search_depth
        self.url = url

    def _payload(self, query: str, filter: TimeFilter, max_results: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "query": query,
            "max_results": max_results,
            "search_depth": self.search_depth,
            "include_raw_content": False,
        }
        if filter.time_range is not None:
            payload["time_range"] = filter.time_range.value
        else:
            if filter.start is not None:
                payload["start_date"] = filter.start.date().isoformat()
            if filter.end is not None:
                payload["end_date"] = filter.end.date().isoformat()
        if filter.country:
            payload["country"] = filter.country
        return payload

    async def search(self, query: str, filter: TimeFilter, max_results: int) -> List[RawWebResult]:
        try:
            resp = await self.client.post(
                self.url,
                json=self._payload(query, filter, max_results),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(self.name, self.timeout) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                self.name, exc.response.text[:200], status_code=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, str(exc), retryable=True) from exc

        out: List[RawWebResult] = []
        for r in resp.json().get("results") or []:
            if not r.get("url"):
                continue
            out.append(
                RawWebResult(
                    title=r.get("title") or "",
                    url=r["url"],
                    content=r.get("content") or "",
                    score=r.get("score"),
                    published_date=r.get("published_date"),
                    author=r.get("author"),
                )
            )
        return out

    async def aclose(self) -> None:
        await self.client.aclose()
