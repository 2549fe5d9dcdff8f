from __future__ import annotations

from typing import List, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ragcore.core.types import RetrievedItem
from ragcore.retrieval.similarity import jaccard, word_set

_TRACKING_PREFIXES = ("utm_",)
_TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid", "ref", "ref_src", "igshid"}


def normalize_url(url: str) -> str:
    """Scheme/host case, ``www.``, trailing slash, fragment and tracking params removed."""
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if parts.port:
        host = f"{host}:{parts.port}"
    path = parts.path.rstrip("/")
    query = urlencode(
        sorted(
            (k, v)
            for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k.lower() not in _TRACKING_PARAMS and not k.lower().startswith(_TRACKING_PREFIXES)
        )
    )
    return urlunsplit((parts.scheme.lower() or "https", host, path, query, ""))


def _quality(item: RetrievedItem) -> tuple:
    return (item.metadata.get("quality", 0.0), item.raw_score)


def dedupe_web(
    items: Sequence[RetrievedItem],
    content_threshold: float = 0.85,
    title_threshold: float = 0.90,
) -> List[RetrievedItem]:
    """
    URL duplicates first, then near-duplicate content or titles. The
    higher-quality member of each duplicate group is kept.
    """
    by_url = {}
    for it in items:
        key = normalize_url(it.source_ref.url)
        if key not in by_url or _quality(it) > _quality(by_url[key]):
            by_url[key] = it

    kept: List[RetrievedItem] = []
    for it in sorted(by_url.values(), key=_quality, reverse=True):
        words = word_set(it.content)
        title = word_set(it.title)
        if any(
            jaccard(words, word_set(k.content)) >= content_threshold
            or (it.source_ref.title and k.source_ref.title and jaccard(title, word_set(k.title)) >= title_threshold)
            for k in kept
        ):
            continue
        kept.append(it)
    return kept
