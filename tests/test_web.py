from datetime import datetime, timezone

import pytest

from conftest import FakeWebSearch, provider_down, web_item
from ragcore.core.errors import ProviderError
from ragcore.core.resilience import NO_RETRY, ExternalCall
from ragcore.core.types import TimeFilter, TimeRange
from ragcore.providers.protocols import RawWebResult
from ragcore.web.authority import AuthorityConfig, DomainAuthority, extract_domain
from ragcore.web.dedup import dedupe_web, normalize_url
from ragcore.web.quality import score_quality
from ragcore.web.retriever import WebRetriever
from ragcore.web.time_filter import QUERY_HINTS, TimeWindowFilter, extract_content_dates

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

ARTICLE = (
    "The central bank held rates steady on Monday. Officials said inflation is easing slowly.\n\n"
    "Markets had expected the decision after weeks of guidance. Analysts now look to the next meeting."
)


def _clock():
    return NOW


def _retriever(results, **kw):
    return WebRetriever(
        FakeWebSearch(results),
        call=ExternalCall("web-search", retry=NO_RETRY),
        time_filter=TimeWindowFilter(clock=_clock),
        **kw,
    )


async def test_last_day_filter_rejects_content_dated_in_another_month():
    stale = RawWebResult(
        title="Fuel prices",
        url="https://news.example.com/fuel",
        content="Fuel prices dropped on November 5, 2025 across the region.",
        score=0.9,
        published_date="2026-10-19T08:00:00Z",
    )
    fresh = RawWebResult(
        title="Rates held",
        url="https://www.reuters.com/markets/rates",
        content="On October 19, 2026 the central bank held rates steady.",
        score=0.7,
        published_date="2026-10-19T09:30:00Z",
    )
    undated = RawWebResult(title="Undated", url="https://blog.example.com/x", content="Some commentary.", score=0.8)

    retriever = _retriever([stale, fresh, undated])
    items = await retriever.retrieve("interest rates", TimeFilter(time_range=TimeRange.DAY))

    assert [it.source_ref.url for it in items] == ["https://www.reuters.com/markets/rates"]
    assert retriever.provider.queries[0].endswith(QUERY_HINTS[TimeRange.DAY])


def test_month_window_checks_only_the_latest_content_date():
    f = TimeWindowFilter(clock=_clock)
    r = RawWebResult(
        title="Recap",
        url="https://example.com/recap",
        content="Since January 3, 2019 the program grew; the latest update came on 2026-10-01.",
    )
    assert f.accepts(r, TimeFilter(time_range=TimeRange.MONTH))
    assert not f.accepts(r, TimeFilter(time_range=TimeRange.WEEK))


def test_explicit_range_uses_published_date():
    f = TimeWindowFilter(clock=_clock)
    r = RawWebResult(title="t", url="https://example.com", content="c", published_date="2025-03-10")
    inside = TimeFilter(start=datetime(2025, 1, 1), end=datetime(2025, 6, 30))
    outside = TimeFilter(start=datetime(2025, 6, 1))
    assert f.accepts(r, inside)
    assert not f.accepts(r, outside)


def test_content_dates_in_several_formats():
    dates = extract_content_dates("On Nov. 5, 2025 and 12 March 2024, then 2026-01-31. Not February 30, 2025.")
    assert sorted(d.isoformat() for d in dates) == ["2024-03-12", "2025-11-05", "2026-01-31"]


async def test_score_blends_native_quality_and_authority():
    r = RawWebResult(title="Rates held", url="https://www.reuters.com/markets", content=ARTICLE, score=0.8)
    item = _retriever([]).score(r)

    q = score_quality(r.title, r.content).overall
    expected = min(1.0, (0.5 * 0.8 + 0.2 * q + 0.3 * 0.92) * 1.2)
    assert item.raw_score == pytest.approx(expected)
    assert item.metadata["authority_source"] == "exact"
    assert item.id == "https://reuters.com/markets"


def test_missing_native_score_defaults_to_half():
    r = RawWebResult(title="t", url="https://unknown.example.xyz/a", content=ARTICLE)
    item = _retriever([]).score(r)
    assert item.metadata["native_score"] == 0.5


async def test_provider_failure_propagates_as_provider_error():
    retriever = WebRetriever(
        FakeWebSearch(error=provider_down("tavily")), call=ExternalCall("web-search", retry=NO_RETRY)
    )
    with pytest.raises(ProviderError):
        await retriever.retrieve("anything")


@pytest.mark.parametrize(
    "url,score,source",
    [
        ("https://www.reuters.com/world", 0.92, "exact"),
        ("https://data.cdc.gov/page", 0.90, "pattern"),
        ("https://www.mit.edu/", 0.85, "pattern"),
        ("https://example.org/about", 0.70, "tld"),
        ("https://unknown.example.xyz/", 0.50, "default"),
        ("https://www.pinterest.com/pin/1", 0.20 * 0.7, "exact"),
    ],
)
def test_domain_authority_lookup_order(url, score, source):
    a = DomainAuthority().score(url)
    assert a.score == pytest.approx(score)
    assert a.source == source


def test_custom_authority_overrides_the_list():
    a = DomainAuthority(AuthorityConfig(custom_scores={"reuters.com": 40})).score("https://reuters.com/x")
    assert a.score == pytest.approx(0.4)


def test_authority_boost_and_penalty_are_clamped():
    auth = DomainAuthority()
    assert auth.adjust(0.9, auth.score("https://reuters.com")) == 1.0
    assert auth.adjust(0.5, auth.score("https://pinterest.com")) == pytest.approx(0.45)
    assert auth.adjust(0.5, auth.score("https://forum.example.xyz")) == pytest.approx(0.6)


def test_extract_domain_strips_www():
    assert extract_domain("https://WWW.Example.com:8080/path") == "example.com"


def test_url_normalization_drops_tracking_and_fragments():
    assert normalize_url("HTTPS://www.Example.com/a/?utm_source=x&b=2#top") == "https://example.com/a?b=2"


def test_web_dedup_keeps_higher_quality_member():
    a = web_item("https://www.example.com/story/?utm_campaign=z", "shared text", 0.4)
    b = web_item("https://example.com/story", "shared text", 0.9)
    c = web_item("https://other.example.net/x", "completely different report", 0.5)
    kept = dedupe_web([a, b, c])
    assert [k.source_ref.url for k in kept] == ["https://example.com/story", "https://other.example.net/x"]


def test_quality_prefers_structured_articles():
    good = score_quality("Rates held", ARTICLE)
    poor = score_quality("", "ok")
    assert 0.0 <= poor.overall < good.overall <= 1.0
