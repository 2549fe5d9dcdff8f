import asyncio

import pytest

from ragcore.core.cache import TTLCache, normalize_text
from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def test_concurrent_misses_share_one_load():
    cache = TTLCache("test", ttl=60)
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return "value"

    results = await asyncio.gather(*(cache.get_or_load("k", loader) for _ in range(10)))

    assert results == ["value"] * 10
    assert calls == 1
    assert cache.misses == 1
    assert await cache.get_or_load("k", loader) == "value"
    assert cache.hits == 1


async def test_failed_load_is_shared_but_not_cached():
    cache = TTLCache("test", ttl=60)
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(0.01)
        if attempts == 1:
            raise RuntimeError("boom")
        return 42

    outcomes = await asyncio.gather(
        cache.get_or_load("k", flaky), cache.get_or_load("k", flaky), return_exceptions=True
    )
    assert all(isinstance(o, RuntimeError) for o in outcomes)
    assert await cache.get_or_load("k", flaky) == 42
    assert attempts == 2


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache("test", ttl=10, clock=clock)
    cache.set("k", "v")
    clock.now += 9.9
    assert cache.get("k") == "v"
    clock.now += 0.2
    assert cache.get("k") is None
    assert len(cache) == 0


def test_tag_invalidation_removes_only_tagged_entries():
    cache = TTLCache("test", ttl=60)
    cache.set("a", 1, tags=["user:1"])
    cache.set("b", 2, tags=["user:1", "doc:9"])
    cache.set("c", 3, tags=["user:2"])

    assert cache.invalidate_tag("user:1") == 2
    assert cache.get("a") is None and cache.get("b") is None
    assert cache.get("c") == 3
    assert cache.invalidate_tag("user:1") == 0


def test_oldest_entries_evicted_past_capacity():
    clock = FakeClock()
    cache = TTLCache("test", ttl=60, max_entries=2, clock=clock)
    for key in "abc":
        cache.set(key, key)
        clock.now += 1
    assert cache.get("a") is None
    assert cache.get("b") == "b" and cache.get("c") == "c"


@pytest.mark.parametrize("raw", ["What is RAG?", "  what   IS rag? ", "WHAT is\nrag?"])
def test_normalized_keys_collapse_case_and_spacing(raw):
    assert normalize_text(raw) == "what is rag?"


def test_explicit_invalidate_and_clear():
    cache = TTLCache("test", ttl=60)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.invalidate("a")
    assert not cache.invalidate("a")
    cache.clear()
    assert len(cache) == 0


async def test_cancelled_waiter_leaves_other_waiters_the_shared_value():
    cache = TTLCache("test", ttl=60)
    release = asyncio.Event()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await release.wait()
        return "value"

    t1, t2 = CancellationToken(), CancellationToken()
    r1 = asyncio.ensure_future(cache.get_or_load("k", loader, token=t1))
    r2 = asyncio.ensure_future(cache.get_or_load("k", loader, token=t2))
    await asyncio.sleep(0)

    t1.cancel("request 1 cancelled")
    with pytest.raises(PipelineCancelled, match="request 1 cancelled"):
        await r1

    release.set()
    assert await r2 == "value"
    assert calls == 1
    assert cache.get("k") == "value"


async def test_cancelled_token_does_not_start_a_load():
    cache = TTLCache("test", ttl=60)
    token = CancellationToken()
    token.cancel()

    async def loader():
        raise AssertionError("should not run")

    with pytest.raises(PipelineCancelled):
        await cache.get_or_load("k", loader, token=token)
    assert cache.misses == 0
