from conftest import FakeScorer, doc_item, provider_down, ranked
from ragcore.rerank.reranker import RerankStage


def _items(n):
    return [ranked(doc_item(f"c{i}", f"chunk {i}", 0.9 - i * 0.05), 0.9 - i * 0.05) for i in range(n)]


async def test_scores_replace_fused_order_and_keep_top_m():
    items = _items(4)
    stage = RerankStage(FakeScorer([0.1, 0.3, 0.95, 0.5]), top_k=4, top_m=2)

    out = await stage.rerank("q", items)

    assert out.applied
    assert [r.item.id for r in out.items] == ["c2", "c3"]
    assert out.items[0].combined_score == 0.95
    assert out.items[0].provenance[-1] == "rerank"


async def test_only_top_k_are_sent_to_the_scorer():
    seen = []

    class Recording(FakeScorer):
        async def score(self, query, documents):
            seen.append(list(documents))
            return [0.5] * len(documents)

    await RerankStage(Recording(), top_k=3, top_m=3).rerank("q", _items(6))
    assert seen == [["chunk 0", "chunk 1", "chunk 2"]]


async def test_scorer_failure_returns_input_unchanged():
    items = _items(3)
    out = await RerankStage(FakeScorer(error=provider_down("cohere"))).rerank("q", items)
    assert not out.applied
    assert out.items == items
    assert out.error


async def test_slow_scorer_times_out_and_keeps_fused_order():
    items = _items(3)
    out = await RerankStage(FakeScorer(delay=0.5), timeout=0.02).rerank("q", items)
    assert not out.applied
    assert out.items == items


async def test_score_count_mismatch_is_ignored():
    items = _items(3)
    out = await RerankStage(FakeScorer([0.9])).rerank("q", items)
    assert not out.applied
    assert out.error == "score count mismatch"


async def test_empty_input_is_a_no_op():
    out = await RerankStage(FakeScorer()).rerank("q", [])
    assert out.items == [] and not out.applied
