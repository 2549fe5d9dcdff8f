import pytest

from conftest import doc_item, web_item
from ragcore.retrieval.fusion import (
    DEFAULT_AB_VARIANTS,
    FusionConfig,
    FusionWeights,
    combine,
    deduplicate,
    fuse,
    merge_variants,
    mmr,
    normalize_scores,
    select_weights,
    weights_for_preset,
)


def test_documents_and_web_fused_in_weighted_order():
    docs = [
        doc_item("d-high", "solar panel subsidies for households", 0.9),
        doc_item("d-low", "municipal tax rebate schedule overview", 0.4),
    ]
    web = [
        web_item("https://a.example.org/x", "national grid battery storage rollout", 0.8),
        web_item("https://b.example.org/y", "regional wind farm permits", 0.3),
    ]

    fused = fuse(docs, web, FusionWeights(0.6, 0.4))

    assert [r.item.id for r in fused] == ["d-high", "https://a.example.org/x", "d-low", "https://b.example.org/y"]
    expected = [0.6, 0.4, 0.6 * 0.4 / 0.9, 0.4 * 0.3 / 0.8]
    for r, e in zip(fused, expected):
        assert r.combined_score == pytest.approx(e)


@pytest.mark.parametrize("w_s", [0.0, 0.1, 0.25, 0.5, 0.6, 0.9, 1.0])
def test_combined_scores_stay_in_unit_interval(w_s):
    semantic = [doc_item(f"s{i}", f"semantic text {i}", s) for i, s in enumerate([0.91, 0.5, 0.05, 0.0])]
    keyword = [doc_item(f"s{i}", f"semantic text {i}", s, retriever="keyword") for i, s in enumerate([12.0, 3.3, 0.7])]
    keyword.append(doc_item("k-only", "keyword only chunk", 8.0, retriever="keyword"))

    for r in fuse(semantic, keyword, FusionWeights(w_s, 1 - w_s)):
        assert 0.0 <= r.combined_score <= 1.0


def test_item_found_by_both_retrievers_is_merged():
    semantic = [doc_item("c1", "alpha beta", 0.8), doc_item("c2", "gamma delta", 0.4)]
    keyword = [doc_item("c1", "alpha beta", 5.0, retriever="keyword")]

    fused = fuse(semantic, keyword, FusionWeights(0.5, 0.5))

    assert len(fused) == 2
    top = fused[0]
    assert top.item.id == "c1"
    assert top.combined_score == pytest.approx(1.0)
    assert top.provenance == ("semantic", "keyword")


def test_weights_are_normalized():
    assert FusionWeights(3, 1).normalized() == FusionWeights(0.75, 0.25)
    assert FusionWeights(0, 0).normalized() == FusionWeights()


def test_unknown_preset_falls_back_to_balanced():
    assert weights_for_preset("semantic_heavy") == FusionWeights(0.8, 0.2)
    assert weights_for_preset("nope") == FusionWeights(0.6, 0.4)


def test_normalize_scores_handles_empty_and_non_positive():
    assert normalize_scores([]) == []
    assert normalize_scores([doc_item("a", "x", 0.0), doc_item("b", "y", -1.0)]) == [0.0, 0.0]


def test_deduplicate_is_idempotent():
    items = fuse(
        [
            doc_item("a", "the quick brown fox jumps over the lazy dog", 0.9),
            doc_item("b", "the quick brown fox jumps over the lazy dog today", 0.7),
            doc_item("c", "completely different content about tax law", 0.6),
        ],
        [doc_item("a", "the quick brown fox jumps over the lazy dog", 2.0, retriever="keyword")],
    )

    once = deduplicate(items, 0.85)
    twice = deduplicate(once, 0.85)

    assert [r.item.id for r in once] == ["a", "c"]
    assert once == twice


def test_combine_twice_yields_the_same_set():
    semantic = [doc_item(f"c{i}", f"chunk number {i} about topic {i % 3}", 1.0 - i * 0.1) for i in range(6)]
    first = combine(semantic, [], FusionConfig(dedup_threshold=0.85))
    again = deduplicate(first, 0.85)
    assert {r.identity for r in first} == {r.identity for r in again}


def test_combine_applies_min_score_and_cap():
    semantic = [doc_item(f"c{i}", f"unique text {i} {'x' * i}", 1.0 - i * 0.2) for i in range(5)]
    out = combine(semantic, [], FusionConfig(min_score=0.3, max_results=2))
    assert len(out) == 2
    assert all(r.combined_score >= 0.3 for r in out)


def test_merge_variants_keeps_max_score_and_variants():
    a = doc_item("c1", "alpha", 0.5)
    b = doc_item("c1", "alpha", 0.7)
    merged = merge_variants([("q1", [a]), ("q2", [b])])
    assert len(merged) == 1
    assert merged[0].raw_score == 0.7
    assert merged[0].variants == ("q1", "q2")


def test_ab_selection_is_stable_and_follows_traffic_split():
    assert select_weights("user-42") == select_weights("user-42")

    counts = {}
    for i in range(2000):
        w = select_weights(f"user-{i}", DEFAULT_AB_VARIANTS)
        counts[w] = counts.get(w, 0) + 1
    shares = {v.name: counts.get(v.weights, 0) / 2000 for v in DEFAULT_AB_VARIANTS}
    assert shares["balanced"] == pytest.approx(0.5, abs=0.05)
    assert shares["semantic_heavy"] == pytest.approx(0.3, abs=0.05)
    assert shares["keyword_heavy"] == pytest.approx(0.2, abs=0.05)


def test_mmr_prefers_diverse_items():
    items = fuse(
        [
            doc_item("a", "solar power subsidies for homes", 0.95),
            doc_item("b", "solar power subsidies for homes and farms", 0.9),
            doc_item("c", "wind turbine maintenance costs", 0.6),
        ],
        [],
    )
    picked = mmr(items, lambda_=0.5, max_results=2)
    assert {r.item.id for r in picked} == {"a", "c"}
