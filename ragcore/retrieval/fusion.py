from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ragcore.core.types import RankedItem, RetrievedItem
from ragcore.retrieval.similarity import jaccard, word_set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FusionWeights:
    semantic: float = 0.6
    keyword: float = 0.4

    def normalized(self) -> "FusionWeights":
        total = self.semantic + self.keyword
        if total <= 0:
            return FusionWeights()
        return FusionWeights(semantic=self.semantic / total, keyword=self.keyword / total)


WEIGHT_PRESETS: Dict[str, FusionWeights] = {
    "balanced": FusionWeights(0.6, 0.4),
    "semantic_heavy": FusionWeights(0.8, 0.2),
    "keyword_heavy": FusionWeights(0.3, 0.7),
    "equal": FusionWeights(0.5, 0.5),
}


@dataclass(frozen=True)
class ABVariant:
    name: str
    weights: FusionWeights
    traffic_pct: int


DEFAULT_AB_VARIANTS: Tuple[ABVariant, ...] = (
    ABVariant("balanced", WEIGHT_PRESETS["balanced"], 50),
    ABVariant("semantic_heavy", WEIGHT_PRESETS["semantic_heavy"], 30),
    ABVariant("keyword_heavy", WEIGHT_PRESETS["keyword_heavy"], 20),
)


@dataclass(frozen=True)
class FusionConfig:
    weights: FusionWeights = FusionWeights()
    dedup_threshold: float = 0.85
    min_score: float = 0.0
    max_results: Optional[int] = 20
    diversity: bool = False
    mmr_lambda: float = 0.7
    mmr_max_results: int = 10
    ab_testing: bool = False
    ab_variants: Tuple[ABVariant, ...] = DEFAULT_AB_VARIANTS


def weights_for_preset(name: str) -> FusionWeights:
    return WEIGHT_PRESETS.get(name, WEIGHT_PRESETS["balanced"])


def select_weights(
    user_id: str,
    variants: Sequence[ABVariant] = DEFAULT_AB_VARIANTS,
    default: FusionWeights = FusionWeights(),
) -> FusionWeights:
    """Stable A/B bucket for a user: same id, same weights, in every process."""
    if not variants:
        return default
    bucket = int(hashlib.md5(user_id.encode("utf-8")).hexdigest(), 16) % 100
    cumulative = 0
    for v in variants:
        cumulative += v.traffic_pct
        if bucket < cumulative:
            return v.weights
    return default


def normalize_scores(items: Sequence[RetrievedItem]) -> List[float]:
    """Divide by the list's own maximum so each side lands in [0, 1]."""
    if not items:
        return []
    top = max(it.raw_score for it in items)
    if top <= 0:
        return [0.0] * len(items)
    return [max(0.0, it.raw_score) / top for it in items]


def merge_variants(result_sets: Sequence[Tuple[str, Sequence[RetrievedItem]]]) -> List[RetrievedItem]:
    """
    Merge per-variant result lists: one entry per identity carrying the
    maximum score seen and every variant that found it.
    """
    best: Dict[Tuple[str, ...], RetrievedItem] = {}
    found_by: Dict[Tuple[str, ...], List[str]] = {}
    for variant, items in result_sets:
        for it in items:
            key = it.identity
            hits = found_by.setdefault(key, [])
            if variant not in hits:
                hits.append(variant)
            if key not in best or it.raw_score > best[key].raw_score:
                best[key] = it

    merged = [replace(it, variants=tuple(found_by[key])) for key, it in best.items()]
    merged.sort(key=lambda it: it.raw_score, reverse=True)
    return merged


def fuse(
    semantic: Sequence[RetrievedItem],
    keyword: Sequence[RetrievedItem],
    weights: FusionWeights = FusionWeights(),
) -> List[RankedItem]:
    """
    combined = w_s * norm_semantic + w_k * norm_keyword, with weights
    normalized to sum to 1. Items on both sides are merged by identity.
    """
    w = weights.normalized()
    slots: Dict[Tuple[str, ...], list] = {}  # identity -> [item, s, k, provenance]

    for it, s in zip(semantic, normalize_scores(semantic)):
        slot = slots.setdefault(it.identity, [it, 0.0, 0.0, []])
        slot[1] = max(slot[1], s)
        if it.retriever not in slot[3]:
            slot[3].append(it.retriever)

    for it, k in zip(keyword, normalize_scores(keyword)):
        slot = slots.setdefault(it.identity, [it, 0.0, 0.0, []])
        slot[2] = max(slot[2], k)
        if it.retriever not in slot[3]:
            slot[3].append(it.retriever)

    fused: List[RankedItem] = []
    for item, s, k, provenance in slots.values():
        combined = min(1.0, w.semantic * s + w.keyword * k)
        fused.append(
            RankedItem(
                item=item,
                normalized_score=max(s, k),
                combined_score=combined,
                provenance=tuple(provenance),
            )
        )
    return sort_ranked(fused)


def sort_ranked(items: Sequence[RankedItem]) -> List[RankedItem]:
    # identity tie-break keeps output stable across runs
    return sorted(items, key=lambda r: (-r.combined_score, r.identity))


def deduplicate(items: Sequence[RankedItem], threshold: float = 0.85) -> List[RankedItem]:
    """
    Collapse exact identities, then near-duplicates (word-set Jaccard >=
    threshold), keeping the higher-scoring member. Idempotent.
    """
    kept: List[RankedItem] = []
    kept_words = []
    seen = set()
    for r in sort_ranked(items):
        if r.identity in seen:
            continue
        words = word_set(r.content)
        if any(jaccard(words, other) >= threshold for other in kept_words):
            continue
        seen.add(r.identity)
        kept.append(r)
        kept_words.append(words)
    return kept


def mmr(
    items: Sequence[RankedItem],
    lambda_: float = 0.7,
    max_results: int = 10,
    similarity: Optional[Callable[[RankedItem, RankedItem], float]] = None,
) -> List[RankedItem]:
    """
    Maximal marginal relevance:
      score = lambda * relevance - (1 - lambda) * max_sim(candidate, selected)
    The top item is always picked first. Output is re-sorted by combined score.
    """
    pool = sort_ranked(items)
    if not pool or max_results <= 0:
        return []
    lambda_ = max(0.0, min(1.0, lambda_))

    words = {id(r): word_set(r.content) for r in pool}
    sim = similarity or (lambda a, b: jaccard(words[id(a)], words[id(b)]))

    selected = [pool.pop(0)]
    while pool and len(selected) < max_results:
        best_i, best_score = 0, float("-inf")
        for i, cand in enumerate(pool):
            max_sim = max(sim(cand, s) for s in selected)
            score = lambda_ * cand.combined_score - (1 - lambda_) * max_sim
            if score > best_score:
                best_i, best_score = i, score
        selected.append(pool.pop(best_i))
    return sort_ranked(selected)


def combine(
    semantic: Sequence[RetrievedItem],
    keyword: Sequence[RetrievedItem],
    config: FusionConfig = FusionConfig(),
    user_id: Optional[str] = None,
    weights: Optional[FusionWeights] = None,
) -> List[RankedItem]:
    """Normalize, fuse, dedupe, optionally diversify, filter, cap."""
    if weights is None:
        if config.ab_testing and user_id:
            weights = select_weights(user_id, config.ab_variants, config.weights)
        else:
            weights = config.weights

    ranked = deduplicate(fuse(semantic, keyword, weights), config.dedup_threshold)
    if config.diversity:
        ranked = mmr(ranked, config.mmr_lambda, config.mmr_max_results)
    ranked = [r for r in ranked if r.combined_score >= config.min_score]
    if config.max_results is not None:
        ranked = ranked[: config.max_results]

    logger.debug(
        "fused %d semantic + %d keyword -> %d items (weights %.2f/%.2f)",
        len(semantic), len(keyword), len(ranked), weights.semantic, weights.keyword,
    )
    return ranked
