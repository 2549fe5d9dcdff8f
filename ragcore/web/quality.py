from __future__ import annotations

import re
from dataclasses import dataclass

_SENTENCE_END_RE = re.compile(r"[.!?]+(?:\s|$)")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_FORMATTING_MARKERS = ("\n-", "\n*", "\n1.", "<h", "#")


@dataclass(frozen=True)
class QualityConfig:
    length_weight: float = 0.25
    readability_weight: float = 0.30
    structure_weight: float = 0.25
    completeness_weight: float = 0.20
    min_length: int = 50
    optimal_length: int = 500
    max_length: int = 5000
    min_words_per_sentence: int = 5
    max_words_per_sentence: int = 25
    min_sentences: int = 3
    min_paragraphs: int = 1
    require_title: bool = True
    min_words: int = 20
    optimal_words: int = 200


@dataclass(frozen=True)
class QualityScore:
    overall: float
    length: float
    readability: float
    structure: float
    completeness: float


def _clamp(x: float) -> float:
    return min(1.0, max(0.0, x))


def _length_score(n: int, c: QualityConfig) -> float:
    if n < c.min_length:
        return n / c.min_length
    if n <= c.optimal_length:
        return 1.0
    if n <= c.max_length:
        return 1.0 - min(0.3, (n - c.optimal_length) / (c.max_length - c.optimal_length))
    return max(0.3, 1.0 - min(0.5, (n - c.max_length) / c.max_length))


def _readability(word_count: int, sentence_count: int, c: QualityConfig) -> float:
    if word_count == 0:
        return 0.0
    avg = word_count / sentence_count
    if avg < c.min_words_per_sentence:
        length = max(0.3, avg / c.min_words_per_sentence)
    elif avg > c.max_words_per_sentence:
        length = 1.0 - min(0.5, (avg - c.max_words_per_sentence) / c.max_words_per_sentence)
    else:
        length = 1.0
    count = min(1.0, sentence_count / c.min_sentences)
    return _clamp(length * 0.6 + count * 0.4)


def _structure(title: str, paragraphs: int, content: str, c: QualityConfig) -> float:
    score = 0.0
    if not c.require_title or (title.strip() and title != "Untitled"):
        score += 0.3
    if paragraphs >= c.min_paragraphs:
        score += 0.4 * min(1.0, paragraphs / max(2, c.min_paragraphs))
    else:
        score += 0.4 * (paragraphs / c.min_paragraphs)
    if any(m in content for m in _FORMATTING_MARKERS):
        score += 0.3
    elif paragraphs > 1:
        score += 0.15
    return _clamp(score)


def _completeness(n: int, word_count: int, c: QualityConfig) -> float:
    # long pages are penalized less here than in the length factor
    if n < c.min_length:
        length = n / c.min_length
    elif n <= c.optimal_length:
        length = 1.0
    elif n <= c.max_length:
        length = 1.0 - min(0.3, (n - c.optimal_length) / (c.max_length - c.optimal_length))
    else:
        length = 1.0 - min(0.5, (n - c.max_length) / c.max_length)

    if word_count < c.min_words:
        words = word_count / c.min_words
    elif word_count <= c.optimal_words:
        words = 1.0
    else:
        words = 1.0 - min(0.2, (word_count - c.optimal_words) / c.optimal_words)
    return _clamp(length * 0.6 + words * 0.4)


def score_quality(title: str, content: str, config: QualityConfig = QualityConfig()) -> QualityScore:
    content = content or ""
    words = content.split()
    sentences = max(1, len(_SENTENCE_END_RE.findall(content)))
    paragraphs = max(1, len([p for p in _PARAGRAPH_RE.split(content) if p.strip()]))

    length = _length_score(len(content), config)
    readability = _readability(len(words), sentences, config)
    structure = _structure(title or "", paragraphs, content, config)
    completeness = _completeness(len(content), len(words), config)

    overall = (
        length * config.length_weight
        + readability * config.readability_weight
        + structure * config.structure_weight
        + completeness * config.completeness_weight
    )
    return QualityScore(
        overall=_clamp(overall),
        length=length,
        readability=readability,
        structure=structure,
        completeness=completeness,
    )
