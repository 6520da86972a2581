"""
Response comparison scoring.

Computes five similarity dimensions over the usable responses of a
query and combines them into a weighted aggregate:

- semantic   (35%): word overlap, term-frequency cosine and edit distance
- sentiment  (20%): spread of per-response polarity
- factual    (25%): overlap of numbers, dates, names and key terms
- length     (10%): coefficient of variation of content length
- timing     (10%): coefficient of variation of latency

Everything here is pure: identical inputs give identical metrics.
"""
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Sequence

import numpy as np

from app.core.exceptions import InsufficientDataError
from app.schemas.query import MIN_SCORABLE_RESPONSES, ComparisonMetrics, ModelResponseView
from .sentiment import polarity

WEIGHTS = {
    "semantic": 0.35,
    "sentiment": 0.20,
    "factual": 0.25,
    "length": 0.10,
    "timing": 0.10,
}

NUMBER_TOLERANCE = 0.01

STOP_WORDS = frozenset({
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "this", "that", "these", "those",
})

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_NUMBER = re.compile(r"\d+\.?\d*")
_DATE = re.compile(r"\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2}|\b\d{4}\b")
_PROPER_NOUN = re.compile(r"\b[A-Z][a-z]+\b")
_KEY_TERM = re.compile(r"\b\w{4,}\b")


@dataclass
class Facts:
    """Factual elements pulled out of one response."""
    numbers: List[float] = field(default_factory=list)
    dates: List[str] = field(default_factory=list)
    proper_nouns: List[str] = field(default_factory=list)
    key_terms: List[str] = field(default_factory=list)


def score(responses: Sequence[ModelResponseView]) -> ComparisonMetrics:
    """
    Score how alike the usable responses are.

    Only COMPLETED responses with non-empty content take part.

    Raises:
        InsufficientDataError: fewer than two usable responses
    """
    valid = [r for r in responses if r.is_valid]
    if len(valid) < MIN_SCORABLE_RESPONSES:
        raise InsufficientDataError(found=len(valid))

    contents = [r.content for r in valid]

    semantic = _clamp_score(semantic_similarity(contents))
    length = _clamp_score(length_consistency(contents))
    sentiment = _clamp_score(sentiment_alignment(contents))
    factual = _clamp_score(factual_consistency(contents))
    timing = _clamp_score(timing_consistency([r.latency_ms for r in valid]))

    aggregate = (
        semantic * WEIGHTS["semantic"]
        + sentiment * WEIGHTS["sentiment"]
        + factual * WEIGHTS["factual"]
        + length * WEIGHTS["length"]
        + timing * WEIGHTS["timing"]
    )
    aggregate = min(100.0, max(0.0, round(aggregate, 2)))

    metrics = ComparisonMetrics(
        semantic_similarity=semantic,
        length_consistency=length,
        sentiment_alignment=sentiment,
        factual_consistency=factual,
        timing_consistency=timing,
        aggregate_score=aggregate,
    )
    metrics.explanation = explain(metrics)
    return metrics


# === Semantic ===

def normalize_text(text: str) -> str:
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def semantic_similarity(contents: Sequence[str]) -> int:
    normalized = [normalize_text(c) for c in contents]
    similarities = []
    for a, b in combinations(normalized, 2):
        similarities.append(
            0.3 * jaccard_similarity(a, b)
            + 0.4 * cosine_similarity(a, b)
            + 0.3 * levenshtein_similarity(a, b)
        )
    return _round_half_up(float(np.mean(similarities)) * 100)


def jaccard_similarity(text1: str, text2: str) -> float:
    words1, words2 = set(text1.split()), set(text2.split())
    union = words1 | words2
    if not union:
        return 1.0
    return len(words1 & words2) / len(union)


def cosine_similarity(text1: str, text2: str) -> float:
    counts1, counts2 = Counter(text1.split()), Counter(text2.split())
    if not counts1 and not counts2:
        return 1.0
    vocab = sorted(set(counts1) | set(counts2))
    v1 = np.array([counts1[w] for w in vocab], dtype=float)
    v2 = np.array([counts2[w] for w in vocab], dtype=float)
    magnitude = np.linalg.norm(v1) * np.linalg.norm(v2)
    if magnitude == 0:
        return 0.0
    return float(np.dot(v1, v2) / magnitude)


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, 1):
        current = [i]
        for j, c2 in enumerate(s2, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (c1 != c2),
            ))
        previous = current
    return previous[-1]


def levenshtein_similarity(text1: str, text2: str) -> float:
    max_length = max(len(text1), len(text2))
    if max_length == 0:
        return 1.0
    return (max_length - levenshtein_distance(text1, text2)) / max_length


# === Length / timing / sentiment ===

def coefficient_of_variation(values: Sequence[float]) -> float:
    """Population stddev over mean; 0 when the mean is 0."""
    data = np.asarray(values, dtype=float)
    mean = float(data.mean())
    if mean == 0:
        return 0.0
    return float(data.std()) / mean


def length_consistency(contents: Sequence[str]) -> int:
    cv = coefficient_of_variation([len(c) for c in contents])
    return _round_half_up((1 - min(cv, 1.0)) * 100)


def timing_consistency(latencies: Sequence[int]) -> int:
    cv = min(coefficient_of_variation(latencies), 2.0)
    return _round_half_up(max((1 - cv / 2) * 100, 0.0))


def sentiment_alignment(contents: Sequence[str]) -> int:
    # Polarity range is [-1, 1], so 2.0 bounds the stddev
    spread = float(np.std([polarity(c) for c in contents]))
    return _round_half_up((1 - min(spread / 2, 1.0)) * 100)


# === Factual ===

def extract_facts(text: str) -> Facts:
    return Facts(
        numbers=[float(n) for n in _NUMBER.findall(text)],
        dates=_DATE.findall(text),
        proper_nouns=_PROPER_NOUN.findall(text),
        key_terms=[t for t in _KEY_TERM.findall(text.lower()) if t not in STOP_WORDS],
    )


def fact_overlap(facts1: Facts, facts2: Facts) -> float:
    """Share of facts1's elements that also appear in facts2."""
    total = 0
    matched = 0

    for number in facts1.numbers:
        total += 1
        if any(abs(number - other) <= NUMBER_TOLERANCE for other in facts2.numbers):
            matched += 1

    for date in facts1.dates:
        total += 1
        if date in facts2.dates:
            matched += 1

    nouns2 = {n.lower() for n in facts2.proper_nouns}
    for noun in {n.lower() for n in facts1.proper_nouns}:
        total += 1
        if noun in nouns2:
            matched += 1

    terms2 = set(facts2.key_terms)
    for term in set(facts1.key_terms):
        total += 1
        if term in terms2:
            matched += 1

    return matched / total if total else 0.0


def factual_consistency(contents: Sequence[str]) -> int:
    facts = [extract_facts(c) for c in contents]
    overlaps = [fact_overlap(a, b) for a, b in combinations(facts, 2)]
    return _round_half_up(float(np.mean(overlaps)) * 100)


# === Presentation helpers ===

def similarity_category(value: float) -> str:
    if value >= 80:
        return "high"
    if value >= 60:
        return "medium"
    return "low"


def explain(metrics: ComparisonMetrics) -> str:
    """One-sentence, human-readable summary of the metrics."""
    overall = {
        "high": "very similar",
        "medium": "moderately similar",
        "low": "quite different",
    }[similarity_category(metrics.aggregate_score)]

    parts = [
        f"Semantic similarity is {similarity_category(metrics.semantic_similarity)} "
        f"({metrics.semantic_similarity}%)",
        f"sentiment alignment is {similarity_category(metrics.sentiment_alignment)} "
        f"({metrics.sentiment_alignment}%)",
        f"factual consistency is {similarity_category(metrics.factual_consistency)} "
        f"({metrics.factual_consistency}%)",
    ]
    return f"The responses are {overall} overall. {', '.join(parts)}."


def compare_pair(first: ModelResponseView, second: ModelResponseView) -> Dict:
    """Head-to-head comparison of two responses."""
    metrics = score([first, second])
    return {
        "similarity": metrics.aggregate_score,
        "category": similarity_category(metrics.aggregate_score),
        "explanation": metrics.explanation,
        "breakdown": {
            "semantic": metrics.semantic_similarity,
            "sentiment": metrics.sentiment_alignment,
            "factual": metrics.factual_consistency,
            "length": metrics.length_consistency,
            "timing": metrics.timing_consistency,
        },
    }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_score(value: int) -> int:
    return max(0, min(100, value))
