from __future__ import annotations

"""Exhaustive cosine-similarity ranking over the in-memory corpus."""

import math
from typing import Sequence

from src.rag.types import Corpus, DimensionMismatch, RankedHit, SourceBoost

MAX_SCORE = 0.999


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity, returning 0.0 when either norm is zero."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _boost_for(source_file: str, boosts: Sequence[SourceBoost]) -> float:
    lowered = source_file.lower()
    return sum(rule.boost for rule in boosts if rule.pattern and rule.pattern.lower() in lowered)


def rank(
    query: Sequence[float],
    corpus: Corpus,
    k: int,
    min_score: float,
    boosts: Sequence[SourceBoost] = (),
) -> list[RankedHit]:
    """Score every entry, keep those above `min_score`, return the top `k`.

    Ties keep corpus order because the sort is stable.
    """
    if len(query) != corpus.dimension:
        raise DimensionMismatch(corpus.dimension, len(query))
    if k <= 0:
        return []
    hits: list[RankedHit] = []
    for entry in corpus.entries:
        score = cosine_similarity(query, entry.embedding)
        if boosts:
            score += _boost_for(entry.source_file, boosts)
        score = min(score, MAX_SCORE)
        if score < min_score:
            continue
        hits.append(
            RankedHit(
                id=entry.id,
                score=score,
                source_file=entry.source_file,
                range_start=entry.range_start,
                range_end=entry.range_end,
            )
        )
    hits.sort(key=lambda hit: hit.score, reverse=True)
    return hits[:k]
