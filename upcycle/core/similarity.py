"""
Ranking of vector-index hits: semantic closeness blended with community rating.
"""

from dataclasses import dataclass
from typing import Iterable, List, Mapping

SIMILARITY_WEIGHT = 0.7
RATING_WEIGHT = 0.3
MAX_RATING = 5.0


def final_score(similarity: float, rating: float = 0.0) -> float:
    """Weighted blend: 70% similarity, 30% rating normalized from 0-5 to 0-1."""
    return SIMILARITY_WEIGHT * similarity + RATING_WEIGHT * (rating / MAX_RATING)


@dataclass
class RankedMatch:
    id: str
    similarity: float
    rating: float
    score: float


def rank_matches(hits: Iterable, ratings: Mapping[str, float], threshold: float = 0.0) -> List[RankedMatch]:
    """
    Score index hits that have a rating entry and clear the similarity threshold.

    Hits whose id is absent from ratings (unknown or not yet completed records)
    are dropped. The sort is stable, so equal scores keep index order.
    """
    ranked = []
    for hit in hits:
        if hit.id not in ratings or hit.score < threshold:
            continue
        rating = ratings[hit.id] or 0.0
        ranked.append(RankedMatch(
            id=hit.id,
            similarity=hit.score,
            rating=rating,
            score=final_score(hit.score, rating)
        ))

    ranked.sort(key=lambda match: match.score, reverse=True)
    return ranked
