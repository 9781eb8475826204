"""
Multi-factor scoring for recommendation candidates.

Every sub-score lives in [0, 1]. The final score is the plain weighted sum
of the four sub-scores; weights are taken as given and never renormalized.
"""
from collections import Counter
from dataclasses import dataclass, fields, replace
from typing import Iterable

from .config import DEFAULT_WEIGHTS, UNRATED_RATING_SCORE
from .retrieval import Candidate


@dataclass(frozen=True)
class ScoredCandidate(Candidate):
    similarity: float = 0.0
    novelty: float = 0.0
    rating_score: float = 0.0
    diversity: float = 0.0
    final_score: float = 0.0


def similarity_score(raw_similarity: float) -> float:
    """Map cosine similarity [-1, 1] onto [0, 1]."""
    return min(max((raw_similarity + 1.0) / 2.0, 0.0), 1.0)


def rating_score(rating: float | None) -> float:
    """
    Tiered score for a 0-10 community rating.

    8-10 -> 0.8-1.0, 7-8 -> 0.6-0.8, 6-7 -> 0.4-0.6, 5-6 -> 0.2-0.4,
    below 5 -> 0.0-0.2. Unrated items get a neutral 0.4. Out-of-range data
    (e.g. 101.0) is clamped.
    """
    if rating is None:
        return UNRATED_RATING_SCORE
    r = min(max(float(rating), 0.0), 10.0)
    if r >= 8:
        return 0.8 + (r - 8) * 0.1
    if r >= 7:
        return 0.6 + (r - 7) * 0.2
    if r >= 6:
        return 0.4 + (r - 6) * 0.2
    if r >= 5:
        return 0.2 + (r - 5) * 0.2
    return r / 25


def novelty_score(genres: Iterable[str], genre_counts: dict[str, int], total: int) -> float:
    """
    Reward partial novelty: some unfamiliar genres mixed with familiar ones.

    All-new genres are risky (the user never showed interest), all-familiar
    is boring. Items without genres are neutral (0.5).
    """
    genres = list(genres)
    if not genres:
        return 0.5

    if total == 0:
        per_genre = [0.5] * len(genres)
    else:
        per_genre = [1 - genre_counts.get(g, 0) / total for g in genres]
    avg = sum(per_genre) / len(per_genre)

    novel_ratio = sum(1 for g in genres if g not in genre_counts) / len(genres)
    if 0 < novel_ratio < 0.7:
        return 0.5 + avg * 0.4
    if novel_ratio >= 0.7:
        return 0.3 + avg * 0.2
    return 0.4 + avg * 0.2


def weighted_total(similarity: float, novelty: float, rating: float, diversity: float, weights: dict[str, float]) -> float:
    return (
        weights['similarity'] * similarity
        + weights['novelty'] * novelty
        + weights['rating'] * rating
        + weights['diversity'] * diversity
    )


def watched_genre_counts(watched_genres: Iterable[Iterable[str]]) -> tuple[dict[str, int], int]:
    counts = Counter(g for genres in watched_genres for g in genres)
    return dict(counts), sum(counts.values())


def score_candidate(
    candidate: Candidate,
    genre_counts: dict[str, int],
    total_genres: int,
    weights: dict[str, float],
) -> ScoredCandidate:
    sim = similarity_score(candidate.raw_similarity)
    nov = novelty_score(candidate.genres, genre_counts, total_genres)
    rat = rating_score(candidate.community_rating)
    return ScoredCandidate(
        **{f.name: getattr(candidate, f.name) for f in fields(Candidate)},
        similarity=sim,
        novelty=nov,
        rating_score=rat,
        diversity=0.0,
        final_score=weighted_total(sim, nov, rat, 0.0, weights),
    )


def score_candidates(
    candidates: list[Candidate],
    watched_genres: Iterable[Iterable[str]],
    weights: dict[str, float] | None = None,
) -> list[ScoredCandidate]:
    """
    Score and rank candidates, best first.

    Ties on final score fall back to raw similarity, then item id, so the
    ranking is fully deterministic.
    """
    weights = weights or DEFAULT_WEIGHTS
    counts, total = watched_genre_counts(watched_genres)
    scored = [score_candidate(c, counts, total, weights) for c in candidates]
    scored.sort(key=lambda s: (-s.final_score, -s.raw_similarity, s.item_id))
    return scored


def with_diversity(candidate: ScoredCandidate, diversity: float, weights: dict[str, float]) -> ScoredCandidate:
    """Copy of ``candidate`` with its diversity populated and final score recomputed."""
    return replace(
        candidate,
        diversity=diversity,
        final_score=weighted_total(candidate.similarity, candidate.novelty, candidate.rating_score, diversity, weights),
    )
