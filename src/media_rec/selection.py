"""
Greedy diversity-aware selection (MMR-style).

At every step each remaining candidate's diversity is recomputed against
what has already been picked, blended with its (fixed) base score, and the
single best candidate is taken. The input pool is never mutated; selected
items are copies carrying their diversity and recomputed final score.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field

from .config import DEFAULT_WEIGHTS, SELECTION_RANK_WINDOW
from .scoring import ScoredCandidate, with_diversity

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    selected: list[ScoredCandidate] = field(default_factory=list)
    pool: list[ScoredCandidate] = field(default_factory=list)
    # item_id -> rank it received (or would have received) in greedy order
    ranks: dict[str, int] = field(default_factory=dict)


def _genre_diversity(genres, selected_genres: Counter) -> float | None:
    if not genres:
        return None
    overlap = sum(1 for g in genres if g in selected_genres)
    return 1 - overlap / len(genres)


def diversity_boost(
    candidate: ScoredCandidate,
    selected_genres: Counter,
    selected_networks: Counter | None,
    selection_count: int,
) -> float:
    """
    Incremental diversity in [0, 1] against the current selection.

    Genre novelty carries 60%; the remaining 40% is network spread for
    series, or genre novelty again for movies. Missing data is neutral.
    """
    genre_div = _genre_diversity(candidate.genres, selected_genres)
    boost = 0.3 if genre_div is None else genre_div * 0.6

    if selected_networks is not None:
        if candidate.network and selection_count > 0:
            boost += (1 - selected_networks[candidate.network] / selection_count) * 0.4
        else:
            boost += 0.2
    else:
        boost += 0.2 if genre_div is None else genre_div * 0.4
    return boost


def _title_key(candidate: ScoredCandidate) -> str:
    return f"{candidate.title.lower()}|{candidate.year or 'unknown'}"


def select_diverse(
    pool: list[ScoredCandidate],
    target_count: int,
    diversity_weight: float | None = None,
    weights: dict[str, float] | None = None,
    use_network_diversity: bool = False,
    rank_window: int = SELECTION_RANK_WINDOW,
) -> SelectionResult:
    """
    Pick up to ``target_count`` candidates from ``pool``.

    Greedy selection continues ``rank_window`` places past ``target_count``
    so unselected candidates get the rank they would have received; the
    rest of the pool follows in base-score order. Entries sharing a title
    and year with an already-picked item (other versions of the same
    content) are deferred until nothing else remains.

    Args:
        pool: Scored candidates; their ``final_score`` is the base score
        target_count: K; 0 yields an empty selection
        diversity_weight: Blend factor; defaults to ``weights['diversity']``
        weights: Scorer weights used to recompute final scores
        use_network_diversity: Track network spread (series)
        rank_window: Extra greedy steps used only for ranking
    """
    weights = weights or DEFAULT_WEIGHTS
    if diversity_weight is None:
        diversity_weight = weights['diversity']
    pool = list(pool)
    result = SelectionResult(pool=pool)
    if target_count <= 0 or not pool:
        return result

    ordered: list[ScoredCandidate] = []
    selected_genres: Counter = Counter()
    selected_networks: Counter | None = Counter() if use_network_diversity else None
    taken_titles: set[str] = set()
    remaining = list(range(len(pool)))
    seen_ids: set[str] = set()

    greedy_limit = target_count + max(rank_window, 0)
    while remaining and len(ordered) < greedy_limit:
        best_pos = None
        best_key = None
        best_boost = 0.0
        fallback_pos = None
        fallback_key = None
        fallback_boost = 0.0

        for pos, idx in enumerate(remaining):
            candidate = pool[idx]
            boost = diversity_boost(candidate, selected_genres, selected_networks, len(ordered))
            adjusted = candidate.final_score * (1 - diversity_weight) + boost * diversity_weight
            # Higher adjusted, then higher base, then earlier in the pool.
            key = (adjusted, candidate.final_score, -idx)
            if _title_key(candidate) in taken_titles:
                if fallback_key is None or key > fallback_key:
                    fallback_pos, fallback_key, fallback_boost = pos, key, boost
                continue
            if best_key is None or key > best_key:
                best_pos, best_key, best_boost = pos, key, boost

        if best_pos is None:
            best_pos, best_boost = fallback_pos, fallback_boost

        idx = remaining.pop(best_pos)
        candidate = pool[idx]
        if candidate.item_id in seen_ids:
            logger.warning(f"Duplicate candidate id {candidate.item_id} in pool, skipping")
            continue
        seen_ids.add(candidate.item_id)

        taken_titles.add(_title_key(candidate))
        selected_genres.update(candidate.genres)
        if selected_networks is not None and candidate.network:
            selected_networks[candidate.network] += 1

        ordered.append(with_diversity(candidate, best_boost, weights))
        result.ranks[candidate.item_id] = len(ordered)

    next_rank = len(ordered)
    for idx in sorted(remaining, key=lambda i: (-pool[i].final_score, i)):
        item_id = pool[idx].item_id
        if item_id in seen_ids:
            continue
        seen_ids.add(item_id)
        next_rank += 1
        result.ranks[item_id] = next_rank

    result.selected = ordered[:target_count]
    return result
