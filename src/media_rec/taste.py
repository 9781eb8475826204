import logging
import math
from dataclasses import dataclass, field

import numpy as np

from .config import (
    RATING_DISLIKE_THRESHOLD,
    RATING_MAX,
    WEIGHT_CAP_MULTIPLIER,
    POSITION_DECAY,
    PLAY_COUNT_MAX_BOOST,
    FAVORITE_BOOST,
    FAVORITE_BOOST_MANY,
    FAVORITE_BOOST_LOTS,
    COMMUNITY_RATING_BOOST_THRESHOLD,
    COMMUNITY_RATING_BOOST_BASE,
    COMMUNITY_RATING_BOOST_PER_POINT,
)
from .vectors import l2_normalize

logger = logging.getLogger(__name__)


@dataclass
class WatchHistoryEntry:
    item_id: str
    play_count: int = 1
    last_played_at: str | None = None
    is_favorite: bool = False
    user_rating: float | None = None
    community_rating: float | None = None
    genres: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict, user_rating: float | None = None) -> "WatchHistoryEntry":
        return cls(
            item_id=row['item_id'],
            play_count=row.get('play_count') or 1,
            last_played_at=row.get('last_played_at'),
            is_favorite=bool(row.get('is_favorite')),
            user_rating=user_rating,
            community_rating=row.get('community_rating'),
            genres=list(row.get('genres') or []),
        )


@dataclass
class TasteProfile:
    vector: np.ndarray
    source_count: int


def rating_multiplier(rating: float) -> float:
    """
    Weight multiplier for an explicit 1-10 rating.

    Ratings at or above the dislike threshold map linearly onto [1.0, 2.0]
    (threshold -> 1.0, 10 -> 2.0); anything lower gets 0 so the item drops
    out of the profile.
    """
    rating = min(max(rating, 0.0), RATING_MAX)
    if rating < RATING_DISLIKE_THRESHOLD:
        return 0.0
    return 1.0 + (rating - RATING_DISLIKE_THRESHOLD) / (RATING_MAX - RATING_DISLIKE_THRESHOLD)


def _favorite_boost(favorite_count: int) -> float:
    # Many favorites dilute what "favorite" means.
    if favorite_count > 20:
        return FAVORITE_BOOST_LOTS
    if favorite_count > 10:
        return FAVORITE_BOOST_MANY
    return FAVORITE_BOOST


def compute_item_weights(
    history: list[WatchHistoryEntry],
    embedded_ids: set[str] | None = None,
) -> list[float]:
    """
    Per-entry weights for a history ordered favorites first, then by play
    count, then by recency. Items with an explicit rating below the dislike
    threshold get weight 0.

    Weights are capped at a multiple of the mean weight of the entries in
    ``embedded_ids`` (all entries when None).
    """
    n = len(history)
    if n == 0:
        return []

    favorite_count = sum(1 for h in history if h.is_favorite)
    fav_boost = _favorite_boost(favorite_count)
    max_play_count = max(max(h.play_count for h in history), 1)

    weights = []
    for i, entry in enumerate(history):
        position = 1.0 - (i / n) * POSITION_DECAY

        play_boost = 1.0
        if entry.play_count > 1:
            # the most replayed title gets the full boost
            play_boost += math.log2(entry.play_count + 1) / math.log2(max_play_count + 1) * PLAY_COUNT_MAX_BOOST

        weight = position * play_boost
        if entry.is_favorite:
            weight *= fav_boost
        if entry.community_rating is not None and entry.community_rating >= COMMUNITY_RATING_BOOST_THRESHOLD:
            weight *= 1.0 + (entry.community_rating - COMMUNITY_RATING_BOOST_BASE) * COMMUNITY_RATING_BOOST_PER_POINT
        if entry.user_rating is not None:
            weight *= rating_multiplier(entry.user_rating)
        weights.append(weight)

    positive = [
        w for entry, w in zip(history, weights)
        if w > 0 and (embedded_ids is None or entry.item_id in embedded_ids)
    ]
    if positive:
        cap = (sum(positive) / len(positive)) * WEIGHT_CAP_MULTIPLIER
        weights = [min(w, cap) for w in weights]
    return weights


def build_taste_profile(history: list[WatchHistoryEntry], vectors: dict[str, np.ndarray]) -> TasteProfile | None:
    """
    Weighted mean of the embeddings of watched items, L2-normalized.

    Args:
        history: Ordered watch history
        vectors: item_id -> embedding for the items that have one

    Returns:
        TasteProfile, or None when no watched item has both a vector and a
        positive weight.
    """
    weights = compute_item_weights(history, {h.item_id for h in history if vectors.get(h.item_id) is not None})

    rows = []
    row_weights = []
    missing = 0
    for entry, weight in zip(history, weights):
        vec = vectors.get(entry.item_id)
        if vec is None:
            missing += 1
            continue
        if weight <= 0:
            continue
        rows.append(np.asarray(vec, dtype=np.float64))
        row_weights.append(weight)

    if missing:
        logger.debug(f"{missing}/{len(history)} watched items have no embedding")
    if not rows:
        return None

    matrix = np.vstack(rows)
    w = np.asarray(row_weights, dtype=np.float64)
    mean = (w[:, None] * matrix).sum(axis=0) / w.sum()
    unit = l2_normalize(mean)
    if unit is None:
        logger.warning("Taste vector collapsed to zero; treating as no profile")
        return None
    return TasteProfile(vector=unit, source_count=len(rows))
