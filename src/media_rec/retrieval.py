import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Protocol

import numpy as np

from . import database

logger = logging.getLogger(__name__)


class NeighborIndex(Protocol):
    async def nearest_neighbors(
        self, vector, exclude_ids: Iterable[str] = (), limit: int = 10, max_rating: int | None = None,
    ) -> list[tuple[str, float]]: ...

    async def get_vector(self, item_id: str) -> np.ndarray | None: ...


@dataclass(frozen=True)
class Candidate:
    item_id: str
    title: str
    year: int | None
    genres: tuple[str, ...] = field(default_factory=tuple)
    raw_similarity: float = 0.0
    community_rating: float | None = None
    network: str | None = None


def candidates_from_neighbors(neighbors: list[tuple[str, float]], items: dict[str, dict]) -> list[Candidate]:
    """Join neighbour hits with item metadata; hits without metadata are dropped."""
    candidates = []
    seen = set()
    for item_id, sim in neighbors:
        if item_id in seen:
            continue
        item = items.get(item_id)
        if item is None:
            logger.debug(f"Neighbour {item_id} has no item metadata, skipping")
            continue
        seen.add(item_id)
        candidates.append(Candidate(
            item_id=item_id,
            title=item['title'],
            year=item.get('year'),
            genres=tuple(item.get('genres') or ()),
            raw_similarity=sim,
            community_rating=item.get('community_rating'),
            network=item.get('network'),
        ))
    return candidates


async def get_candidates(
    index: NeighborIndex,
    taste_vector,
    exclude_ids: set[str],
    limit: int,
    max_rating: int | None = None,
    item_loader=None,
) -> list[Candidate]:
    """
    Nearest unwatched items to the taste vector.

    Returns at most ``limit`` candidates ordered by descending raw similarity,
    none of them in ``exclude_ids``. An empty list means nothing eligible.
    """
    if limit <= 0:
        return []
    neighbors = await index.nearest_neighbors(
        taste_vector, exclude_ids=exclude_ids, limit=limit, max_rating=max_rating,
    )
    neighbors = [(item_id, sim) for item_id, sim in neighbors if item_id not in exclude_ids]
    items = await asyncio.to_thread(item_loader or database.load_items, [item_id for item_id, _ in neighbors])
    candidates = candidates_from_neighbors(neighbors, items)
    candidates.sort(key=lambda c: (-c.raw_similarity, c.item_id))
    return candidates[:limit]
