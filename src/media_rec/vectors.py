"""
In-process cosine-similarity index over item embeddings.

The index is a dense float matrix held in memory; nearest-neighbour
queries run ``scipy.spatial.distance.cdist`` off the event loop.
"""
import asyncio
import logging
from typing import Iterable

import numpy as np
from scipy.spatial.distance import cdist

from . import database
from .config import CONTENT_RATING_AGES

logger = logging.getLogger(__name__)


def content_rating_age(rating: str | None) -> int | None:
    """Minimum viewer age implied by a content rating string, None if unknown."""
    if not rating:
        return None
    return CONTENT_RATING_AGES.get(rating.strip().upper())


def l2_normalize(vector) -> np.ndarray | None:
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0 or not np.isfinite(norm):
        return None
    return arr / norm


class VectorStore:
    """
    Embedding lookup plus filtered cosine nearest-neighbour search.

    Args:
        vectors: item_id -> embedding
        content_ages: item_id -> minimum viewer age (None/missing = unrated)
    """

    def __init__(
        self,
        vectors: dict[str, Iterable[float]] | None = None,
        content_ages: dict[str, int | None] | None = None,
    ):
        self._ids: list[str] = []
        self._index: dict[str, int] = {}
        self._rows: list[np.ndarray] = []
        self._ages: dict[str, int | None] = dict(content_ages or {})
        self._matrix: np.ndarray | None = None
        for item_id, vec in (vectors or {}).items():
            self.upsert(item_id, vec)

    @classmethod
    def from_database(cls, item_type: str | None = None) -> "VectorStore":
        """Build the index from every stored embedding (optionally one media type)."""
        store = cls()
        for row in database.load_embedding_rows(item_type):
            store.upsert(row['item_id'], row['vector'], content_rating_age(row['content_rating']))
        logger.info(f"Loaded {len(store)} embeddings{' for ' + item_type if item_type else ''}")
        return store

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._index

    def upsert(self, item_id: str, vector, content_age: int | None = None) -> None:
        arr = np.asarray(vector, dtype=np.float64)
        if item_id in self._index:
            self._rows[self._index[item_id]] = arr
        else:
            self._index[item_id] = len(self._ids)
            self._ids.append(item_id)
            self._rows.append(arr)
        if content_age is not None:
            self._ages[item_id] = content_age
        self._matrix = None

    def _get_matrix(self) -> np.ndarray:
        if self._matrix is None:
            self._matrix = np.vstack(self._rows) if self._rows else np.empty((0, 0))
        return self._matrix

    def get_vector_sync(self, item_id: str) -> np.ndarray | None:
        idx = self._index.get(item_id)
        return None if idx is None else self._rows[idx]

    async def get_vector(self, item_id: str) -> np.ndarray | None:
        return self.get_vector_sync(item_id)

    def _search(self, vector, exclude_ids, limit: int, max_rating: int | None) -> list[tuple[str, float]]:
        if limit <= 0 or not self._ids:
            return []
        matrix = self._get_matrix()
        query = np.asarray(vector, dtype=np.float64).reshape(1, -1)
        if query.shape[1] != matrix.shape[1]:
            raise ValueError(f"Query has {query.shape[1]} dims, index has {matrix.shape[1]}")

        # Zero vectors yield nan distances; they are never neighbours.
        with np.errstate(invalid='ignore', divide='ignore'):
            sims = 1.0 - cdist(query, matrix, metric='cosine')[0]

        order = np.argsort(np.nan_to_num(-sims, nan=np.inf), kind='stable')
        excluded = set(exclude_ids or ())
        results: list[tuple[str, float]] = []
        for idx in order:
            sim = sims[idx]
            if not np.isfinite(sim):
                continue
            item_id = self._ids[idx]
            if item_id in excluded:
                continue
            if max_rating is not None:
                age = self._ages.get(item_id)
                if age is not None and age > max_rating:
                    continue
            results.append((item_id, float(np.clip(sim, -1.0, 1.0))))
            if len(results) >= limit:
                break
        return results

    async def nearest_neighbors(
        self,
        vector,
        exclude_ids: Iterable[str] = (),
        limit: int = 10,
        max_rating: int | None = None,
    ) -> list[tuple[str, float]]:
        """
        Up to ``limit`` (item_id, cosine similarity) pairs, most similar first.

        Ids in ``exclude_ids`` and items rated above the ``max_rating`` age
        ceiling are skipped; items with no content rating always pass.
        """
        return await asyncio.to_thread(self._search, vector, exclude_ids, limit, max_rating)
