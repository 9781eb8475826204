import pytest

from media_rec.retrieval import candidates_from_neighbors, get_candidates
from media_rec.vectors import VectorStore


class DuplicatingIndex:
    """Index that ignores exclusions and repeats hits, to exercise the retriever's own filtering."""

    def __init__(self, hits):
        self.hits = hits

    async def nearest_neighbors(self, vector, exclude_ids=(), limit=10, max_rating=None):
        return list(self.hits)

    async def get_vector(self, item_id):
        return None


def _items(*ids):
    return {i: {"id": i, "title": i.upper(), "year": 2001, "genres": ["Drama"], "community_rating": 7.0} for i in ids}


@pytest.mark.asyncio
async def test_get_candidates_respects_exclusions_and_limit():
    store = VectorStore({f"m{i}": [1.0, i / 10] for i in range(10)})
    items = _items(*(f"m{i}" for i in range(10)))

    candidates = await get_candidates(store, [1.0, 0.0], {"m0", "m1"}, limit=5, item_loader=lambda ids: items)

    ids = [c.item_id for c in candidates]
    assert len(ids) == 5
    assert not {"m0", "m1"} & set(ids)
    assert ids == ["m2", "m3", "m4", "m5", "m6"]


@pytest.mark.asyncio
async def test_get_candidates_filters_misbehaving_index():
    index = DuplicatingIndex([("a", 0.9), ("b", 0.8), ("a", 0.9), ("x", 0.95), ("c", 0.7)])

    candidates = await get_candidates(index, [1.0], {"x"}, limit=10, item_loader=lambda ids: _items("a", "b", "c", "x"))

    assert [c.item_id for c in candidates] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_get_candidates_empty_when_nothing_eligible():
    store = VectorStore({"a": [1.0, 0.0]})

    assert await get_candidates(store, [1.0, 0.0], {"a"}, limit=10, item_loader=lambda ids: {}) == []
    assert await get_candidates(store, [1.0, 0.0], set(), limit=0) == []


def test_candidates_without_metadata_are_dropped():
    candidates = candidates_from_neighbors([("a", 0.5), ("ghost", 0.4)], _items("a"))

    assert [c.item_id for c in candidates] == ["a"]
    assert candidates[0].genres == ("Drama",)
