import pytest

from media_rec.graph_config import GraphConfig


@pytest.mark.parametrize(
    "size, quota",
    [
        (1, None),
        (5, None),
        (6, 3),
        (10, 5),
        (15, 7),
        (16, 5),
        (20, 6),
        (26, 7),
        (100, 8),
    ],
)
def test_collection_quota_bands(size, quota):
    assert GraphConfig().collection_quota(size) == quota


def test_max_nodes_per_depth():
    cfg = GraphConfig(limit=6)

    assert cfg.max_nodes(1) == 7
    assert cfg.max_nodes(2) == 25
    assert cfg.max_nodes(3) == 45


def test_level_limit_shrinks_with_depth():
    cfg = GraphConfig(limit=6)

    assert cfg.level_limit(2) == 3
    assert cfg.level_limit(3) == 2
    assert GraphConfig(limit=1).level_limit(2) == cfg.min_level_limit


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 0},
        {"depth": 0},
        {"depth": 4},
        {"overfetch_factor": 0},
        {"small_collection_max": 20},
        {"medium_fraction": 0.0},
        {"large_min": 9},
        {"bubble_threshold": 1.5},
        {"fuzzy_match_threshold": 0.0},
    ],
)
def test_invalid_config_rejected(kwargs):
    with pytest.raises(ValueError):
        GraphConfig(**kwargs)
