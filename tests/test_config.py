import importlib

import pytest

from media_rec import config
from media_rec.pipeline_config import PipelineConfig


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("MEDIA_REC_MAX_CANDIDATES", "500")
    monkeypatch.setenv("MEDIA_REC_ORACLE_TIMEOUT", "0.1")  # should clamp to min
    monkeypatch.setenv("MEDIA_REC_MAX_CONCURRENT_USERS", "0")  # min clamp

    cfg = importlib.reload(config)

    assert cfg.DEFAULT_MAX_CANDIDATES == 500
    assert cfg.ORACLE_TIMEOUT == 1.0
    assert cfg.DEFAULT_MAX_CONCURRENT_USERS == 1


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("MEDIA_REC_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("MEDIA_REC_BUBBLE_THRESHOLD", "not-a-float")
    monkeypatch.setenv("MEDIA_REC_SELECTED_COUNT", "bad-int")

    cfg = importlib.reload(config)

    assert cfg.BUBBLE_THRESHOLD == 0.5
    assert cfg.DEFAULT_SELECTED_COUNT["movie"] == 50


def test_default_weights_sum_to_one():
    assert sum(config.DEFAULT_WEIGHTS.values()) == pytest.approx(1.0)


def test_pipeline_config_defaults_per_media_type():
    movies = PipelineConfig.for_media_type("movie")
    series = PipelineConfig.for_media_type("series")

    assert movies.selected_count == 50
    assert series.selected_count == 12
    assert series.recent_watch_limit == 100
    assert series.use_network_diversity
    assert not movies.use_network_diversity


def test_pipeline_config_overrides_merge_weights():
    cfg = PipelineConfig.from_overrides("movie", {"selected_count": 10, "weights": {"novelty": 0.5}, "bogus": 1})

    assert cfg.selected_count == 10
    assert cfg.weights["novelty"] == 0.5
    # untouched weights keep their defaults and are not renormalized
    assert cfg.weights["similarity"] == 0.4
    assert sum(cfg.weights.values()) == pytest.approx(1.3)


@pytest.mark.parametrize(
    "kwargs, message_part",
    [
        ({"media_type": "music"}, "media_type"),
        ({"max_candidates": 0}, "max_candidates"),
        ({"selected_count": -1}, "selected_count"),
        ({"weights": {"similarity": 1.0}}, "missing"),
        ({"weights": {"similarity": -0.1, "novelty": 0.2, "rating": 0.2, "diversity": 0.2}}, "non-negative"),
        ({"weights": {"similarity": 0, "novelty": 0, "rating": 0, "diversity": 0}}, "positive"),
    ],
)
def test_pipeline_config_rejects_invalid_values(kwargs, message_part):
    with pytest.raises(ValueError) as exc:
        PipelineConfig(**kwargs)
    assert message_part in str(exc.value)


def test_pipeline_config_from_stored_falls_back(fresh_db):
    db = fresh_db
    db.init_db()

    assert PipelineConfig.from_stored("series").selected_count == 12

    db.save_recommendation_config("series", {"selected_count": 20, "weights": {"diversity": 0.3}})
    stored = PipelineConfig.from_stored("series")
    assert stored.selected_count == 20
    assert stored.weights["diversity"] == 0.3

    db.save_recommendation_config("series", {"max_candidates": -5})
    assert PipelineConfig.from_stored("series") == PipelineConfig.for_media_type("series")
