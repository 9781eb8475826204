import numpy as np
import pytest

from media_rec import database
from media_rec.utils import StoreError

from conftest import make_item


def test_init_db_creates_expected_tables(fresh_db):
    db = fresh_db
    db.init_db()

    with db.get_db(read_only=True) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    expected = {
        "items",
        "item_embeddings",
        "users",
        "watch_history",
        "user_ratings",
        "recommendation_runs",
        "recommendation_candidates",
        "recommendation_evidence",
        "similarity_validation_cache",
        "recommendation_config",
    }
    assert expected.issubset(tables)


def test_nested_transactions_commit_once(fresh_db):
    db = fresh_db
    db.init_db()

    with db.get_db() as conn:
        conn.execute("INSERT INTO items (id, title) VALUES (?, ?)", ("a", "A"))
        with db.get_db() as inner:
            inner.execute("INSERT INTO users (id) VALUES (?)", ("alice",))

    with db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 1


def test_sqlite_errors_surface_as_store_error(fresh_db):
    db = fresh_db
    db.init_db()

    with pytest.raises(StoreError):
        with db.get_db() as conn:
            conn.execute("SELECT * FROM no_such_table")


def test_load_json_handles_invalid_payload():
    assert database.load_json("not-json") == []
    assert database.load_json(None) == []


def test_items_round_trip_json_fields(fresh_db):
    db = fresh_db
    db.init_db()
    db.upsert_items([
        make_item("m1", "Alien", genres=["Horror", "Sci-Fi"], actors=[{"name": "Sigourney Weaver", "role": "Ripley"}],
                  collection_name="Alien Collection"),
    ])

    item = db.load_item("m1")
    assert item["genres"] == ["Horror", "Sci-Fi"]
    assert item["actors"][0]["name"] == "Sigourney Weaver"
    assert db.load_items(["m1", "missing"]).keys() == {"m1"}
    assert db.count_collection_members("Alien Collection") == 1


def test_embeddings_round_trip_through_float32(fresh_db):
    db = fresh_db
    db.init_db()
    db.upsert_items([make_item("m1", content_rating="R"), make_item("m2")])
    db.save_embeddings({"m1": [0.1, 0.2, 0.3]}, model="test-model")

    rows = db.load_embedding_rows("movie")
    assert len(rows) == 1
    np.testing.assert_allclose(rows[0]["vector"], [0.1, 0.2, 0.3], rtol=1e-6)
    assert rows[0]["content_rating"] == "R"
    assert [i["id"] for i in db.load_items_missing_embeddings()] == ["m2"]


def test_watch_history_order_and_exclusions(fresh_db):
    db = fresh_db
    db.init_db()
    db.upsert_items([make_item(f"m{i}") for i in range(1, 6)])
    db.record_watch("alice", "m1", play_count=1, last_played_at="2024-01-01T10:00:00")
    db.record_watch("alice", "m2", play_count=4, last_played_at="2023-01-01T10:00:00")
    db.record_watch("alice", "m3", play_count=1, last_played_at="2024-06-01T10:00:00+02:00", is_favorite=True)
    db.set_user_rating("alice", "m4", 8)
    db.add_dislike("alice", "m5")

    history = db.load_watch_history("alice", "movie")
    assert [h["item_id"] for h in history] == ["m3", "m2", "m1"]
    assert history[0]["is_favorite"] is True
    assert history[0]["last_played_at"] == "2024-06-01T10:00:00"

    assert db.load_exclusion_ids("alice") == {"m1", "m2", "m3", "m5"}
    assert db.load_exclusion_ids("alice", include_watched=True) == {"m5"}
    assert db.load_exclusion_ids("alice", exclude_disliked=False) == {"m1", "m2", "m3"}
    assert db.load_exclusion_ids("alice", include_watched=True, exclude_disliked=False) == set()
    assert db.load_watched_ids("alice") == {"m1", "m2", "m3"}


def test_user_rating_must_be_in_range(fresh_db):
    db = fresh_db
    db.init_db()
    with pytest.raises(ValueError):
        db.set_user_rating("alice", "m1", 11)


def test_finalize_run_only_once(fresh_db):
    db = fresh_db
    db.init_db()
    run_id = db.create_run("alice", "movie")

    assert db.finalize_run(run_id, "completed", 10, 5, 123) is True
    assert db.finalize_run(run_id, "failed", error_message="late failure") is False

    run = db.load_run(run_id)
    assert run["status"] == "completed"
    assert run["error_message"] is None
    assert db.load_latest_run("alice", "movie")["id"] == run_id


def test_finalize_run_rejects_non_terminal_status(fresh_db):
    db = fresh_db
    db.init_db()
    run_id = db.create_run("alice")
    with pytest.raises(ValueError):
        db.finalize_run(run_id, "running")


def test_save_run_results_keeps_top_and_selected(fresh_db):
    db = fresh_db
    db.init_db()
    db.upsert_items([make_item(f"m{i}") for i in range(1, 151)] + [make_item("w1")])
    run_id = db.create_run("alice")

    candidates = [
        {"item_id": f"m{i}", "rank": i, "is_selected": i in (1, 150), "selected_rank": {1: 1, 150: 2}.get(i),
         "raw_similarity": 0.5, "similarity": 0.75, "novelty": 0.5, "rating_score": 0.4, "diversity": 0.0,
         "final_score": 0.5}
        for i in range(1, 151)
    ]
    evidence = [{"item_id": "m1", "watched_item_id": "w1", "similarity": 0.9, "evidence_type": "favorite"}]
    db.save_run_results(run_id, candidates, evidence)
    db.save_explanations(run_id, {"m1": "Because you loved W1."})

    selected = db.load_run_recommendations(run_id)
    assert [r["item_id"] for r in selected] == ["m1", "m150"]
    assert selected[0]["explanation"] == "Because you loved W1."
    assert selected[0]["evidence"][0]["watched_item_id"] == "w1"
    assert len(db.load_run_recommendations(run_id, selected_only=False)) == 101


def test_clear_user_recommendations_scoped_to_media_type(fresh_db):
    db = fresh_db
    db.init_db()
    movie_run = db.create_run("alice", "movie")
    db.create_run("alice", "series")
    db.save_taste_profile("alice", "movie", [1.0, 0.0], 1)

    assert db.clear_user_recommendations("alice", "movie") == 1
    assert db.load_run(movie_run) is None
    assert db.load_latest_run("alice", "series", status=None) is not None
    assert db.load_taste_profile("alice", "movie") is None


def test_validation_cache_upsert_and_stats(fresh_db):
    db = fresh_db
    db.init_db()
    db.put_validation("a|b", "movie", "movie", True, "same universe")
    db.put_validation("a|b", "movie", "movie", False, "changed mind")
    db.put_validation("a|c", "movie", "series", False, "unrelated")

    assert db.get_validation("a|b")["is_valid"] is False
    assert db.validation_cache_stats() == {"total": 2, "valid": 0, "invalid": 2}


def test_user_preferences_default_and_save(fresh_db):
    db = fresh_db
    db.init_db()
    assert db.load_user_preferences("alice") == {
        "full_franchise_mode": False,
        "hide_watched": False,
        "include_watched": False,
        "dislike_behavior": "exclude",
    }

    db.save_user_preferences("alice", full_franchise_mode=True)
    assert db.load_user_preferences("alice")["full_franchise_mode"] is True

    db.save_user_preferences("alice", include_watched=True, dislike_behavior="penalize")
    prefs = db.load_user_preferences("alice")
    assert prefs["include_watched"] is True
    assert prefs["dislike_behavior"] == "penalize"

    with pytest.raises(ValueError):
        db.save_user_preferences("alice", dislike_behavior="hide")


def test_invalid_stored_config_json_is_ignored(fresh_db):
    db = fresh_db
    db.init_db()
    with db.get_db() as conn:
        conn.execute("INSERT INTO recommendation_config (media_type, config) VALUES ('movie', '{broken')")
    assert db.load_recommendation_config("movie") is None
