import argparse
import json
import logging
import sys

import httpx
import pytest

from media_rec import cli
from media_rec.utils import StoreError

from conftest import make_item


def test_cli_dispatch_cache_stats(monkeypatch):
    called = {}

    def fake_stats(args):
        called["command"] = args.command

    monkeypatch.setattr(cli, "cmd_cache_stats", fake_stats)
    monkeypatch.setattr(sys, "argv", ["prog", "cache-stats"])

    cli.main()
    assert called["command"] == "cache-stats"


def test_cli_parses_recommend_args(monkeypatch):
    captured = {}

    def fake_recommend(args):
        captured.update(user_id=args.user_id, type=args.type, limit=args.limit, no_explain=args.no_explain)

    monkeypatch.setattr(cli, "cmd_recommend", fake_recommend)
    monkeypatch.setattr(sys, "argv", ["prog", "recommend", "alice", "--type", "series", "--limit", "5", "--no-explain"])

    cli.main()

    assert captured == {"user_id": "alice", "type": "series", "limit": 5, "no_explain": True}


def test_cli_parses_similar_args(monkeypatch):
    captured = {}

    def fake_similar(args):
        captured.update(item_id=args.item_id, depth=args.depth, limit=args.limit, user=args.user, json=args.json)

    monkeypatch.setattr(cli, "cmd_similar", fake_similar)
    monkeypatch.setattr(sys, "argv", ["prog", "similar", "tt0113277", "--depth", "2", "--user", "bob", "--json"])

    cli.main()

    assert captured == {"item_id": "tt0113277", "depth": 2, "limit": 6, "user": "bob", "json": True}


def test_cli_rejects_depth_out_of_range(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "similar", "x", "--depth", "4"])

    with pytest.raises(SystemExit):
        cli.main()


def test_invalid_id_is_a_usage_error(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "recommend", "bad id!"])

    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 2


def test_domain_errors_exit_nonzero(monkeypatch):
    def broken(args):
        raise StoreError("database is locked")

    monkeypatch.setattr(cli, "cmd_init_db", broken)
    monkeypatch.setattr(sys, "argv", ["prog", "init-db"])

    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 1


@pytest.mark.parametrize("value", ["alice", "user-1", "jf:abc.def", " padded "])
def test_validate_id_accepts(value):
    assert cli._validate_id(value) == value.strip()


@pytest.mark.parametrize("value", ["", "   ", "a b", "x;drop", "../etc"])
def test_validate_id_rejects(value):
    with pytest.raises(ValueError):
        cli._validate_id(value)


def test_send_notification_posts_and_swallows_errors(monkeypatch, caplog):
    posts = []

    def ok_post(url, json, timeout):
        posts.append((url, json))
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(cli, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example/abc")
    monkeypatch.setattr(cli.httpx, "post", ok_post)
    cli.send_notification("done")
    assert posts == [("https://hooks.example/abc", {"content": "done"})]

    def failing_post(url, json, timeout):
        raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(cli.httpx, "post", failing_post)
    monkeypatch.setattr("media_rec.utils.time.sleep", lambda seconds: None)
    with caplog.at_level(logging.WARNING):
        cli.send_notification("done")
    assert "Failed to send notification" in caplog.text


def test_send_notification_noop_without_url(monkeypatch):
    def unexpected(*args, **kwargs):
        raise AssertionError("should not post")

    monkeypatch.setattr(cli, "NOTIFICATION_WEBHOOK_URL", None)
    monkeypatch.setattr(cli.httpx, "post", unexpected)

    cli.send_notification("done")


def _seed(db):
    db.init_db()
    items = [make_item(f"w{j}", f"Watched {j}", genres=["Drama"]) for j in range(3)]
    items += [make_item(f"c{i}", f"Candidate {i}", genres=["Drama", "Crime"], community_rating=7.5) for i in range(8)]
    db.upsert_items(items)
    vectors = {f"w{j}": [1.0, 0.0, j / 10] for j in range(3)}
    vectors.update({f"c{i}": [1.0, i / 10, 0.0] for i in range(8)})
    db.save_embeddings(vectors, model="test")
    db.upsert_user("u1")
    for j in range(3):
        db.record_watch("u1", f"w{j}")


def test_recommend_and_show_run_end_to_end(fresh_db, monkeypatch, caplog):
    _seed(fresh_db)
    monkeypatch.setattr(cli, "OPENAI_API_KEY", None)

    with caplog.at_level(logging.INFO):
        cli.cmd_recommend(argparse.Namespace(user_id="u1", type="movie", limit=3, no_explain=False))
        cli.cmd_show_run(argparse.Namespace(user_id="u1", type="movie", all=False, evidence=True))

    assert "Top movie picks for u1" in caplog.text
    assert "Why:" in caplog.text
    assert "<- Watched" in caplog.text
    run = fresh_db.load_latest_run("u1")
    assert run["selected_count"] == 8


def test_show_run_without_runs(fresh_db, caplog):
    fresh_db.init_db()

    with caplog.at_level(logging.INFO):
        cli.cmd_show_run(argparse.Namespace(user_id="nobody", type="movie", all=False, evidence=False))

    assert "No completed movie run for 'nobody'" in caplog.text


def test_similar_prints_graph_json(fresh_db, monkeypatch, capsys):
    _seed(fresh_db)
    monkeypatch.setattr(cli, "OPENAI_API_KEY", None)

    cli.cmd_similar(argparse.Namespace(item_id="c0", depth=1, limit=3, user=None, json=True))

    graph = json.loads(capsys.readouterr().out)
    assert len(graph["nodes"]) == 4
    assert [n["id"] for n in graph["nodes"] if n["is_center"]] == ["c0"]
    assert all(e["source"] == "c0" for e in graph["edges"])


def test_similar_unknown_item(fresh_db, monkeypatch, caplog):
    fresh_db.init_db()
    monkeypatch.setattr(cli, "OPENAI_API_KEY", None)

    with caplog.at_level(logging.ERROR):
        cli.cmd_similar(argparse.Namespace(item_id="ghost", depth=1, limit=3, user=None, json=False))

    assert "No item found with id 'ghost'" in caplog.text
