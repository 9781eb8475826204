import importlib
import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MEDIA_REC_DB", str(db_path))
    import media_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MEDIA_REC_DB", str(db_path))

    import media_rec.config as config
    import media_rec.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()


class FakeOracle:
    """
    Scripted oracle. ``answer`` is a string or a callable taking the prompt;
    ``error`` (an exception instance) is raised instead when set.
    """

    def __init__(self, answer="YES - same themes", error=None):
        self.answer = answer
        self.error = error
        self.prompts: list[str] = []

    async def classify(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer(prompt) if callable(self.answer) else self.answer

    async def close(self) -> None:
        pass


@pytest.fixture
def fake_oracle():
    return FakeOracle()


def make_item(item_id: str, title: str | None = None, **fields) -> dict:
    item = {
        "id": item_id,
        "type": "movie",
        "title": title or item_id.title(),
        "year": 2000,
        "genres": ["Drama"],
    }
    item.update(fields)
    return item


def unit(*values) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float64)
    return vec / np.linalg.norm(vec)
