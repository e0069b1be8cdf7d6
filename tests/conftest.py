import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import db  # noqa: E402


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    """Every test gets its own SQLite file."""
    path = str(tmp_path / "test_bot.sqlite3")
    monkeypatch.setattr(db, "DB_NAME", path)
    db.init_db()
    return path
