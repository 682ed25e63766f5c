from datetime import datetime, timezone

import pytest

from quiz_engine.db import init_db
from quiz_engine.seed import seed_questions

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_db(tmp_path):
    """Provide a temporary SQLite database path for tests."""
    db_path = str(tmp_path / "test_quiz.db")
    return db_path


@pytest.fixture
def seeded_db(tmp_db):
    """Initialized database holding the bundled question bank."""
    init_db(tmp_db)
    seed_questions(tmp_db, now=NOW)
    return tmp_db


@pytest.fixture
def now():
    return NOW
