"""Database initialization and connection management."""
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from quiz_engine.config import DEFAULT_DB_PATH

SCHEMA = """
CREATE TABLE IF NOT EXISTS questions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    verse_ref TEXT,
    prompt TEXT NOT NULL,
    choices TEXT NOT NULL DEFAULT '[]',
    answer TEXT NOT NULL,
    difficulty TEXT NOT NULL CHECK (difficulty IN ('easy', 'medium', 'hard')),
    topics TEXT NOT NULL DEFAULT '[]',
    approved_at TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS daily_quizzes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date_key TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS daily_quiz_questions (
    daily_quiz_id INTEGER NOT NULL REFERENCES daily_quizzes(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    question_id INTEGER NOT NULL REFERENCES questions(id),
    PRIMARY KEY (daily_quiz_id, position)
);

CREATE TABLE IF NOT EXISTS quiz_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    daily_quiz_id INTEGER NOT NULL REFERENCES daily_quizzes(id),
    current_question_index INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'in_progress'
        CHECK (status IN ('in_progress', 'completed', 'expired')),
    timezone TEXT NOT NULL DEFAULT 'UTC',
    started_at TEXT NOT NULL,
    last_activity_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_one_active_session
    ON quiz_sessions (user_id, daily_quiz_id) WHERE status = 'in_progress';

CREATE TABLE IF NOT EXISTS session_answers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL REFERENCES quiz_sessions(id) ON DELETE CASCADE,
    question_id INTEGER NOT NULL REFERENCES questions(id),
    answer TEXT NOT NULL,
    revisions INTEGER NOT NULL DEFAULT 0,
    first_answered_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(session_id, question_id)
);

CREATE TABLE IF NOT EXISTS quiz_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    session_id INTEGER REFERENCES quiz_sessions(id) ON DELETE SET NULL,
    question_id INTEGER NOT NULL REFERENCES questions(id),
    is_correct INTEGER NOT NULL,
    answered_at TEXT
);

CREATE TABLE IF NOT EXISTS streaks (
    user_id TEXT PRIMARY KEY,
    current_streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    last_completion_date TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS streak_completions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    date_key TEXT NOT NULL,
    session_id INTEGER,
    completed_at TEXT NOT NULL,
    UNIQUE(user_id, date_key)
);

CREATE TABLE IF NOT EXISTS spaced_repetition (
    user_id TEXT NOT NULL,
    question_id INTEGER NOT NULL REFERENCES questions(id),
    ease_factor REAL NOT NULL DEFAULT 2.5,
    interval INTEGER NOT NULL DEFAULT 0,
    repetitions INTEGER NOT NULL DEFAULT 0,
    next_due TEXT NOT NULL,
    last_outcome TEXT,
    last_reviewed_at TEXT,
    PRIMARY KEY (user_id, question_id)
);

CREATE TABLE IF NOT EXISTS engine_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL UNIQUE,
    value TEXT
);
"""


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Return a SQLite connection with row factory and foreign keys enabled."""
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str):
    """Yield a connection inside one write transaction.

    Commits on normal exit, rolls back if the block raises. BEGIN IMMEDIATE
    takes the write lock up front so concurrent writers serialize instead of
    failing midway through a multi-statement update.
    """
    conn = get_connection(db_path)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize the database, creating all tables if they don't exist."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()
