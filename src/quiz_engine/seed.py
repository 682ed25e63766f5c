"""Seed the database with the bundled question bank."""
import json
from datetime import datetime
from pathlib import Path

from quiz_engine.db import get_connection
from quiz_engine.timeutil import to_iso, utcnow

CONTENT_DIR = Path(__file__).parent / "content"


def is_seeded(db_path: str) -> bool:
    """Check whether the database already holds questions."""
    conn = get_connection(db_path)
    count = conn.execute("SELECT COUNT(*) FROM questions").fetchone()[0]
    conn.close()
    return count > 0


def load_question_bank() -> list[dict]:
    data = json.loads((CONTENT_DIR / "questions.json").read_text(encoding="utf-8"))
    return data["questions"]


def seed_questions(db_path: str, now: datetime | None = None) -> int:
    """Insert every bundled question as approved. Returns the number inserted."""
    stamp = to_iso(now or utcnow())
    bank = load_question_bank()
    conn = get_connection(db_path)
    for q in bank:
        conn.execute(
            """INSERT INTO questions
            (verse_ref, prompt, choices, answer, difficulty, topics, approved_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                q.get("verse_ref"),
                q["prompt"],
                json.dumps(q.get("choices", [])),
                q["answer"],
                q["difficulty"],
                json.dumps(sorted(q.get("topics", []))),
                stamp,
                stamp,
            ),
        )
    conn.commit()
    conn.close()
    return len(bank)


def seed_all(db_path: str) -> None:
    """Seed once; calling again on a seeded database does nothing."""
    if not is_seeded(db_path):
        seed_questions(db_path)
