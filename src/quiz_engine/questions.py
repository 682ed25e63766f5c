"""Question repository: storage and filtered lookup of approved questions."""
import json
from datetime import datetime

from quiz_engine.config import DIFFICULTIES
from quiz_engine.db import get_connection
from quiz_engine.errors import NotFound, Unprocessable
from quiz_engine.models import Question
from quiz_engine.timeutil import to_iso, utcnow


def add_question(
    db_path: str,
    prompt: str,
    answer: str,
    difficulty: str,
    choices: list | None = None,
    topics: list | None = None,
    verse_ref: str | None = None,
    approved: bool = True,
    now: datetime | None = None,
) -> int:
    if difficulty not in DIFFICULTIES:
        raise Unprocessable(f"Unknown difficulty: {difficulty}")
    now = now or utcnow()
    conn = get_connection(db_path)
    cur = conn.execute(
        """INSERT INTO questions
        (verse_ref, prompt, choices, answer, difficulty, topics, approved_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            verse_ref,
            prompt,
            json.dumps(list(choices or [])),
            answer,
            difficulty,
            json.dumps(sorted(topics or [])),
            to_iso(now) if approved else None,
            to_iso(now),
        ),
    )
    conn.commit()
    question_id = cur.lastrowid
    conn.close()
    return question_id


def approve_question(db_path: str, question_id: int, now: datetime | None = None) -> None:
    """Mark a question approved. Approval is one-way."""
    conn = get_connection(db_path)
    cur = conn.execute(
        "UPDATE questions SET approved_at = COALESCE(approved_at, ?) WHERE id = ?",
        (to_iso(now or utcnow()), question_id),
    )
    conn.commit()
    conn.close()
    if cur.rowcount == 0:
        raise NotFound(f"Question {question_id} not found")


def find_approved(
    db_path: str,
    difficulties: list | tuple | None = None,
    exclude_ids: set | None = None,
    limit: int | None = None,
) -> list[Question]:
    """Approved questions, optionally restricted by difficulty and excluded ids.

    Results are ordered by id so callers that sample from them with a seeded
    generator get repeatable picks.
    """
    sql = "SELECT * FROM questions WHERE approved_at IS NOT NULL"
    params: list = []
    if difficulties:
        sql += f" AND difficulty IN ({','.join('?' * len(difficulties))})"
        params.extend(difficulties)
    if exclude_ids:
        sql += f" AND id NOT IN ({','.join('?' * len(exclude_ids))})"
        params.extend(sorted(exclude_ids))
    sql += " ORDER BY id"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    conn = get_connection(db_path)
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return [Question.from_row(r) for r in rows]


def get_questions(db_path: str, ids) -> list[Question]:
    """Questions for ``ids`` in the order given."""
    ids = list(ids)
    if not ids:
        return []
    conn = get_connection(db_path)
    rows = conn.execute(
        f"SELECT * FROM questions WHERE id IN ({','.join('?' * len(ids))})", ids
    ).fetchall()
    conn.close()
    by_id = {r["id"]: Question.from_row(r) for r in rows}
    missing = [i for i in ids if i not in by_id]
    if missing:
        raise NotFound(f"Questions not found: {missing}")
    return [by_id[i] for i in ids]


def count_approved_by_difficulty(db_path: str) -> dict:
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT difficulty, COUNT(*) as total FROM questions
        WHERE approved_at IS NOT NULL GROUP BY difficulty"""
    ).fetchall()
    conn.close()
    counts = {d: 0 for d in DIFFICULTIES}
    counts.update({r["difficulty"]: r["total"] for r in rows})
    return counts
