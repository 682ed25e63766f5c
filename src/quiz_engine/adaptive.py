"""Adaptive scheduling: review queues, weak-topic priorities, adaptive quizzes."""
import json
import logging
import random
from datetime import datetime

from quiz_engine.config import DIFFICULTIES
from quiz_engine.db import get_connection, transaction
from quiz_engine.models import Question, ReviewOutcome, SpacedRepetitionEntry
from quiz_engine.questions import find_approved, get_questions
from quiz_engine.selector import sample_questions
from quiz_engine.spaced_repetition import initial_review_state, next_review_state
from quiz_engine.timeutil import to_iso, utcnow

logger = logging.getLogger(__name__)

WEAK_PRIORITY_CAP = 0.9
MASTERED_THRESHOLD = 80.0
MASTERED_PRIORITY = 0.2
FOCUS_PRIORITY = 1.0


def _fetch_entry(conn, user_id: str, question_id: int) -> SpacedRepetitionEntry | None:
    row = conn.execute(
        "SELECT * FROM spaced_repetition WHERE user_id = ? AND question_id = ?",
        (user_id, question_id),
    ).fetchone()
    return SpacedRepetitionEntry.from_row(row) if row else None


def get_entry(db_path: str, user_id: str, question_id: int) -> SpacedRepetitionEntry | None:
    conn = get_connection(db_path)
    entry = _fetch_entry(conn, user_id, question_id)
    conn.close()
    return entry


def record_review(
    db_path: str,
    user_id: str,
    question_id: int,
    outcome: ReviewOutcome | str,
    now: datetime | None = None,
) -> SpacedRepetitionEntry:
    """Create or advance the entry for (user, question) after a review.

    The read and the write share one transaction so concurrent reviews of
    the same pair apply one after the other.
    """
    now = now or utcnow()
    with transaction(db_path) as conn:
        entry = _fetch_entry(conn, user_id, question_id)
        if entry is None:
            updated = initial_review_state(user_id, question_id, outcome, now)
        else:
            updated = next_review_state(entry, outcome, now)
        conn.execute(
            """INSERT INTO spaced_repetition
            (user_id, question_id, ease_factor, interval, repetitions, next_due, last_outcome, last_reviewed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, question_id) DO UPDATE SET
                ease_factor = excluded.ease_factor,
                interval = excluded.interval,
                repetitions = excluded.repetitions,
                next_due = excluded.next_due,
                last_outcome = excluded.last_outcome,
                last_reviewed_at = excluded.last_reviewed_at""",
            (
                user_id, question_id, updated.ease_factor, updated.interval, updated.repetitions,
                to_iso(updated.next_due), updated.last_outcome, to_iso(now),
            ),
        )
    return updated


def due_questions(db_path: str, user_id: str, limit: int = 10, now: datetime | None = None) -> list[int]:
    """Question ids due for review, earliest due first."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT question_id FROM spaced_repetition
        WHERE user_id = ? AND next_due <= ?
        ORDER BY next_due ASC, question_id ASC
        LIMIT ?""",
        (user_id, to_iso(now or utcnow()), limit),
    ).fetchall()
    conn.close()
    return [r["question_id"] for r in rows]


def performance_summary(db_path: str, user_id: str) -> dict:
    """Accuracy overall, per topic and per difficulty from past attempts."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT q.id, q.topics, q.difficulty, a.is_correct
        FROM quiz_attempts a JOIN questions q ON a.question_id = q.id
        WHERE a.user_id = ?""",
        (user_id,),
    ).fetchall()
    conn.close()
    if not rows:
        return {"total": 0, "accuracy": None, "topics": {}, "difficulties": {}}

    topics: dict = {}
    difficulties: dict = {}
    for r in rows:
        for topic in json.loads(r["topics"] or "[]"):
            bucket = topics.setdefault(topic, {"total": 0, "correct": 0})
            bucket["total"] += 1
            bucket["correct"] += r["is_correct"]
        bucket = difficulties.setdefault(r["difficulty"], {"total": 0, "correct": 0})
        bucket["total"] += 1
        bucket["correct"] += r["is_correct"]

    def with_accuracy(buckets: dict) -> dict:
        return {
            key: {**b, "accuracy": round(b["correct"] / b["total"] * 100, 1)}
            for key, b in buckets.items()
        }

    correct = sum(r["is_correct"] for r in rows)
    return {
        "total": len(rows),
        "accuracy": round(correct / len(rows) * 100, 1),
        "topics": with_accuracy(topics),
        "difficulties": with_accuracy(difficulties),
    }


def topic_priorities(summary: dict | None, focus_topics: list | None = None) -> dict:
    """Selection weight per topic.

    Focus topics get full weight, weak topics a weight growing with their
    error rate, mastered topics a small floor so they still come back for
    retention. Every known topic keeps a non-zero weight.
    """
    priorities = {t: FOCUS_PRIORITY for t in (focus_topics or [])}
    for topic, stats in ((summary or {}).get("topics") or {}).items():
        if topic in priorities:
            continue
        if stats["accuracy"] > MASTERED_THRESHOLD:
            priorities[topic] = MASTERED_PRIORITY
        else:
            error_rate = 1 - stats["accuracy"] / 100
            priorities[topic] = round(max(MASTERED_PRIORITY, min(error_rate, WEAK_PRIORITY_CAP)), 2)
    return priorities


def adaptive_difficulties(summary: dict | None, max_difficulty: str | None = None) -> list[str]:
    """Difficulties to draw new questions from, given past accuracy."""
    accuracy = (summary or {}).get("accuracy")
    if accuracy is None:
        levels = ["easy", "medium"]
    elif accuracy >= 80:
        levels = ["medium", "hard"]
    elif accuracy >= 40:
        levels = ["easy", "medium"]
    else:
        levels = ["easy"]
    if max_difficulty:
        cap = DIFFICULTIES.index(max_difficulty)
        levels = [lv for lv in levels if DIFFICULTIES.index(lv) <= cap] or [DIFFICULTIES[cap]]
    return levels


def build_adaptive_quiz(
    db_path: str,
    user_id: str,
    count: int = 5,
    focus_topics: list | None = None,
    max_difficulty: str | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> list[Question]:
    """A personal practice quiz: due reviews first, then weak-topic questions.

    With no history for the user this is plain sampling from approved
    questions at the default difficulties.
    """
    rng = rng or random.Random()
    review_ids = due_questions(db_path, user_id, limit=count // 2, now=now)
    reviews = get_questions(db_path, review_ids)
    summary = performance_summary(db_path, user_id)
    priorities = topic_priorities(summary, focus_topics)
    candidates = find_approved(
        db_path,
        difficulties=adaptive_difficulties(summary, max_difficulty),
        exclude_ids=set(review_ids),
    )
    fresh = sample_questions(rng, candidates, count - len(reviews), priorities)
    picked = reviews + fresh
    rng.shuffle(picked)
    logger.info(
        "Adaptive quiz for %s: %d review, %d new", user_id, len(reviews), len(fresh)
    )
    return picked
