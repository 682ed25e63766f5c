"""Daily quiz selection and publication.

One quiz exists per date key. The question list is picked with a generator
seeded by the date key, balanced across difficulties, and avoids questions
used in the preceding few days while inventory allows.
"""
import logging
import random
import sqlite3
from datetime import date, datetime

from quiz_engine.config import DIFFICULTIES, EngineSettings, load_settings
from quiz_engine.db import get_connection, transaction
from quiz_engine.errors import InsufficientInventory, Internal, NotFound, Unprocessable
from quiz_engine.models import DailyQuiz, Question
from quiz_engine.questions import find_approved
from quiz_engine.timeutil import date_key_for, shift_date_key, to_iso, utcnow

logger = logging.getLogger(__name__)


def difficulty_counts(total: int, mix: dict) -> dict:
    """Split ``total`` questions across difficulties according to ``mix``.

    Each bucket is rounded half-up; whatever the rounding over- or
    under-shoots is taken from or given to the largest bucket (easy wins
    ties, then medium), so the counts always sum to ``total``.
    """
    weight_sum = sum(mix.get(d, 0) for d in DIFFICULTIES)
    if total < 0 or weight_sum <= 0:
        raise Unprocessable("Difficulty mix must have a positive weight")
    counts = {d: int(total * mix.get(d, 0) / weight_sum + 0.5) for d in DIFFICULTIES}
    diff = total - sum(counts.values())
    if diff:
        largest = max(DIFFICULTIES, key=lambda d: (counts[d], -DIFFICULTIES.index(d)))
        counts[largest] += diff
    return counts


def _validate_date_key(date_key: str) -> None:
    try:
        date.fromisoformat(date_key)
    except (TypeError, ValueError) as e:
        raise Unprocessable(f"Invalid date key: {date_key!r}") from e


def recent_question_ids(db_path: str, date_key: str, lookback_days: int) -> set:
    """Question ids used by quizzes in the ``lookback_days`` before ``date_key``."""
    if lookback_days <= 0:
        return set()
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT dqq.question_id FROM daily_quiz_questions dqq
        JOIN daily_quizzes dq ON dq.id = dqq.daily_quiz_id
        WHERE dq.date_key >= ? AND dq.date_key < ?""",
        (shift_date_key(date_key, -lookback_days), date_key),
    ).fetchall()
    conn.close()
    return {r["question_id"] for r in rows}


def sample_questions(rng: random.Random, candidates: list[Question], k: int, topic_weights: dict | None) -> list[Question]:
    """Draw ``k`` distinct questions, biased by ``topic_weights`` when given."""
    if k >= len(candidates):
        picked = list(candidates)
        rng.shuffle(picked)
        return picked
    if not topic_weights:
        return rng.sample(candidates, k)

    # Weighted sampling without replacement: every question keeps a base
    # weight, topic priorities add on top.
    def key(q: Question) -> float:
        weight = 0.5 + sum(topic_weights.get(t, 0.0) for t in q.topics)
        return rng.random() ** (1.0 / weight)

    return sorted(candidates, key=key, reverse=True)[:k]


def select_questions(
    db_path: str,
    date_key: str,
    settings: EngineSettings,
    topic_weights: dict | None = None,
) -> list[int]:
    """Pick the ordered question ids for ``date_key`` without persisting them."""
    rng = random.Random(date_key)
    recent = recent_question_ids(db_path, date_key, settings.repeat_lookback_days)
    counts = difficulty_counts(settings.questions_per_quiz, settings.difficulty_mix)
    chosen: list[Question] = []
    for level in DIFFICULTIES:
        need = counts[level]
        if need == 0:
            continue
        taken = {q.id for q in chosen}
        fresh = find_approved(db_path, difficulties=[level], exclude_ids=recent | taken)
        picked = sample_questions(rng, fresh, need, topic_weights)
        if len(picked) < need:
            repeats = find_approved(
                db_path, difficulties=[level], exclude_ids=taken | {q.id for q in picked}
            )
            if repeats:
                logger.info(
                    "Only %d fresh %s questions for %s; allowing repeats", len(picked), level, date_key
                )
            picked += sample_questions(rng, repeats, need - len(picked), topic_weights)
        if len(picked) < need:
            raise InsufficientInventory(
                f"Need {need} approved {level} questions for {date_key}, found {len(picked)}"
            )
        chosen.extend(picked)
    rng.shuffle(chosen)
    return [q.id for q in chosen]


def _load_quiz(conn: sqlite3.Connection, row) -> DailyQuiz:
    ids = conn.execute(
        "SELECT question_id FROM daily_quiz_questions WHERE daily_quiz_id = ? ORDER BY position",
        (row["id"],),
    ).fetchall()
    return DailyQuiz(
        id=row["id"],
        date_key=row["date_key"],
        question_ids=tuple(r["question_id"] for r in ids),
        created_at=row["created_at"],
    )


def get_daily_quiz(db_path: str, quiz_id: int) -> DailyQuiz:
    conn = get_connection(db_path)
    row = conn.execute("SELECT * FROM daily_quizzes WHERE id = ?", (quiz_id,)).fetchone()
    if not row:
        conn.close()
        raise NotFound(f"Daily quiz {quiz_id} not found")
    quiz = _load_quiz(conn, row)
    conn.close()
    return quiz


def get_daily_quiz_for_date(db_path: str, date_key: str) -> DailyQuiz | None:
    conn = get_connection(db_path)
    row = conn.execute("SELECT * FROM daily_quizzes WHERE date_key = ?", (date_key,)).fetchone()
    quiz = _load_quiz(conn, row) if row else None
    conn.close()
    return quiz


def get_or_create_daily_quiz(
    db_path: str,
    date_key: str,
    settings: EngineSettings | None = None,
    topic_weights: dict | None = None,
    now: datetime | None = None,
) -> DailyQuiz:
    """Return the quiz for ``date_key``, creating it on first request.

    Creation is an optimistic insert guarded by the unique date key: if a
    concurrent caller published first, the insert is rolled back and their
    quiz is returned.

    The quiz for a date is shared by every user. ``topic_weights`` is an
    operator-level bias applied to that shared pick and only matters on the
    call that creates the quiz; per-user weighting belongs to
    ``adaptive.build_adaptive_quiz``.
    """
    _validate_date_key(date_key)
    existing = get_daily_quiz_for_date(db_path, date_key)
    if existing:
        return existing

    settings = settings or load_settings(db_path)
    question_ids = select_questions(db_path, date_key, settings, topic_weights)
    try:
        with transaction(db_path) as conn:
            cur = conn.execute(
                "INSERT INTO daily_quizzes (date_key, created_at) VALUES (?, ?)",
                (date_key, to_iso(now or utcnow())),
            )
            conn.executemany(
                "INSERT INTO daily_quiz_questions (daily_quiz_id, position, question_id) VALUES (?, ?, ?)",
                [(cur.lastrowid, pos, qid) for pos, qid in enumerate(question_ids)],
            )
    except sqlite3.IntegrityError:
        logger.info("Daily quiz for %s already published by another writer", date_key)
    except sqlite3.Error as e:
        raise Internal(f"Failed to create daily quiz for {date_key}: {e}") from e
    else:
        logger.info("Published daily quiz for %s: %s", date_key, question_ids)

    quiz = get_daily_quiz_for_date(db_path, date_key)
    if quiz is None:
        raise Internal(f"Daily quiz for {date_key} vanished after insert")
    return quiz


def current_daily_quiz(db_path: str, timezone: str = "UTC", now: datetime | None = None) -> DailyQuiz:
    return get_or_create_daily_quiz(db_path, date_key_for(now or utcnow(), timezone), now=now)


def generate_upcoming_quizzes(db_path: str, now: datetime | None = None) -> dict:
    """Publish quizzes for yesterday, today and tomorrow (UTC).

    Between them these cover the local "today" of every timezone. Failures are
    collected per date rather than aborting the run.
    """
    now = now or utcnow()
    today = date_key_for(now, "UTC")
    results, errors = [], []
    for offset in (-1, 0, 1):
        key = shift_date_key(today, offset)
        try:
            quiz = get_or_create_daily_quiz(db_path, key, now=now)
            results.append({"date": key, "quiz_id": quiz.id, "questions": quiz.total_questions})
        except (InsufficientInventory, Internal) as e:
            logger.error("Failed to generate quiz for %s: %s", key, e)
            errors.append({"date": key, "error": str(e)})
    return {"attempted": 3, "results": results, "errors": errors}


def cleanup_old_quizzes(
    db_path: str, now: datetime | None = None, settings: EngineSettings | None = None
) -> dict:
    """Drop finished sessions and quizzes past their retention windows.

    Quizzes still referenced by a remaining session are kept.
    """
    now = now or utcnow()
    settings = settings or load_settings(db_path)
    today = date_key_for(now, "UTC")
    session_cutoff = shift_date_key(today, -settings.session_retention_days)
    quiz_cutoff = shift_date_key(today, -settings.quiz_retention_days)
    with transaction(db_path) as conn:
        sessions = conn.execute(
            """DELETE FROM quiz_sessions
            WHERE status != 'in_progress' AND started_at < ?""",
            (session_cutoff,),
        ).rowcount
        quizzes = conn.execute(
            """DELETE FROM daily_quizzes
            WHERE date_key < ?
            AND id NOT IN (SELECT daily_quiz_id FROM quiz_sessions)""",
            (quiz_cutoff,),
        ).rowcount
    logger.info("Cleanup removed %d sessions and %d quizzes", sessions, quizzes)
    return {"sessions_removed": sessions, "quizzes_removed": quizzes}
