"""Quiz session lifecycle: start, answer, complete, read.

Expiry is lazy. A session older than the timeout counts as expired on every
read and write whatever its stored status says; ``expire_stale_sessions`` only
makes the stored status catch up.
"""
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta

from quiz_engine.adaptive import record_review
from quiz_engine.config import EngineSettings, load_settings
from quiz_engine.db import get_connection, transaction
from quiz_engine.errors import (
    AlreadyCompletedToday, Forbidden, Gone, IncompleteQuiz, Internal, NotFound,
    SessionAlreadyCompleted, Unprocessable,
)
from quiz_engine.models import DailyQuiz, QuizResult, QuizSession, SessionStatus
from quiz_engine.notifier import CompletionEvent, Notifier, notify_safely
from quiz_engine.questions import get_questions
from quiz_engine.scoring import score
from quiz_engine.selector import current_daily_quiz, get_daily_quiz
from quiz_engine.spaced_repetition import outcome_for_answer
from quiz_engine.streaks import get_streak, record_completion
from quiz_engine.timeutil import date_key_for, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


def effective_status(stored: str, started_at: datetime, now: datetime, settings: EngineSettings) -> SessionStatus:
    status = SessionStatus(stored)
    if status is SessionStatus.IN_PROGRESS and now - started_at >= timedelta(hours=settings.session_timeout_hours):
        return SessionStatus.EXPIRED
    return status


def _warnings(session: QuizSession, now: datetime, settings: EngineSettings) -> list[str]:
    if session.status is not SessionStatus.IN_PROGRESS:
        return []
    idle = now - session.last_activity_at
    if idle > timedelta(minutes=settings.inactivity_warning_minutes):
        minutes = int(idle.total_seconds() // 60)
        return [f"Session has been inactive for {minutes} minutes"]
    return []


def _load_session(conn: sqlite3.Connection, row, now: datetime, settings: EngineSettings) -> QuizSession:
    answers = conn.execute(
        "SELECT question_id, answer FROM session_answers WHERE session_id = ?", (row["id"],)
    ).fetchall()
    started_at = parse_iso(row["started_at"])
    session = QuizSession(
        id=row["id"],
        user_id=row["user_id"],
        daily_quiz_id=row["daily_quiz_id"],
        current_question_index=row["current_question_index"],
        answers={a["question_id"]: a["answer"] for a in answers},
        status=effective_status(row["status"], started_at, now, settings),
        started_at=started_at,
        last_activity_at=parse_iso(row["last_activity_at"]),
        timezone=row["timezone"],
        completed_at=parse_iso(row["completed_at"]) if row["completed_at"] else None,
    )
    session.warnings = _warnings(session, now, settings)
    return session


def _fetch_row(conn: sqlite3.Connection, session_id: int):
    row = conn.execute("SELECT * FROM quiz_sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        raise NotFound(f"Quiz session {session_id} not found")
    return row


def _require_writable(row, user_id: str, now: datetime, settings: EngineSettings) -> None:
    if row["user_id"] != user_id:
        raise Forbidden("Access denied")
    status = effective_status(row["status"], parse_iso(row["started_at"]), now, settings)
    if status is SessionStatus.COMPLETED:
        raise SessionAlreadyCompleted(f"Quiz session {row['id']} already completed")
    if status is SessionStatus.EXPIRED:
        raise Gone(f"Quiz session {row['id']} has expired")


def _upsert_answer(conn: sqlite3.Connection, session_id: int, question_id: int, answer: str, now: datetime) -> None:
    conn.execute(
        """INSERT INTO session_answers
        (session_id, question_id, answer, revisions, first_answered_at, updated_at)
        VALUES (?, ?, ?, 0, ?, ?)
        ON CONFLICT(session_id, question_id) DO UPDATE SET
            revisions = session_answers.revisions
                + CASE WHEN session_answers.answer != excluded.answer THEN 1 ELSE 0 END,
            answer = excluded.answer,
            updated_at = excluded.updated_at""",
        (session_id, question_id, answer, to_iso(now), to_iso(now)),
    )


def start_session(
    db_path: str,
    user_id: str,
    daily_quiz_id: int,
    timezone: str = "UTC",
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> QuizSession:
    """Start, or resume, the user's attempt at a daily quiz.

    An active attempt is returned as is rather than duplicated. A user who
    already completed today's quiz in ``timezone`` is refused.
    """
    now = now or utcnow()
    settings = settings or load_settings(db_path)
    today = date_key_for(now, timezone)
    get_daily_quiz(db_path, daily_quiz_id)
    cutoff = to_iso(now - timedelta(hours=settings.session_timeout_hours))
    try:
        with transaction(db_path) as conn:
            done = conn.execute(
                """SELECT s.id FROM quiz_sessions s
                JOIN daily_quizzes q ON q.id = s.daily_quiz_id
                WHERE s.user_id = ? AND s.status = 'completed'
                AND (s.daily_quiz_id = ? OR q.date_key = ?)""",
                (user_id, daily_quiz_id, today),
            ).fetchone()
            if done:
                raise AlreadyCompletedToday(f"User {user_id} already completed today's quiz")
            conn.execute(
                """UPDATE quiz_sessions SET status = 'expired'
                WHERE user_id = ? AND daily_quiz_id = ? AND status = 'in_progress' AND started_at <= ?""",
                (user_id, daily_quiz_id, cutoff),
            )
            row = conn.execute(
                """SELECT * FROM quiz_sessions
                WHERE user_id = ? AND daily_quiz_id = ? AND status = 'in_progress'""",
                (user_id, daily_quiz_id),
            ).fetchone()
            if row:
                logger.info("Resuming session %d for %s", row["id"], user_id)
                return _load_session(conn, row, now, settings)
            cur = conn.execute(
                """INSERT INTO quiz_sessions
                (user_id, daily_quiz_id, current_question_index, status, timezone, started_at, last_activity_at)
                VALUES (?, ?, 0, 'in_progress', ?, ?, ?)""",
                (user_id, daily_quiz_id, timezone, to_iso(now), to_iso(now)),
            )
            logger.info("Started session %d for %s on quiz %d", cur.lastrowid, user_id, daily_quiz_id)
            return _load_session(conn, _fetch_row(conn, cur.lastrowid), now, settings)
    except sqlite3.Error as e:
        raise Internal(f"Failed to start quiz session: {e}") from e


def record_answer(
    db_path: str,
    session_id: int,
    user_id: str,
    question_id: int,
    answer: str,
    advance: bool = True,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> QuizSession:
    """Save (or overwrite) the answer to one question.

    Resubmitting the same answer changes nothing but the activity timestamp
    and, when ``advance`` is set, moves the pointer one step, never past the
    end of the quiz.
    """
    now = now or utcnow()
    settings = settings or load_settings(db_path)
    if not answer or not answer.strip():
        raise Unprocessable("Answer cannot be empty")
    try:
        with transaction(db_path) as conn:
            row = _fetch_row(conn, session_id)
            _require_writable(row, user_id, now, settings)
            quiz = get_daily_quiz(db_path, row["daily_quiz_id"])
            if question_id not in quiz.question_ids:
                raise NotFound(f"Question {question_id} is not part of this quiz")
            # Idle time is measured before this call refreshes the activity stamp.
            idle_warnings = _load_session(conn, row, now, settings).warnings
            _upsert_answer(conn, session_id, question_id, answer, now)
            conn.execute(
                """UPDATE quiz_sessions SET
                    current_question_index = MIN(current_question_index + ?, ?),
                    last_activity_at = ?
                WHERE id = ?""",
                (1 if advance else 0, quiz.total_questions, to_iso(now), session_id),
            )
            session = _load_session(conn, _fetch_row(conn, session_id), now, settings)
            session.warnings = idle_warnings
            return session
    except sqlite3.Error as e:
        raise Internal(f"Failed to save answer: {e}") from e


def _answer_details(conn: sqlite3.Connection, session_id: int) -> dict:
    rows = conn.execute(
        "SELECT question_id, revisions, first_answered_at FROM session_answers WHERE session_id = ?",
        (session_id,),
    ).fetchall()
    return {
        r["question_id"]: {"revisions": r["revisions"], "first_answered_at": parse_iso(r["first_answered_at"])}
        for r in rows
    }


def _schedule_reviews(db_path: str, user_id: str, result: QuizResult, details: dict, now: datetime) -> None:
    for answer in result.answers:
        if answer.question_id not in details:
            continue
        info = details[answer.question_id]
        outcome = outcome_for_answer(
            answer.is_correct, info["revisions"], answer.time_spent_ms / 1000
        )
        try:
            record_review(db_path, user_id, answer.question_id, outcome, now)
        except sqlite3.Error:
            logger.warning(
                "Spaced repetition update failed for %s/%d", user_id, answer.question_id, exc_info=True
            )


def complete_session(
    db_path: str,
    session_id: int,
    user_id: str,
    final_answers: dict | None = None,
    force: bool = False,
    now: datetime | None = None,
    notifier: Notifier | None = None,
    settings: EngineSettings | None = None,
) -> QuizResult:
    """Finish a session: merge final answers, score it, update the streak.

    Everything up to and including the streak update commits as one
    transaction. Review scheduling and notification run afterwards and
    cannot undo the completion.
    """
    now = now or utcnow()
    settings = settings or load_settings(db_path)
    try:
        with transaction(db_path) as conn:
            row = _fetch_row(conn, session_id)
            _require_writable(row, user_id, now, settings)
            quiz = get_daily_quiz(db_path, row["daily_quiz_id"])

            for question_id, answer in (final_answers or {}).items():
                if not answer or not answer.strip():
                    continue
                if question_id not in quiz.question_ids:
                    raise NotFound(f"Question {question_id} is not part of this quiz")
                _upsert_answer(conn, session_id, question_id, answer, now)

            session = _load_session(conn, row, now, settings)
            answered = len(set(session.answers) & set(quiz.question_ids))
            if answered < quiz.total_questions and not force:
                raise IncompleteQuiz(quiz.total_questions - answered, quiz.total_questions)

            updated = conn.execute(
                """UPDATE quiz_sessions SET status = 'completed', completed_at = ?, last_activity_at = ?
                WHERE id = ? AND status = 'in_progress'""",
                (to_iso(now), to_iso(now), session_id),
            )
            if updated.rowcount != 1:
                raise SessionAlreadyCompleted(f"Quiz session {session_id} already completed")

            questions = get_questions(db_path, quiz.question_ids)
            details = _answer_details(conn, session_id)
            times = {qid: info["first_answered_at"] for qid, info in details.items()}
            result = score(session, quiz, questions, now, answer_times=times)
            conn.executemany(
                """INSERT INTO quiz_attempts (user_id, session_id, question_id, is_correct, answered_at)
                VALUES (?, ?, ?, ?, ?)""",
                [(user_id, session_id, a.question_id, int(a.is_correct), to_iso(now)) for a in result.answers],
            )
            completion_day = date_key_for(now, row["timezone"])
            streak_updated = record_completion(conn, user_id, completion_day, now, session_id)
            result = replace(result, streak_updated=streak_updated)
    except sqlite3.Error as e:
        raise Internal(f"Failed to complete quiz session: {e}") from e

    logger.info(
        "Session %d completed by %s: %d%% (%s)", session_id, user_id, result.score,
        result.performance_level.value,
    )
    _schedule_reviews(db_path, user_id, result, details, now)
    notify_safely(notifier, CompletionEvent(
        user_id=user_id,
        session_id=session_id,
        date_key=completion_day,
        score=result.score,
        performance_level=result.performance_level.value,
        streak_updated=result.streak_updated,
    ))
    return result


def get_session(
    db_path: str,
    session_id: int,
    user_id: str | None = None,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> QuizSession:
    """Read a session with its effective status and any inactivity warning."""
    now = now or utcnow()
    settings = settings or load_settings(db_path)
    conn = get_connection(db_path)
    try:
        row = _fetch_row(conn, session_id)
        if user_id is not None and row["user_id"] != user_id:
            raise Forbidden("Access denied")
        return _load_session(conn, row, now, settings)
    finally:
        conn.close()


def session_progress(session: QuizSession, quiz: DailyQuiz) -> dict:
    total = quiz.total_questions
    answered = len(set(session.answers) & set(quiz.question_ids))
    index = session.current_question_index
    return {
        "answered": answered,
        "total": total,
        "percentage": round(answered / total * 100) if total else 0,
        "current_question_id": quiz.question_ids[index] if index < total else None,
        "is_complete": answered >= total,
        "can_continue": session.status is SessionStatus.IN_PROGRESS,
    }


def expire_stale_sessions(
    db_path: str, now: datetime | None = None, settings: EngineSettings | None = None
) -> int:
    """Write ``expired`` onto in-progress sessions past the timeout."""
    now = now or utcnow()
    settings = settings or load_settings(db_path)
    cutoff = to_iso(now - timedelta(hours=settings.session_timeout_hours))
    conn = get_connection(db_path)
    count = conn.execute(
        "UPDATE quiz_sessions SET status = 'expired' WHERE status = 'in_progress' AND started_at <= ?",
        (cutoff,),
    ).rowcount
    conn.commit()
    conn.close()
    if count:
        logger.info("Expired %d stale sessions", count)
    return count


def has_completed_today(db_path: str, user_id: str, timezone: str = "UTC", now: datetime | None = None) -> bool:
    today = date_key_for(now or utcnow(), timezone)
    conn = get_connection(db_path)
    row = conn.execute(
        """SELECT s.id FROM quiz_sessions s
        JOIN daily_quizzes q ON q.id = s.daily_quiz_id
        WHERE s.user_id = ? AND s.status = 'completed' AND q.date_key = ?""",
        (user_id, today),
    ).fetchone()
    conn.close()
    return row is not None


def get_user_quiz_status(
    db_path: str, user_id: str, timezone: str = "UTC", now: datetime | None = None
) -> dict:
    """Today's quiz for the user's timezone, plus completion, active session and streak."""
    now = now or utcnow()
    settings = load_settings(db_path)
    quiz = current_daily_quiz(db_path, timezone, now)
    conn = get_connection(db_path)
    rows = conn.execute(
        "SELECT * FROM quiz_sessions WHERE user_id = ? AND daily_quiz_id = ? ORDER BY id DESC",
        (user_id, quiz.id),
    ).fetchall()
    sessions = [_load_session(conn, r, now, settings) for r in rows]
    conn.close()
    active = next((s for s in sessions if s.status is SessionStatus.IN_PROGRESS), None)
    streak = get_streak(db_path, user_id, quiz.date_key)
    return {
        "quiz": quiz,
        "has_completed_today": any(s.status is SessionStatus.COMPLETED for s in sessions),
        "active_session": active,
        "streak": {"current": streak.current_streak, "longest": streak.longest_streak},
    }
