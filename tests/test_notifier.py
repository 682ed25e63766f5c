import logging
from datetime import timedelta

from quiz_engine.db import get_connection, init_db
from quiz_engine.notifier import (
    CompletionEvent, LoggingNotifier, Notifier, StreakReminder, notify_safely, send_streak_reminders,
)
from quiz_engine.questions import get_questions
from quiz_engine.selector import current_daily_quiz
from quiz_engine.sessions import complete_session, get_session, record_answer, start_session
from quiz_engine.models import SessionStatus
from quiz_engine.streaks import record_completion


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


class BrokenNotifier(Notifier):
    def send(self, event):
        raise ConnectionError("push service down")


def _finish_quiz(db, now, notifier):
    quiz = current_daily_quiz(db, "UTC", now)
    session = start_session(db, "u1", quiz.id, now=now)
    for q in get_questions(db, quiz.question_ids):
        record_answer(db, session.id, "u1", q.id, q.answer, now=now)
    return session, complete_session(db, session.id, "u1", now=now + timedelta(minutes=2), notifier=notifier)


def test_completion_event_delivered(seeded_db, now):
    notifier = RecordingNotifier()
    session, result = _finish_quiz(seeded_db, now, notifier)
    assert notifier.events == [CompletionEvent(
        user_id="u1",
        session_id=session.id,
        date_key="2024-01-15",
        score=100,
        performance_level="excellent",
        streak_updated=True,
    )]


def test_failing_notifier_does_not_undo_completion(seeded_db, now, caplog):
    with caplog.at_level(logging.WARNING, logger="quiz_engine.notifier"):
        session, result = _finish_quiz(seeded_db, now, BrokenNotifier())
    assert result.score == 100
    assert get_session(seeded_db, session.id, now=now).status is SessionStatus.COMPLETED
    assert "Notifier failed" in caplog.text


def test_notify_safely():
    assert not notify_safely(None, "event")
    assert notify_safely(LoggingNotifier(), "event")
    assert not notify_safely(BrokenNotifier(), "event")


def test_send_streak_reminders(tmp_db, now):
    init_db(tmp_db)
    conn = get_connection(tmp_db)
    record_completion(conn, "at-risk", "2024-01-14", now)
    record_completion(conn, "safe", "2024-01-15", now)
    conn.commit()
    conn.close()
    notifier = RecordingNotifier()
    assert send_streak_reminders(tmp_db, notifier, now) == 1
    assert notifier.events == [StreakReminder("at-risk", 1, "2024-01-15")]
