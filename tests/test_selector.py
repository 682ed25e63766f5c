import sqlite3
import threading
from datetime import timedelta

import pytest

from quiz_engine import selector
from quiz_engine.config import EngineSettings
from quiz_engine.db import get_connection, init_db
from quiz_engine.errors import InsufficientInventory, NotFound, Unprocessable
from quiz_engine.questions import add_question, get_questions
from quiz_engine.selector import (
    cleanup_old_quizzes, current_daily_quiz, difficulty_counts, generate_upcoming_quizzes,
    get_daily_quiz, get_daily_quiz_for_date, get_or_create_daily_quiz, select_questions,
)
from quiz_engine.sessions import start_session


def test_difficulty_counts_default_mix():
    assert difficulty_counts(5, {"easy": 0.4, "medium": 0.4, "hard": 0.2}) == {
        "easy": 2, "medium": 2, "hard": 1,
    }


def test_difficulty_counts_always_sum_to_total():
    mix = {"easy": 0.4, "medium": 0.4, "hard": 0.2}
    for total in range(0, 21):
        assert sum(difficulty_counts(total, mix).values()) == total


def test_difficulty_counts_overshoot_taken_from_easy():
    # 1.6, 1.6 and 0.8 all round up to 2, 2, 1; easy gives one back.
    assert difficulty_counts(4, {"easy": 0.4, "medium": 0.4, "hard": 0.2}) == {
        "easy": 1, "medium": 2, "hard": 1,
    }


def test_difficulty_counts_needs_positive_weight():
    with pytest.raises(Unprocessable):
        difficulty_counts(5, {"easy": 0, "medium": 0, "hard": 0})


def test_quiz_matches_difficulty_mix(seeded_db, now):
    quiz = get_or_create_daily_quiz(seeded_db, "2024-01-15", now=now)
    assert quiz.total_questions == 5
    assert len(set(quiz.question_ids)) == 5
    levels = [q.difficulty for q in get_questions(seeded_db, quiz.question_ids)]
    assert levels.count("easy") == 2
    assert levels.count("medium") == 2
    assert levels.count("hard") == 1


def test_get_or_create_is_idempotent(seeded_db, now):
    first = get_or_create_daily_quiz(seeded_db, "2024-01-15", now=now)
    second = get_or_create_daily_quiz(seeded_db, "2024-01-15", now=now + timedelta(hours=3))
    assert first == second
    conn = get_connection(seeded_db)
    assert conn.execute("SELECT COUNT(*) FROM daily_quizzes").fetchone()[0] == 1
    conn.close()


def test_selection_is_deterministic_per_date(seeded_db):
    settings = EngineSettings()
    assert select_questions(seeded_db, "2024-01-15", settings) == select_questions(
        seeded_db, "2024-01-15", settings
    )


def test_no_repeats_within_lookback(seeded_db, now):
    keys = ["2024-01-12", "2024-01-13", "2024-01-14", "2024-01-15"]
    quizzes = [get_or_create_daily_quiz(seeded_db, key, now=now) for key in keys]
    for i, quiz in enumerate(quizzes):
        earlier = set()
        for prior in quizzes[max(0, i - 3):i]:
            earlier |= set(prior.question_ids)
        assert not earlier & set(quiz.question_ids)


def test_repeats_allowed_when_fresh_inventory_runs_out(tmp_db, now):
    init_db(tmp_db)
    for i in range(2):
        add_question(tmp_db, f"Easy {i}?", "a", "easy")
        add_question(tmp_db, f"Medium {i}?", "a", "medium")
    add_question(tmp_db, "Hard?", "a", "hard")
    day1 = get_or_create_daily_quiz(tmp_db, "2024-01-14", now=now)
    day2 = get_or_create_daily_quiz(tmp_db, "2024-01-15", now=now)
    assert set(day1.question_ids) == set(day2.question_ids)
    assert day2.total_questions == 5


def test_insufficient_inventory_persists_nothing(tmp_db, now):
    init_db(tmp_db)
    add_question(tmp_db, "Only one?", "a", "easy")
    with pytest.raises(InsufficientInventory) as exc:
        get_or_create_daily_quiz(tmp_db, "2024-01-15", now=now)
    assert exc.value.status == 503
    assert get_daily_quiz_for_date(tmp_db, "2024-01-15") is None


def test_invalid_date_key(seeded_db):
    with pytest.raises(Unprocessable):
        get_or_create_daily_quiz(seeded_db, "15/01/2024")


def test_concurrent_publisher_wins(seeded_db, now, monkeypatch):
    """A quiz published between our read and our insert is the one returned."""
    real_select = selector.select_questions

    def racing_select(db_path, date_key, settings, topic_weights=None):
        ids = real_select(db_path, date_key, settings, topic_weights)
        conn = get_connection(db_path)
        cur = conn.execute(
            "INSERT INTO daily_quizzes (date_key, created_at) VALUES (?, 'other-writer')", (date_key,)
        )
        conn.executemany(
            "INSERT INTO daily_quiz_questions (daily_quiz_id, position, question_id) VALUES (?, ?, ?)",
            [(cur.lastrowid, pos, qid) for pos, qid in enumerate(reversed(ids))],
        )
        conn.commit()
        conn.close()
        return ids

    monkeypatch.setattr(selector, "select_questions", racing_select)
    quiz = get_or_create_daily_quiz(seeded_db, "2024-01-15", now=now)
    assert quiz.created_at == "other-writer"
    conn = get_connection(seeded_db)
    assert conn.execute("SELECT COUNT(*) FROM daily_quizzes").fetchone()[0] == 1
    conn.close()


def test_parallel_creation_yields_one_quiz(seeded_db, now):
    results, errors = [], []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        try:
            results.append(get_or_create_daily_quiz(seeded_db, "2024-01-15", now=now).id)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert not errors
    assert len(set(results)) == 1


def test_topic_weights_favor_topic(seeded_db):
    settings = EngineSettings(questions_per_quiz=2, difficulty_mix={"easy": 1, "medium": 0, "hard": 0})
    weights = {"geography": 50.0}
    hits = 0
    for day in range(1, 11):
        ids = select_questions(seeded_db, f"2024-02-{day:02d}", settings, topic_weights=weights)
        hits += sum("geography" in q.topics for q in get_questions(seeded_db, ids))
    assert hits >= 10


def test_current_daily_quiz_uses_local_date(seeded_db, now):
    late = now.replace(hour=23, minute=30)
    assert current_daily_quiz(seeded_db, "Asia/Tokyo", late).date_key == "2024-01-16"
    assert current_daily_quiz(seeded_db, "UTC", late).date_key == "2024-01-15"


def test_get_daily_quiz_missing(seeded_db):
    with pytest.raises(NotFound):
        get_daily_quiz(seeded_db, 42)


def test_generate_upcoming_quizzes(seeded_db, now):
    summary = generate_upcoming_quizzes(seeded_db, now)
    assert summary["attempted"] == 3
    assert not summary["errors"]
    assert [r["date"] for r in summary["results"]] == ["2024-01-14", "2024-01-15", "2024-01-16"]
    again = generate_upcoming_quizzes(seeded_db, now)
    assert [r["quiz_id"] for r in again["results"]] == [r["quiz_id"] for r in summary["results"]]


def test_generate_upcoming_collects_errors(tmp_db, now):
    init_db(tmp_db)
    summary = generate_upcoming_quizzes(tmp_db, now)
    assert summary["results"] == []
    assert len(summary["errors"]) == 3


def test_cleanup_keeps_recent_and_referenced_quizzes(seeded_db, now):
    old = get_or_create_daily_quiz(seeded_db, "2024-01-01", now=now)
    kept_by_session = get_or_create_daily_quiz(seeded_db, "2024-01-02", now=now)
    recent = get_or_create_daily_quiz(seeded_db, "2024-01-14", now=now)
    start_session(seeded_db, "u1", kept_by_session.id, now=now)

    result = cleanup_old_quizzes(seeded_db, now)
    assert result["quizzes_removed"] == 1
    assert get_daily_quiz_for_date(seeded_db, old.date_key) is None
    assert get_daily_quiz_for_date(seeded_db, kept_by_session.date_key) is not None
    assert get_daily_quiz_for_date(seeded_db, recent.date_key) is not None


def test_cleanup_removes_old_finished_sessions(seeded_db, now):
    quiz = get_or_create_daily_quiz(seeded_db, "2023-11-01", now=now)
    conn = get_connection(seeded_db)
    conn.execute(
        """INSERT INTO quiz_sessions (user_id, daily_quiz_id, status, started_at, last_activity_at)
        VALUES ('u1', ?, 'expired', '2023-11-01T08:00:00+00:00', '2023-11-01T08:00:00+00:00')""",
        (quiz.id,),
    )
    conn.commit()
    conn.close()
    result = cleanup_old_quizzes(seeded_db, now)
    assert result == {"sessions_removed": 1, "quizzes_removed": 1}


def test_date_key_constraint_is_what_guards_creation(seeded_db):
    get_or_create_daily_quiz(seeded_db, "2024-01-15")
    conn = get_connection(seeded_db)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO daily_quizzes (date_key, created_at) VALUES ('2024-01-15', 'x')")
    conn.close()


def test_daily_quiz_is_shared_whatever_the_weights(seeded_db, now):
    plain = get_or_create_daily_quiz(seeded_db, "2024-01-15", now=now)
    weighted = get_or_create_daily_quiz(
        seeded_db, "2024-01-15", topic_weights={"geography": 50.0}, now=now
    )
    assert weighted == plain
