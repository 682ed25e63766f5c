"""Consecutive-day streak tracking.

Only completions write streak state, and only the first completion of a
calendar day counts: ``streak_completions`` is unique per (user, day), so a
second completion that day fails its insert and leaves the streak untouched.
"""
import logging
import sqlite3
from datetime import datetime

from quiz_engine.db import get_connection
from quiz_engine.models import Streak
from quiz_engine.timeutil import days_between, shift_date_key, to_iso

logger = logging.getLogger(__name__)

MILESTONES = (3, 7, 14, 30, 60, 100, 365)


def _row_to_streak(user_id: str, row) -> Streak:
    if not row:
        return Streak(user_id=user_id)
    return Streak(
        user_id=user_id,
        current_streak=row["current_streak"],
        longest_streak=row["longest_streak"],
        last_completion_date=row["last_completion_date"],
        updated_at=row["updated_at"],
    )


def record_completion(
    conn: sqlite3.Connection,
    user_id: str,
    date_key: str,
    now: datetime,
    session_id: int | None = None,
) -> bool:
    """Count a completion on ``date_key`` towards the user's streak.

    Runs on the caller's connection so it commits or rolls back together
    with the session completion. Returns True when the streak advanced.
    """
    try:
        conn.execute(
            "INSERT INTO streak_completions (user_id, date_key, session_id, completed_at) VALUES (?, ?, ?, ?)",
            (user_id, date_key, session_id, to_iso(now)),
        )
    except sqlite3.IntegrityError:
        logger.info("Streak for %s already counted on %s", user_id, date_key)
        return False

    streak = _row_to_streak(
        user_id, conn.execute("SELECT * FROM streaks WHERE user_id = ?", (user_id,)).fetchone()
    )
    last = streak.last_completion_date
    if last is not None and days_between(last, date_key) < 0:
        # Completion dated before the latest counted day (timezone moved west).
        return False
    if last is not None and days_between(last, date_key) == 1:
        current = streak.current_streak + 1
    else:
        current = 1
    longest = max(streak.longest_streak, current)
    conn.execute(
        """INSERT INTO streaks (user_id, current_streak, longest_streak, last_completion_date, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            current_streak = excluded.current_streak,
            longest_streak = excluded.longest_streak,
            last_completion_date = excluded.last_completion_date,
            updated_at = excluded.updated_at""",
        (user_id, current, longest, date_key, to_iso(now)),
    )
    logger.info("Streak for %s is now %d (longest %d)", user_id, current, longest)
    return True


def get_streak(db_path: str, user_id: str, today_key: str | None = None) -> Streak:
    """Stored streak, with the current count zeroed once it has lapsed.

    A streak is alive while the last completion is today or yesterday.
    """
    conn = get_connection(db_path)
    row = conn.execute("SELECT * FROM streaks WHERE user_id = ?", (user_id,)).fetchone()
    conn.close()
    streak = _row_to_streak(user_id, row)
    if today_key and streak.last_completion_date:
        if days_between(streak.last_completion_date, today_key) > 1:
            streak.current_streak = 0
    return streak


def completion_dates(db_path: str, user_id: str, since_key: str) -> set:
    conn = get_connection(db_path)
    rows = conn.execute(
        "SELECT date_key FROM streak_completions WHERE user_id = ? AND date_key >= ?",
        (user_id, since_key),
    ).fetchall()
    conn.close()
    return {r["date_key"] for r in rows}


def next_milestone(current: int) -> int | None:
    return next((m for m in MILESTONES if m > current), None)


def streak_summary(db_path: str, user_id: str, today_key: str, days: int = 30) -> dict:
    streak = get_streak(db_path, user_id, today_key)
    start = shift_date_key(today_key, -(days - 1))
    done = completion_dates(db_path, user_id, start)
    calendar = []
    for offset in range(days):
        key = shift_date_key(start, offset)
        calendar.append({"date": key, "completed": key in done, "is_today": key == today_key})
    milestone = next_milestone(streak.current_streak)
    completed_days = sum(1 for day in calendar if day["completed"])
    return {
        "current": streak.current_streak,
        "longest": streak.longest_streak,
        "is_active": streak.current_streak > 0,
        "is_at_risk": streak.current_streak > 0 and streak.last_completion_date != today_key,
        "next_milestone": milestone,
        "days_until_next_milestone": milestone - streak.current_streak if milestone else None,
        "calendar": calendar,
        "consistency_rate": round(completed_days / days * 100) if days else 0,
    }


def users_at_risk(db_path: str, today_key: str) -> list[Streak]:
    """Users whose streak survives only if they complete a quiz today."""
    conn = get_connection(db_path)
    rows = conn.execute(
        "SELECT * FROM streaks WHERE current_streak > 0 AND last_completion_date = ? ORDER BY user_id",
        (shift_date_key(today_key, -1),),
    ).fetchall()
    conn.close()
    return [_row_to_streak(r["user_id"], r) for r in rows]
