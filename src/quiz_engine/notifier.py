"""Fire-and-forget notifications for completions and streak reminders."""
import logging
from dataclasses import dataclass
from datetime import datetime

from quiz_engine.streaks import users_at_risk
from quiz_engine.timeutil import date_key_for, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionEvent:
    user_id: str
    session_id: int
    date_key: str
    score: int
    performance_level: str
    streak_updated: bool


@dataclass(frozen=True)
class StreakReminder:
    user_id: str
    current_streak: int
    date_key: str


class Notifier:
    """Delivery backend. Subclasses override ``send``."""

    def send(self, event) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def send(self, event) -> None:
        logger.info("Notification: %s", event)


def notify_safely(notifier: Notifier | None, event) -> bool:
    """Deliver ``event``; a failing notifier is logged, never raised."""
    if notifier is None:
        return False
    try:
        notifier.send(event)
    except Exception:
        logger.warning("Notifier failed for %r", event, exc_info=True)
        return False
    return True


def send_streak_reminders(
    db_path: str, notifier: Notifier, now: datetime | None = None, timezone: str = "UTC"
) -> int:
    """Remind users whose streak ends unless they finish today's quiz."""
    today = date_key_for(now or utcnow(), timezone)
    sent = 0
    for streak in users_at_risk(db_path, today):
        reminder = StreakReminder(streak.user_id, streak.current_streak, today)
        sent += notify_safely(notifier, reminder)
    logger.info("Sent %d streak reminders for %s", sent, today)
    return sent
