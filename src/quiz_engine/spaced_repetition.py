"""Leveled spaced-repetition update (again/hard/good/easy)."""
import math
from dataclasses import replace
from datetime import datetime, timedelta

from quiz_engine.models import ReviewOutcome, SpacedRepetitionEntry

MIN_EASE = 1.3
DEFAULT_EASE = 2.5
EASY_BONUS = 1.3
HARD_FACTOR = 1.2


def next_review_state(
    entry: SpacedRepetitionEntry,
    outcome: ReviewOutcome | str,
    now: datetime,
) -> SpacedRepetitionEntry:
    """Return the entry rescheduled after a review with ``outcome``.

    Args:
        entry: Current state for the (user, question) pair
        outcome: again, hard, good or easy
        now: Review instant; the next due date is counted from here

    Returns:
        New SpacedRepetitionEntry; ``entry`` is left untouched.
    """
    outcome = ReviewOutcome(outcome)
    ease = entry.ease_factor
    reps = entry.repetitions

    if outcome is ReviewOutcome.AGAIN:
        reps = 0
        interval = 1
        ease = ease - 0.2
    elif outcome is ReviewOutcome.HARD:
        reps += 1
        interval = max(1, math.floor(entry.interval * HARD_FACTOR))
        ease = ease - 0.15
    else:
        reps += 1
        if reps == 1:
            interval = 1
        elif reps == 2:
            interval = 6
        else:
            interval = max(1, round(entry.interval * entry.ease_factor))
        if outcome is ReviewOutcome.EASY:
            interval = max(interval + 1, round(interval * EASY_BONUS))
            ease = ease + 0.15

    return replace(
        entry,
        ease_factor=round(max(MIN_EASE, ease), 2),
        interval=interval,
        repetitions=reps,
        next_due=now + timedelta(days=interval),
        last_outcome=outcome.value,
    )


def initial_review_state(
    user_id: str, question_id: int, outcome: ReviewOutcome | str, now: datetime
) -> SpacedRepetitionEntry:
    """Entry for a question seen for the first time."""
    fresh = SpacedRepetitionEntry(user_id=user_id, question_id=question_id, ease_factor=DEFAULT_EASE)
    return next_review_state(fresh, outcome, now)


def outcome_for_answer(is_correct: bool, revisions: int = 0, seconds: float | None = None) -> ReviewOutcome:
    """Map a scored quiz answer onto a review outcome.

    Wrong is ``again``; right after changing the answer is ``hard``; right in
    under 15 seconds is ``easy``; anything else right is ``good``.
    """
    if not is_correct:
        return ReviewOutcome.AGAIN
    if revisions > 0:
        return ReviewOutcome.HARD
    if seconds is not None and seconds < 15:
        return ReviewOutcome.EASY
    return ReviewOutcome.GOOD
