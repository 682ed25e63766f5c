"""Quiz scoring."""
from datetime import datetime

from quiz_engine.config import DIFFICULTIES
from quiz_engine.models import (
    AnswerResult, DailyQuiz, PerformanceLevel, Question, QuizResult, QuizSession,
)
from quiz_engine.timeutil import elapsed_ms


def answers_match(given: str | None, expected: str) -> bool:
    if given is None:
        return False
    return given.strip().lower() == expected.strip().lower()


def performance_level(score: int) -> PerformanceLevel:
    if score >= 90:
        return PerformanceLevel.EXCELLENT
    elif score >= 70:
        return PerformanceLevel.GOOD
    elif score >= 50:
        return PerformanceLevel.FAIR
    return PerformanceLevel.NEEDS_IMPROVEMENT


def percentage(correct: int, total: int) -> int:
    if total == 0:
        return 0
    # Half-up, not banker's rounding: 2/8 is 25, 1/8 is 13.
    return int(correct * 100 / total + 0.5)


def attribute_time(session: QuizSession, answer_times: dict | None) -> dict:
    """Milliseconds spent per question.

    ``answer_times`` maps question id to the instant it was first answered.
    Questions are charged the gap since the previous first answer, the first
    one since the session start.
    """
    if not answer_times:
        return {}
    spent = {}
    previous = session.started_at
    for qid, moment in sorted(answer_times.items(), key=lambda item: item[1]):
        spent[qid] = elapsed_ms(previous, moment)
        previous = moment
    return spent


def score(
    session: QuizSession,
    daily_quiz: DailyQuiz,
    questions: list[Question],
    now: datetime,
    answer_times: dict | None = None,
) -> QuizResult:
    """Score ``session`` against the quiz's question order.

    Pure: the same answers against the same quiz always give the same score,
    correct count and performance level. ``now`` only feeds elapsed time.
    """
    by_id = {q.id: q for q in questions}
    spent = attribute_time(session, answer_times)
    breakdown = {d: {"correct": 0, "total": 0} for d in DIFFICULTIES}
    results = []
    correct = 0
    for qid in daily_quiz.question_ids:
        question = by_id[qid]
        selected = session.answers.get(qid)
        is_correct = answers_match(selected, question.answer)
        correct += is_correct
        breakdown[question.difficulty]["total"] += 1
        breakdown[question.difficulty]["correct"] += is_correct
        results.append(AnswerResult(
            question_id=qid,
            selected_answer=selected or "",
            is_correct=is_correct,
            time_spent_ms=spent.get(qid, 0),
        ))
    total = daily_quiz.total_questions
    pct = percentage(correct, total)
    return QuizResult(
        session_id=session.id,
        score=pct,
        total_questions=total,
        correct_answers=correct,
        time_spent_ms=elapsed_ms(session.started_at, now),
        answers=tuple(results),
        performance_level=performance_level(pct),
        difficulty_breakdown=breakdown,
    )
