"""Data classes for the quiz engine domain model."""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from quiz_engine.timeutil import parse_iso


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PerformanceLevel(str, Enum):
    NEEDS_IMPROVEMENT = "needs_improvement"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


class ReviewOutcome(str, Enum):
    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"


@dataclass(frozen=True)
class Question:
    id: int
    prompt: str
    answer: str
    difficulty: str
    choices: tuple = ()
    topics: frozenset = frozenset()
    verse_ref: Optional[str] = None
    approved_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Question":
        return cls(
            id=row["id"],
            prompt=row["prompt"],
            answer=row["answer"],
            difficulty=row["difficulty"],
            choices=tuple(json.loads(row["choices"] or "[]")),
            topics=frozenset(json.loads(row["topics"] or "[]")),
            verse_ref=row["verse_ref"],
            approved_at=row["approved_at"],
        )

    @property
    def is_free_text(self) -> bool:
        return not self.choices


@dataclass(frozen=True)
class DailyQuiz:
    id: int
    date_key: str
    question_ids: tuple
    created_at: str

    @property
    def total_questions(self) -> int:
        return len(self.question_ids)


@dataclass
class QuizSession:
    id: int
    user_id: str
    daily_quiz_id: int
    current_question_index: int
    answers: dict
    status: SessionStatus
    started_at: datetime
    last_activity_at: datetime
    timezone: str = "UTC"
    completed_at: Optional[datetime] = None
    warnings: list = field(default_factory=list)


@dataclass
class Streak:
    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    last_completion_date: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class SpacedRepetitionEntry:
    user_id: str
    question_id: int
    ease_factor: float = 2.5
    interval: int = 0
    repetitions: int = 0
    next_due: Optional[datetime] = None
    last_outcome: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "SpacedRepetitionEntry":
        return cls(
            user_id=row["user_id"],
            question_id=row["question_id"],
            ease_factor=row["ease_factor"],
            interval=row["interval"],
            repetitions=row["repetitions"],
            next_due=parse_iso(row["next_due"]),
            last_outcome=row["last_outcome"],
        )


@dataclass(frozen=True)
class AnswerResult:
    question_id: int
    selected_answer: str
    is_correct: bool
    time_spent_ms: int = 0


@dataclass(frozen=True)
class QuizResult:
    session_id: int
    score: int
    total_questions: int
    correct_answers: int
    time_spent_ms: int
    answers: tuple
    performance_level: PerformanceLevel
    streak_updated: bool = False
    difficulty_breakdown: dict = field(default_factory=dict)
