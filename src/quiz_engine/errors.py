"""Engine error taxonomy.

Each error carries an HTTP-style ``status`` so request handlers can map it
without inspecting messages.
"""


class QuizEngineError(Exception):
    status = 500


class NotFound(QuizEngineError):
    status = 404


class Forbidden(QuizEngineError):
    status = 403


class Conflict(QuizEngineError):
    status = 409


class AlreadyCompletedToday(Conflict):
    pass


class SessionAlreadyCompleted(Conflict):
    pass


class Gone(QuizEngineError):
    status = 410


class Unprocessable(QuizEngineError):
    status = 422


class IncompleteQuiz(Unprocessable):
    def __init__(self, remaining: int, total: int):
        self.remaining = remaining
        self.total = total
        super().__init__(
            f"Quiz incomplete. {remaining} of {total} questions remain unanswered."
        )


class InsufficientInventory(QuizEngineError):
    status = 503


class Internal(QuizEngineError):
    status = 500
