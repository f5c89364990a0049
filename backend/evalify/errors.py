from datetime import datetime


class EvalifyError(Exception):
    """Base class for quiz core errors"""


class QuizNotFoundError(EvalifyError):
    def __init__(self, quiz_id: str):
        super().__init__(f"Quiz {quiz_id} not found")
        self.quiz_id = quiz_id


class QuizNotYetAccessibleError(EvalifyError):
    """Instructions were requested before the access window opened"""

    def __init__(self, quiz_id: str, opens_at: datetime, minutes_remaining: int):
        super().__init__(
            f"Quiz instructions will be available {minutes_remaining} minutes before the quiz starts"
        )
        self.quiz_id = quiz_id
        self.opens_at = opens_at
        self.minutes_remaining = minutes_remaining


class AttemptError(EvalifyError):
    """An attempt operation is not valid for the attempt's current status"""


class DataIntegrityError(EvalifyError):
    """Upstream data is malformed; must be surfaced to staff, never defaulted"""


class MalformedQuizError(DataIntegrityError):
    pass


class GradingDataError(DataIntegrityError):
    def __init__(self, question_id: str, message: str):
        super().__init__(f"Question {question_id}: {message}")
        self.question_id = question_id


class NormalizationError(DataIntegrityError):
    pass


class EligibilityFetchError(EvalifyError):
    """Transient failure while re-fetching eligibility"""


class LLMGradingError(EvalifyError):
    pass
