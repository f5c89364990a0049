from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, Set

if TYPE_CHECKING:
    from evalify.models.quiz import QuizDefinition


class QuizStatus(Enum):
    """Administrative status set by staff, independent of wall-clock"""

    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class QuizLifecycleState(Enum):
    UPCOMING = "UPCOMING"
    LIVE = "LIVE"
    COMPLETED = "COMPLETED"
    MISSED = "MISSED"


class QuizLifecycle:
    """Lifecycle of a quiz, recomputed from the clock on every evaluation"""

    _transitions: Dict[QuizLifecycleState, Set[QuizLifecycleState]] = {
        QuizLifecycleState.UPCOMING: {
            QuizLifecycleState.LIVE,
            QuizLifecycleState.COMPLETED,
            QuizLifecycleState.MISSED,
        },
        QuizLifecycleState.LIVE: {
            QuizLifecycleState.COMPLETED,
            QuizLifecycleState.MISSED,
        },
        QuizLifecycleState.COMPLETED: set(),
        QuizLifecycleState.MISSED: set(),
    }

    @staticmethod
    def derive(quiz: "QuizDefinition", now: datetime) -> QuizLifecycleState:
        """Derive the quiz-wide state; callers validate the window first"""
        if quiz.status == QuizStatus.COMPLETED or now >= quiz.end_time:
            return QuizLifecycleState.COMPLETED
        if now < quiz.start_time:
            return QuizLifecycleState.UPCOMING
        if quiz.status == QuizStatus.ACTIVE:
            return QuizLifecycleState.LIVE
        # Inside the window but not yet activated by staff
        return QuizLifecycleState.UPCOMING

    @classmethod
    def can_transition(
        cls, current: QuizLifecycleState, target: QuizLifecycleState
    ) -> bool:
        """Check if moving from current to target follows wall-clock order"""
        return target in cls._transitions.get(current, set())

    @classmethod
    def is_regression(
        cls, current: QuizLifecycleState, target: QuizLifecycleState
    ) -> bool:
        return current != target and not cls.can_transition(current, target)
