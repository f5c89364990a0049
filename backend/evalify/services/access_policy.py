import hmac
import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from evalify.errors import MalformedQuizError
from evalify.models.attempt import AttemptRecord
from evalify.models.quiz import (
    Eligibility,
    IneligibilityReason,
    QuizDefinition,
    RequestContext,
)
from evalify.services.geofence import is_in_assigned_subnet
from evalify.utils.clock import ensure_utc
from evalify.utils.state_machine import QuizLifecycle, QuizLifecycleState, QuizStatus

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_WINDOW = timedelta(minutes=5)


def _reason(code: str, message: str) -> IneligibilityReason:
    return IneligibilityReason(code=code, message=message)


def secrets_match(supplied: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a supplied quiz password"""
    if supplied is None:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


class AccessPolicyEngine:
    """Decides whether a student may enter a quiz attempt at a given instant.

    Every call is a pure function of its inputs; nothing is cached between
    evaluations, so crossing a boundary always yields a fresh decision.
    """

    def __init__(self, access_window: timedelta = DEFAULT_ACCESS_WINDOW):
        self.access_window = access_window

    def validate(self, quiz: QuizDefinition) -> None:
        if quiz.end_time <= quiz.start_time:
            logger.error(
                "Quiz %s has a malformed window: start=%s end=%s",
                quiz.id,
                quiz.start_time.isoformat(),
                quiz.end_time.isoformat(),
            )
            raise MalformedQuizError(
                f"Quiz {quiz.id} ends at or before it starts"
            )

    def lifecycle_state(
        self, quiz: QuizDefinition, now: datetime
    ) -> QuizLifecycleState:
        self.validate(quiz)
        return QuizLifecycle.derive(quiz, ensure_utc(now))

    def evaluate(
        self,
        quiz: QuizDefinition,
        now: datetime,
        student: Optional[str],
        request_context: RequestContext,
    ) -> Eligibility:
        """Derive lifecycle state, entry permission and the failed gates"""
        state = self.lifecycle_state(quiz, now)

        if not request_context.has_valid_session or not student:
            return Eligibility(
                state=state,
                can_enter=False,
                reasons=[_reason("unauthenticated", "Sign in to access this quiz")],
            )

        reasons: List[IneligibilityReason] = []

        if state == QuizLifecycleState.UPCOMING:
            if ensure_utc(now) >= quiz.start_time and quiz.status == QuizStatus.UPCOMING:
                reasons.append(
                    _reason("not_activated", "Quiz has not been opened by staff yet")
                )
            else:
                reasons.append(_reason("not_started", "Quiz has not started yet"))
        elif state == QuizLifecycleState.COMPLETED:
            reasons.append(_reason("ended", "Quiz has already ended"))
        else:
            if not is_in_assigned_subnet(
                quiz.assigned_labs, request_context.network_origin
            ):
                reasons.append(
                    _reason(
                        "outside_lab",
                        "You must be in an authorized lab to start this quiz: "
                        + ", ".join(quiz.lab_names),
                    )
                )
            if quiz.is_protected:
                if not request_context.password:
                    reasons.append(
                        _reason("password_required", "This quiz requires a password")
                    )
                elif not secrets_match(request_context.password, quiz.password):
                    reasons.append(
                        _reason("invalid_password", "Invalid quiz password")
                    )

        can_enter = state == QuizLifecycleState.LIVE and not reasons
        logger.debug(
            "Evaluated quiz %s for student %s: state=%s can_enter=%s reasons=%s",
            quiz.id,
            student,
            state.value,
            can_enter,
            [reason.code for reason in reasons],
        )
        return Eligibility(state=state, can_enter=can_enter, reasons=reasons)

    def student_state(
        self,
        quiz: QuizDefinition,
        now: datetime,
        attempt: Optional[AttemptRecord],
    ) -> QuizLifecycleState:
        """State as shown in a student's own quiz list"""
        state = self.lifecycle_state(quiz, now)
        if attempt is not None and attempt.is_submitted:
            return QuizLifecycleState.COMPLETED
        # Closed without a submission, whether or not the student ever started
        if state == QuizLifecycleState.COMPLETED:
            return QuizLifecycleState.MISSED
        return state

    def access_opens_at(self, quiz: QuizDefinition) -> datetime:
        return quiz.start_time - self.access_window

    def instructions_accessible(self, quiz: QuizDefinition, now: datetime) -> bool:
        return ensure_utc(now) >= self.access_opens_at(quiz)

    def minutes_until_access(self, quiz: QuizDefinition, now: datetime) -> int:
        remaining = (self.access_opens_at(quiz) - ensure_utc(now)).total_seconds()
        return max(0, math.ceil(remaining / 60))

    def can_view_result(self, quiz: QuizDefinition, now: datetime) -> bool:
        """Results are visible only after the quiz closes and only when published"""
        if not quiz.publish_result:
            return False
        return self.lifecycle_state(quiz, now) == QuizLifecycleState.COMPLETED
