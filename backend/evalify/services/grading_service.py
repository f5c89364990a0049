import logging
import math
import re
from typing import Dict, List, Optional

from evalify.errors import GradingDataError
from evalify.models.question import (
    EXTERNALLY_GRADED_TYPES,
    OBJECTIVE_TYPES,
    ExternalGrade,
    GradedResponse,
    GradeStatus,
    Question,
    QuestionResponse,
    QuestionType,
)
from evalify.models.quiz import EvaluationSettings

logger = logging.getLogger(__name__)

NOT_ATTEMPTED = "not attempted"


class ResponseGrader:
    """Turns a submitted response into a score for one question.

    Objective types are graded here. Descriptive, coding and file-upload answers
    are graded elsewhere; this class only checks the bounds of what it receives.
    """

    def grade(
        self,
        question: Question,
        response: QuestionResponse,
        settings: Optional[EvaluationSettings] = None,
        external: Optional[ExternalGrade] = None,
    ) -> GradedResponse:
        """Grade a single response"""
        settings = settings or EvaluationSettings()

        if response.question_id != question.id:
            raise GradingDataError(
                question.id, f"response belongs to question {response.question_id}"
            )

        self._check_answer_data(question)

        if not response.attempted:
            return self._graded(
                question,
                response,
                status=GradeStatus.NOT_ATTEMPTED,
                score=0.0,
                remarks=NOT_ATTEMPTED,
            )

        if question.type in OBJECTIVE_TYPES:
            return self._grade_choice(question, response, settings)
        if question.type == QuestionType.FILL_IN_BLANK:
            return self._grade_fill_in_blank(question, response)
        return self._apply_external(question, response, external)

    def grade_attempt(
        self,
        questions: List[Question],
        responses: List[QuestionResponse],
        settings: Optional[EvaluationSettings] = None,
        external: Optional[Dict[str, ExternalGrade]] = None,
    ) -> List[GradedResponse]:
        """Grade every question of a quiz; unanswered questions are not attempted"""
        external = external or {}
        by_question = {question.id: question for question in questions}
        submitted: Dict[str, QuestionResponse] = {}
        for response in responses:
            if response.question_id not in by_question:
                raise GradingDataError(
                    response.question_id, "response for a question not in this quiz"
                )
            submitted[response.question_id] = response

        graded = []
        for question in questions:
            response = submitted.get(
                question.id,
                QuestionResponse(question_id=question.id, type=question.type),
            )
            graded.append(
                self.grade(question, response, settings, external.get(question.id))
            )
        return graded

    def _check_answer_data(self, question: Question) -> None:
        if question.type in OBJECTIVE_TYPES:
            if not question.answer:
                raise GradingDataError(question.id, "no correct option recorded")
            if question.type == QuestionType.TRUE_FALSE and len(question.answer) != 1:
                raise GradingDataError(
                    question.id, "true/false question must have exactly one answer"
                )
            if question.options:
                unknown = set(question.answer) - set(question.options)
                if unknown:
                    raise GradingDataError(
                        question.id,
                        f"correct options {sorted(unknown)} are not among the choices",
                    )
        elif question.type == QuestionType.FILL_IN_BLANK:
            if not question.expected_answer or not question.expected_answer.strip():
                raise GradingDataError(question.id, "no expected answer recorded")

    def _grade_choice(
        self,
        question: Question,
        response: QuestionResponse,
        settings: EvaluationSettings,
    ) -> GradedResponse:
        selected = set(response.values())
        correct = set(question.answer)

        if selected == correct:
            return self._graded(
                question,
                response,
                status=GradeStatus.GRADED,
                score=question.mark,
                is_correct=True,
            )

        # Partial credit only when the question opts in; any wrong pick voids it
        if (
            question.type == QuestionType.MCQ
            and question.allow_partial is True
            and selected < correct
        ):
            earned = question.mark * len(selected) / len(correct)
            return self._graded(
                question,
                response,
                status=GradeStatus.GRADED,
                score=earned,
                is_correct=False,
                breakdown=f"{len(selected)} of {len(correct)} correct options",
            )

        return self._graded(
            question,
            response,
            status=GradeStatus.GRADED,
            score=0.0,
            negative_score=self._penalty(question, settings),
            is_correct=False,
        )

    def _grade_fill_in_blank(
        self, question: Question, response: QuestionResponse
    ) -> GradedResponse:
        submitted = " ".join(response.values())
        matched = self._normalize_text(
            submitted, question.case_sensitive
        ) == self._normalize_text(question.expected_answer, question.case_sensitive)
        return self._graded(
            question,
            response,
            status=GradeStatus.GRADED,
            score=question.mark if matched else 0.0,
            is_correct=matched,
        )

    def _apply_external(
        self,
        question: Question,
        response: QuestionResponse,
        external: Optional[ExternalGrade],
    ) -> GradedResponse:
        if question.type not in EXTERNALLY_GRADED_TYPES:
            raise GradingDataError(
                question.id, f"cannot grade question type {question.type.value}"
            )
        if external is None:
            return self._graded(
                question, response, status=GradeStatus.PENDING, score=0.0
            )

        score = external.score
        if not math.isfinite(score):
            raise GradingDataError(
                question.id, f"{external.source} score {score} is not a finite number"
            )
        flagged = False
        remarks = external.remarks
        if score < 0 or score > question.mark:
            flagged = True
            clamped = min(max(score, 0.0), question.mark)
            logger.warning(
                "Clamped %s score %s to %s for question %s",
                external.source,
                score,
                clamped,
                question.id,
            )
            note = f"score {score:g} clamped to {clamped:g}"
            remarks = f"{remarks} ({note})" if remarks else note
            score = clamped

        return self._graded(
            question,
            response,
            status=GradeStatus.GRADED,
            score=score,
            is_correct=score == question.mark,
            remarks=remarks,
            breakdown=external.breakdown,
            flagged=flagged,
        )

    def _penalty(
        self, question: Question, settings: EvaluationSettings
    ) -> Optional[float]:
        if not settings.negative_marking:
            return None
        if question.negative_mark is not None:
            penalty = question.negative_mark
        elif settings.mcq_negative_mark is not None:
            penalty = settings.mcq_negative_mark
        elif settings.mcq_negative_percent is not None:
            penalty = question.mark * settings.mcq_negative_percent / 100
        else:
            return None
        return penalty if penalty > 0 else None

    @staticmethod
    def _normalize_text(text: str, case_sensitive: bool) -> str:
        collapsed = re.sub(r"\s+", " ", text.strip())
        return collapsed if case_sensitive else collapsed.casefold()

    @staticmethod
    def _graded(
        question: Question, response: QuestionResponse, **fields
    ) -> GradedResponse:
        return GradedResponse(
            question_id=question.id,
            type=question.type,
            value=response.value,
            **fields,
        )
