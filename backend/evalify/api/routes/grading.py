import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from evalify.api.deps import (
    Identity,
    get_clock,
    get_llm_grader,
    get_quiz_service,
    http_error,
    require_staff,
    require_user,
)
from evalify.errors import EvalifyError, LLMGradingError
from evalify.models.question import ExternalGrade, Question, QuestionResponse
from evalify.models.quiz import EvaluationSettings
from evalify.services.llm_grader import LLMGrader
from evalify.services.quiz_service import QuizService
from evalify.utils.clock import Clock

logger = logging.getLogger(__name__)

router = APIRouter()


class GradeRequest(BaseModel):
    question: Question
    response: QuestionResponse
    settings: Optional[EvaluationSettings] = None
    external: Optional[ExternalGrade] = None


@router.post("/grade")
async def grade_response(
    request: GradeRequest,
    identity: Identity = Depends(require_staff),
    quiz_service: QuizService = Depends(get_quiz_service),
):
    """Grade a single response against its question"""
    try:
        return quiz_service.grader.grade(
            request.question, request.response, request.settings, request.external
        )
    except EvalifyError as e:
        raise http_error(e)


@router.post("/quiz/{quiz_id}/student/{student_id}/evaluate")
async def evaluate_attempt(
    quiz_id: str,
    student_id: str,
    identity: Identity = Depends(require_staff),
    quiz_service: QuizService = Depends(get_quiz_service),
    llm_grader: LLMGrader = Depends(get_llm_grader),
):
    """Grade a submitted attempt, running the LLM over descriptive answers if enabled"""
    try:
        quiz = quiz_service.get_quiz(quiz_id)
        if quiz.settings.llm_evaluation_enabled:
            for question, response in quiz_service.pending_llm_items(
                quiz_id, student_id
            ):
                try:
                    grade = await llm_grader.grade(question, response, quiz.settings)
                except LLMGradingError as e:
                    # Left pending for manual grading
                    logger.warning(
                        "LLM grading failed for quiz %s question %s: %s",
                        quiz_id,
                        question.id,
                        e,
                    )
                    continue
                quiz_service.record_external_grade(
                    quiz_id, student_id, question.id, grade
                )
        return quiz_service.evaluate_attempt(quiz_id, student_id)
    except EvalifyError as e:
        raise http_error(e)


@router.post("/quiz/{quiz_id}/student/{student_id}/question/{question_id}/grade")
async def grade_question(
    quiz_id: str,
    student_id: str,
    question_id: str,
    grade: ExternalGrade,
    identity: Identity = Depends(require_staff),
    quiz_service: QuizService = Depends(get_quiz_service),
):
    """Record a manual grade and re-derive the result"""
    try:
        return quiz_service.apply_external_grade(
            quiz_id, student_id, question_id, grade
        )
    except EvalifyError as e:
        raise http_error(e)


@router.get("/quiz/{quiz_id}/report")
async def quiz_report(
    quiz_id: str,
    identity: Identity = Depends(require_staff),
    quiz_service: QuizService = Depends(get_quiz_service),
):
    """Score distribution and per-question statistics"""
    try:
        return quiz_service.build_report(quiz_id)
    except EvalifyError as e:
        raise http_error(e)


@router.post("/auto-submit")
async def auto_submit(
    identity: Identity = Depends(require_staff),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Close running attempts whose time is up on auto-submit quizzes"""
    return {"auto_submitted": quiz_service.auto_submit_expired(clock.now())}


@router.get("/student/{student_id}/performance")
async def student_performance(
    student_id: str,
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Dashboard summary across a student's finished quizzes"""
    if identity.user_id != student_id and not identity.is_staff:
        raise HTTPException(status_code=403, detail="Forbidden")
    try:
        return quiz_service.performance(student_id, clock.now())
    except EvalifyError as e:
        raise http_error(e)
