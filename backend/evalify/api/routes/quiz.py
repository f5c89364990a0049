from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from evalify.api.deps import (
    Identity,
    client_ip,
    get_clock,
    get_identity,
    get_quiz_service,
    http_error,
    require_user,
)
from evalify.errors import EvalifyError
from evalify.models.question import Question, QuestionResponse
from evalify.models.quiz import QuizDefinition, RequestContext
from evalify.services.geofence import is_in_assigned_subnet
from evalify.services.quiz_service import QuizService
from evalify.utils.clock import Clock

router = APIRouter()


class EntryRequest(BaseModel):
    password: Optional[str] = None


class ResponsesRequest(BaseModel):
    responses: List[QuestionResponse]


def _summary(quiz: QuizDefinition) -> dict:
    return {
        "id": quiz.id,
        "name": quiz.name,
        "start_time": quiz.start_time,
        "end_time": quiz.end_time,
        "duration_minutes": quiz.duration.total_seconds() / 60,
        "is_protected": quiz.is_protected,
        "lab_names": quiz.lab_names,
    }


def _student_question(question: Question) -> dict:
    """Question as shown during an attempt, without its answer key"""
    return question.model_dump(include={"id", "type", "text", "mark", "options"})


def _context(
    request: Request, identity: Optional[Identity], password: Optional[str] = None
) -> RequestContext:
    return RequestContext(
        network_origin=client_ip(request),
        has_valid_session=identity is not None,
        password=password,
    )


@router.get("/student/list")
async def list_quizzes(
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """List a student's quizzes with their state for that student"""
    listed = quiz_service.list_student_quizzes(identity.user_id, clock.now())
    return {
        "quizzes": [
            {**_summary(quiz), "state": state.value} for quiz, state in listed
        ]
    }


@router.get("/{quiz_id}")
async def get_quiz(
    quiz_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Quiz instructions, available shortly before the start"""
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    now = clock.now()
    try:
        quiz = quiz_service.get_quiz_by_id(quiz_id, identity.user_id, now)
    except EvalifyError as e:
        raise http_error(e)

    attempt = quiz_service.get_attempt(quiz_id, identity.user_id)
    state = quiz_service.policy.student_state(quiz, now, attempt)
    return {
        **_summary(quiz),
        "description": quiz.description,
        "instructions": quiz.instructions,
        "state": state.value,
        "auto_submit": quiz.auto_submit,
        "is_in_lab_subnet": is_in_assigned_subnet(
            quiz.assigned_labs, client_ip(request)
        ),
        "submission_status": attempt.submission_status.value if attempt else None,
    }


@router.post("/{quiz_id}/eligibility")
async def get_eligibility(
    quiz_id: str,
    body: EntryRequest,
    request: Request,
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Current lifecycle state and whether the student may enter"""
    try:
        return quiz_service.check_eligibility(
            quiz_id,
            identity.user_id,
            _context(request, identity, body.password),
            clock.now(),
        )
    except EvalifyError as e:
        raise http_error(e)


@router.post("/{quiz_id}/start")
async def start_quiz(
    quiz_id: str,
    body: EntryRequest,
    request: Request,
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Start or resume an attempt"""
    try:
        eligibility, attempt = quiz_service.start_attempt(
            quiz_id,
            identity.user_id,
            _context(request, identity, body.password),
            clock.now(),
        )
    except EvalifyError as e:
        raise http_error(e)

    if attempt is None:
        raise HTTPException(
            status_code=403,
            detail={
                "message": eligibility.reasons[0].message
                if eligibility.reasons
                else "Quiz is not open",
                "state": eligibility.state.value,
                "reasons": [reason.model_dump() for reason in eligibility.reasons],
            },
        )

    return {
        "quiz_id": quiz_id,
        "start_time": attempt.start_time,
        "end_time": attempt.end_time,
        "responses": attempt.responses,
        "questions": [
            _student_question(q) for q in quiz_service.get_questions(quiz_id)
        ],
    }


@router.post("/{quiz_id}/responses")
async def save_responses(
    quiz_id: str,
    body: ResponsesRequest,
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Save answers while the attempt is running"""
    try:
        attempt = quiz_service.save_responses(
            quiz_id, identity.user_id, body.responses, clock.now()
        )
    except EvalifyError as e:
        raise http_error(e)
    return {"quiz_id": quiz_id, "saved": len(attempt.responses)}


@router.post("/{quiz_id}/submit")
async def submit_quiz(
    quiz_id: str,
    body: ResponsesRequest,
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """Submit the attempt (final)"""
    try:
        attempt = quiz_service.submit_attempt(
            quiz_id, identity.user_id, body.responses, clock.now()
        )
    except EvalifyError as e:
        raise http_error(e)
    return {
        "quiz_id": quiz_id,
        "submission_status": attempt.submission_status.value,
        "submitted_at": attempt.submitted_at,
    }


@router.get("/{quiz_id}/result")
async def get_result(
    quiz_id: str,
    identity: Identity = Depends(require_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    clock: Clock = Depends(get_clock),
):
    """A student's own result, once the quiz has closed and results are published"""
    try:
        quiz = quiz_service.get_quiz_by_id(quiz_id, identity.user_id, clock.now())
    except EvalifyError as e:
        raise http_error(e)

    if not quiz_service.policy.can_view_result(quiz, clock.now()):
        raise HTTPException(status_code=403, detail="Results are not available yet")

    result = quiz_service.get_result(quiz_id, identity.user_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Result not found")
    return result
