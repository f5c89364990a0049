import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from evalify.config import get_settings
from evalify.errors import (
    AttemptError,
    DataIntegrityError,
    EvalifyError,
    QuizNotFoundError,
    QuizNotYetAccessibleError,
)
from evalify.services.access_policy import AccessPolicyEngine
from evalify.services.geofence import get_client_ip
from evalify.services.llm_grader import LLMGrader
from evalify.services.quiz_service import QuizService
from evalify.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

STAFF_ROLES = {"STAFF", "FACULTY", "MANAGER", "ADMIN"}


class Identity(BaseModel):
    """Requester as asserted by the authenticating proxy"""

    user_id: str
    role: str = "STUDENT"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[Identity]:
    if not x_user_id or not x_user_id.strip():
        return None
    return Identity(
        user_id=x_user_id.strip(), role=(x_user_role or "STUDENT").strip().upper()
    )


def require_user(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity


def require_staff(identity: Identity = Depends(require_user)) -> Identity:
    if not identity.is_staff:
        raise HTTPException(status_code=403, detail="Staff access required")
    return identity


def client_ip(request: Request) -> Optional[str]:
    peer = request.client.host if request.client else None
    return get_client_ip(
        request.headers, peer, trust_proxy=get_settings().trust_proxy_headers
    )


quiz_service = QuizService(AccessPolicyEngine(get_settings().access_window))
llm_grader = LLMGrader()
clock = SystemClock()


def get_quiz_service() -> QuizService:
    return quiz_service


def get_llm_grader() -> LLMGrader:
    return llm_grader


def get_clock() -> Clock:
    return clock


def http_error(exc: EvalifyError) -> HTTPException:
    """Translate a service error into a response that does not leak internals"""
    if isinstance(exc, QuizNotFoundError):
        return HTTPException(status_code=404, detail="Quiz not found")
    if isinstance(exc, QuizNotYetAccessibleError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AttemptError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DataIntegrityError):
        logger.error("Data integrity error: %s", exc)
        return HTTPException(status_code=422, detail=str(exc))
    logger.error("Unhandled quiz error: %s", exc)
    return HTTPException(status_code=500, detail="Internal error")
