from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from evalify.utils.clock import ensure_utc
from evalify.utils.state_machine import QuizLifecycleState, QuizStatus


class Lab(BaseModel):
    id: str
    name: str
    block: str
    subnets: List[str] = Field(default_factory=list)  # CIDR ranges, never shown to students


class EvaluationSettings(BaseModel):
    """Per-quiz scoring policy"""

    negative_marking: bool = False
    mcq_negative_mark: Optional[float] = None
    mcq_negative_percent: Optional[float] = None
    allow_negative_total: bool = False
    score_floor: float = 0.0
    llm_evaluation_enabled: bool = False
    llm_model_name: Optional[str] = None
    desc_llm_system_prompt: Optional[str] = None


class QuizDefinition(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    instructions: Optional[str] = None
    start_time: datetime
    end_time: datetime
    duration: timedelta
    status: QuizStatus = QuizStatus.ACTIVE
    password: Optional[str] = None
    assigned_labs: List[Lab] = Field(default_factory=list)
    publish_result: bool = False
    auto_submit: bool = False
    settings: EvaluationSettings = Field(default_factory=EvaluationSettings)

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_protected(self) -> bool:
        return bool(self.password)

    @property
    def lab_names(self) -> List[str]:
        return [lab.name for lab in self.assigned_labs]


class RequestContext(BaseModel):
    """What the serving layer knows about the requester"""

    network_origin: Optional[str] = None
    has_valid_session: bool = False
    password: Optional[str] = None


class IneligibilityReason(BaseModel):
    code: str
    message: str


class Eligibility(BaseModel):
    state: QuizLifecycleState
    can_enter: bool
    reasons: List[IneligibilityReason] = Field(default_factory=list)

    def reason_codes(self) -> List[str]:
        return [reason.code for reason in self.reasons]
