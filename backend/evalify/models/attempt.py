from enum import Enum
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from evalify.models.question import QuestionResponse


class SubmissionStatus(Enum):
    NOT_SUBMITTED = "NOT_SUBMITTED"
    SUBMITTED = "SUBMITTED"
    AUTO_SUBMITTED = "AUTO_SUBMITTED"


class AttemptRecord(BaseModel):
    quiz_id: str
    student_id: str
    start_time: datetime
    end_time: datetime  # personal deadline, capped at the quiz end time
    submitted_at: Optional[datetime] = None
    ips: List[str] = Field(default_factory=list)
    submission_status: SubmissionStatus = SubmissionStatus.NOT_SUBMITTED
    responses: List[QuestionResponse] = Field(default_factory=list)

    @property
    def is_submitted(self) -> bool:
        return self.submission_status != SubmissionStatus.NOT_SUBMITTED
