from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class QuestionType(Enum):
    MCQ = "MCQ"
    TRUE_FALSE = "TRUE_FALSE"
    FILL_IN_BLANK = "FILL_IN_BLANK"
    DESCRIPTIVE = "DESCRIPTIVE"
    CODING = "CODING"
    FILE_UPLOAD = "FILE_UPLOAD"


OBJECTIVE_TYPES = {QuestionType.MCQ, QuestionType.TRUE_FALSE}
EXTERNALLY_GRADED_TYPES = {
    QuestionType.DESCRIPTIVE,
    QuestionType.CODING,
    QuestionType.FILE_UPLOAD,
}


class GradeStatus(Enum):
    GRADED = "GRADED"
    PENDING = "PENDING"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"


class Question(BaseModel):
    id: str
    type: QuestionType
    mark: float = Field(ge=0)
    negative_mark: Optional[float] = Field(default=None, ge=0)
    options: List[str] = Field(default_factory=list)
    answer: List[str] = Field(default_factory=list)
    expected_answer: Optional[str] = None
    case_sensitive: bool = False
    allow_partial: Optional[bool] = None
    guidelines: Optional[str] = None
    text: Optional[str] = None


class QuestionResponse(BaseModel):
    question_id: str
    type: QuestionType
    value: Union[List[str], str, None] = None

    def values(self) -> List[str]:
        """Submitted values with empty entries dropped"""
        if self.value is None:
            return []
        raw = [self.value] if isinstance(self.value, str) else self.value
        return [item for item in raw if item is not None and item.strip()]

    @property
    def attempted(self) -> bool:
        return bool(self.values())


class ExternalGrade(BaseModel):
    """Score produced outside the grader (staff or LLM)"""

    score: float = Field(allow_inf_nan=False)
    remarks: Optional[str] = None
    breakdown: Optional[str] = None
    source: str = "manual"


class GradedResponse(BaseModel):
    question_id: str
    type: QuestionType
    value: Union[List[str], str, None] = None
    status: GradeStatus
    score: float = Field(default=0.0, ge=0)
    negative_score: Optional[float] = Field(default=None, ge=0)
    is_correct: Optional[bool] = None
    remarks: Optional[str] = None
    breakdown: Optional[str] = None
    flagged: bool = False

    @property
    def net_score(self) -> float:
        return self.score - (self.negative_score or 0.0)
