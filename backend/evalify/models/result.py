from enum import Enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from evalify.models.question import GradedResponse
from evalify.utils.state_machine import QuizLifecycleState


class EvaluationStatus(Enum):
    NOT_EVALUATED = "NOT_EVALUATED"
    EVALUATED = "EVALUATED"


class PerformanceBand(Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    AVERAGE = "AVERAGE"
    POOR = "POOR"


class QuizResult(BaseModel):
    quiz_id: str
    student_id: Optional[str] = None
    score: float
    total_score: float
    start_time: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    evaluation_status: EvaluationStatus = EvaluationStatus.NOT_EVALUATED
    graded: List[GradedResponse] = Field(default_factory=list)


class PerformanceEntry(BaseModel):
    """One quiz as seen on a student's dashboard"""

    quiz_id: str
    state: QuizLifecycleState
    publish_result: bool
    total_score: float
    result: Optional[QuizResult] = None
    ended_at: Optional[datetime] = None


class ScorePoint(BaseModel):
    quiz_id: str
    missed: bool
    score: float
    total_score: float
    percentage: float
    band: PerformanceBand
    ended_at: Optional[datetime] = None


class PerformanceSummary(BaseModel):
    average_percentage: float
    counted_quizzes: int
    completed_quizzes: int
    missed_quizzes: int
    excluded_quizzes: int
    history: List[ScorePoint] = Field(default_factory=list)


class QuestionStats(BaseModel):
    question_id: str
    correct: int
    incorrect: int
    not_attempted: int
    pending: int
    total_attempts: int  # graded responses only
    average_marks: float
    max_marks: float


class QuizReport(BaseModel):
    quiz_id: str
    total_students: int
    total_score: float
    average_score: float
    max_score: float
    min_score: float
    distribution: Dict[str, int]
    question_stats: List[QuestionStats] = Field(default_factory=list)
