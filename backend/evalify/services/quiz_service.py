import json
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from evalify.errors import (
    AttemptError,
    GradingDataError,
    MalformedQuizError,
    QuizNotFoundError,
    QuizNotYetAccessibleError,
)
from evalify.models.attempt import AttemptRecord, SubmissionStatus
from evalify.models.question import (
    ExternalGrade,
    Question,
    QuestionResponse,
    QuestionType,
)
from evalify.models.quiz import Eligibility, QuizDefinition, RequestContext
from evalify.models.result import PerformanceEntry, PerformanceSummary, QuizReport, QuizResult
from evalify.services.access_policy import AccessPolicyEngine
from evalify.services.grading_service import ResponseGrader
from evalify.services.result_service import ResultAggregator
from evalify.utils.clock import ensure_utc
from evalify.utils.state_machine import QuizLifecycleState

logger = logging.getLogger(__name__)

AttemptKey = Tuple[str, str]


class QuizService:
    def __init__(
        self,
        policy: Optional[AccessPolicyEngine] = None,
        grader: Optional[ResponseGrader] = None,
        aggregator: Optional[ResultAggregator] = None,
    ):
        """
        Initialise the quiz store.

        Quizzes, attempts and results are held in memory; a JSON seed file can
        be loaded with load_seed().
        """
        self.policy = policy or AccessPolicyEngine()
        self.grader = grader or ResponseGrader()
        self.aggregator = aggregator or ResultAggregator()

        self.quizzes: Dict[str, QuizDefinition] = {}
        self.questions: Dict[str, List[Question]] = {}
        self.assigned_students: Dict[str, Set[str]] = {}
        self.attempts: Dict[AttemptKey, AttemptRecord] = {}
        self.results: Dict[AttemptKey, QuizResult] = {}
        self.external_grades: Dict[AttemptKey, Dict[str, ExternalGrade]] = {}

    def reset(self) -> None:
        self.quizzes.clear()
        self.questions.clear()
        self.assigned_students.clear()
        self.attempts.clear()
        self.results.clear()
        self.external_grades.clear()

    def load_seed(self, path: Path) -> int:
        """Load quizzes from a JSON file shaped like {"quizzes": [...]}"""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        count = 0
        for entry in data.get("quizzes", []):
            entry = dict(entry)
            questions = [Question(**q) for q in entry.pop("questions", [])]
            students = entry.pop("students", None)
            self.add_quiz(QuizDefinition(**entry), questions, students)
            count += 1
        logger.info("Loaded %d quizzes from %s", count, path)
        return count

    def add_quiz(
        self,
        quiz: QuizDefinition,
        questions: Iterable[Question] = (),
        students: Optional[Iterable[str]] = None,
    ) -> QuizDefinition:
        """Store a quiz; students=None leaves it open to every student"""
        self.policy.validate(quiz)
        lab_ids = [lab.id for lab in quiz.assigned_labs]
        if len(lab_ids) != len(set(lab_ids)):
            raise MalformedQuizError(f"Quiz {quiz.id} lists the same lab twice")

        self.quizzes[quiz.id] = quiz
        self.questions[quiz.id] = list(questions)
        if students is None:
            self.assigned_students.pop(quiz.id, None)
        else:
            self.assigned_students[quiz.id] = set(students)
        return quiz

    def get_quiz(self, quiz_id: str) -> QuizDefinition:
        quiz = self.quizzes.get(quiz_id)
        if quiz is None:
            raise QuizNotFoundError(quiz_id)
        return quiz

    def get_questions(self, quiz_id: str) -> List[Question]:
        self.get_quiz(quiz_id)
        return self.questions.get(quiz_id, [])

    def is_assigned(self, quiz_id: str, student_id: str) -> bool:
        students = self.assigned_students.get(quiz_id)
        return students is None or student_id in students

    def get_quiz_by_id(
        self, quiz_id: str, requester_id: str, now: datetime
    ) -> QuizDefinition:
        """Quiz lookup for a student; unassigned quizzes look like missing ones"""
        quiz = self.quizzes.get(quiz_id)
        if quiz is None or not self.is_assigned(quiz_id, requester_id):
            raise QuizNotFoundError(quiz_id)

        if not self.policy.instructions_accessible(quiz, now):
            raise QuizNotYetAccessibleError(
                quiz_id,
                self.policy.access_opens_at(quiz),
                self.policy.minutes_until_access(quiz, now),
            )
        return quiz

    def get_attempt(self, quiz_id: str, student_id: str) -> Optional[AttemptRecord]:
        return self.attempts.get((quiz_id, student_id))

    def list_student_quizzes(
        self, student_id: str, now: datetime
    ) -> List[Tuple[QuizDefinition, QuizLifecycleState]]:
        listed = []
        for quiz in sorted(
            self.quizzes.values(), key=lambda q: q.start_time, reverse=True
        ):
            if not self.is_assigned(quiz.id, student_id):
                continue
            state = self.policy.student_state(
                quiz, now, self.get_attempt(quiz.id, student_id)
            )
            listed.append((quiz, state))
        return listed

    def check_eligibility(
        self,
        quiz_id: str,
        student_id: str,
        context: RequestContext,
        now: datetime,
    ) -> Eligibility:
        """Eligibility for polling; unlike get_quiz_by_id it works before access opens"""
        if quiz_id not in self.quizzes or not self.is_assigned(quiz_id, student_id):
            raise QuizNotFoundError(quiz_id)
        return self.policy.evaluate(self.quizzes[quiz_id], now, student_id, context)

    def start_attempt(
        self,
        quiz_id: str,
        student_id: str,
        context: RequestContext,
        now: datetime,
    ) -> Tuple[Eligibility, Optional[AttemptRecord]]:
        """Create or resume an attempt when the student is allowed in"""
        quiz = self.get_quiz_by_id(quiz_id, student_id, now)
        eligibility = self.policy.evaluate(quiz, now, student_id, context)
        if not eligibility.can_enter:
            logger.info(
                "Start refused for quiz %s student %s: %s",
                quiz_id,
                student_id,
                eligibility.reason_codes(),
            )
            return eligibility, None

        now = ensure_utc(now)
        key = (quiz_id, student_id)
        attempt = self.attempts.get(key)
        if attempt is not None:
            if attempt.is_submitted:
                raise AttemptError("Quiz already submitted")
            # Resume keeps the first start's timing and only records the new origin
            if context.network_origin and context.network_origin not in attempt.ips:
                attempt.ips.append(context.network_origin)
            logger.info("Quiz %s resumed by student %s", quiz_id, student_id)
            return eligibility, attempt

        attempt = AttemptRecord(
            quiz_id=quiz_id,
            student_id=student_id,
            start_time=now,
            end_time=min(now + quiz.duration, quiz.end_time),
            ips=[context.network_origin] if context.network_origin else [],
        )
        self.attempts[key] = attempt
        logger.info("Quiz %s started by student %s", quiz_id, student_id)
        return eligibility, attempt

    def save_responses(
        self,
        quiz_id: str,
        student_id: str,
        responses: List[QuestionResponse],
        now: datetime,
    ) -> AttemptRecord:
        """Store in-progress answers so an auto-submit keeps them"""
        attempt = self._running_attempt(quiz_id, student_id, ensure_utc(now))
        self._check_known_questions(quiz_id, responses)
        merged = {response.question_id: response for response in attempt.responses}
        merged.update({response.question_id: response for response in responses})
        attempt.responses = list(merged.values())
        return attempt

    def submit_attempt(
        self,
        quiz_id: str,
        student_id: str,
        responses: List[QuestionResponse],
        now: datetime,
    ) -> AttemptRecord:
        now = ensure_utc(now)
        attempt = self.save_responses(quiz_id, student_id, responses, now)
        attempt.submission_status = SubmissionStatus.SUBMITTED
        attempt.submitted_at = now
        logger.info("Quiz %s submitted by student %s", quiz_id, student_id)
        return attempt

    def auto_submit_expired(self, now: datetime) -> int:
        """Mark running attempts past their deadline as auto-submitted"""
        now = ensure_utc(now)
        submitted = 0
        for attempt in self.attempts.values():
            quiz = self.quizzes.get(attempt.quiz_id)
            if quiz is None or not quiz.auto_submit or attempt.is_submitted:
                continue
            if attempt.end_time < now:
                attempt.submission_status = SubmissionStatus.AUTO_SUBMITTED
                attempt.submitted_at = now
                submitted += 1
                logger.info(
                    "Quiz %s auto-submitted for student %s",
                    attempt.quiz_id,
                    attempt.student_id,
                )
        return submitted

    def record_external_grade(
        self,
        quiz_id: str,
        student_id: str,
        question_id: str,
        grade: ExternalGrade,
    ) -> None:
        if question_id not in {q.id for q in self.get_questions(quiz_id)}:
            raise GradingDataError(question_id, f"not part of quiz {quiz_id}")
        if not math.isfinite(grade.score):
            raise GradingDataError(question_id, "grade is not a finite number")
        self.external_grades.setdefault((quiz_id, student_id), {})[question_id] = grade

    def pending_llm_items(
        self, quiz_id: str, student_id: str
    ) -> List[Tuple[Question, QuestionResponse]]:
        """Descriptive answers that still need an automated grade"""
        attempt = self._submitted_attempt(quiz_id, student_id)
        graded = self.external_grades.get((quiz_id, student_id), {})
        by_id = {response.question_id: response for response in attempt.responses}
        return [
            (question, by_id[question.id])
            for question in self.get_questions(quiz_id)
            if question.type == QuestionType.DESCRIPTIVE
            and question.id in by_id
            and by_id[question.id].attempted
            and question.id not in graded
        ]

    def evaluate_attempt(self, quiz_id: str, student_id: str) -> QuizResult:
        """Grade a submitted attempt and store its result"""
        quiz = self.get_quiz(quiz_id)
        attempt = self._submitted_attempt(quiz_id, student_id)
        questions = self.get_questions(quiz_id)

        graded = self.grader.grade_attempt(
            questions,
            attempt.responses,
            quiz.settings,
            self.external_grades.get((quiz_id, student_id)),
        )
        result = self.aggregator.aggregate(
            quiz,
            questions,
            graded,
            quiz.settings,
            student_id=student_id,
            start_time=attempt.start_time,
            submitted_at=attempt.submitted_at,
        )
        self.results[(quiz_id, student_id)] = result
        logger.info(
            "Evaluated quiz %s for student %s: %s/%s (%s)",
            quiz_id,
            student_id,
            result.score,
            result.total_score,
            result.evaluation_status.value,
        )
        return result

    def apply_external_grade(
        self,
        quiz_id: str,
        student_id: str,
        question_id: str,
        grade: ExternalGrade,
    ) -> QuizResult:
        """Merge a manual or automated grade and re-derive the result"""
        self.record_external_grade(quiz_id, student_id, question_id, grade)
        return self.evaluate_attempt(quiz_id, student_id)

    def get_result(self, quiz_id: str, student_id: str) -> Optional[QuizResult]:
        return self.results.get((quiz_id, student_id))

    def results_for_quiz(self, quiz_id: str) -> List[QuizResult]:
        return [
            result
            for (result_quiz_id, _), result in self.results.items()
            if result_quiz_id == quiz_id
        ]

    def build_report(self, quiz_id: str) -> QuizReport:
        quiz = self.get_quiz(quiz_id)
        return self.aggregator.build_report(
            quiz, self.get_questions(quiz_id), self.results_for_quiz(quiz_id)
        )

    def performance(self, student_id: str, now: datetime) -> PerformanceSummary:
        entries = [
            PerformanceEntry(
                quiz_id=quiz.id,
                state=state,
                publish_result=quiz.publish_result,
                total_score=sum(q.mark for q in self.get_questions(quiz.id)),
                result=self.get_result(quiz.id, student_id),
                ended_at=quiz.end_time,
            )
            for quiz, state in self.list_student_quizzes(student_id, now)
            # Results stay hidden until the quiz itself has closed
            if self.policy.lifecycle_state(quiz, now) == QuizLifecycleState.COMPLETED
        ]
        return self.aggregator.summarize_performance(entries)

    def _running_attempt(
        self, quiz_id: str, student_id: str, now: datetime
    ) -> AttemptRecord:
        attempt = self.get_attempt(quiz_id, student_id)
        if attempt is None:
            raise AttemptError("No attempt in progress")
        if attempt.is_submitted:
            raise AttemptError("Quiz already submitted")
        if now > attempt.end_time:
            raise AttemptError("Attempt time is over")
        return attempt

    def _check_known_questions(
        self, quiz_id: str, responses: List[QuestionResponse]
    ) -> None:
        known = {question.id for question in self.get_questions(quiz_id)}
        unknown = [r.question_id for r in responses if r.question_id not in known]
        if unknown:
            raise AttemptError(f"Unknown questions in submission: {unknown}")

    def _submitted_attempt(self, quiz_id: str, student_id: str) -> AttemptRecord:
        attempt = self.get_attempt(quiz_id, student_id)
        if attempt is None or not attempt.is_submitted:
            raise AttemptError(
                f"No submitted attempt for quiz {quiz_id} by student {student_id}"
            )
        return attempt
