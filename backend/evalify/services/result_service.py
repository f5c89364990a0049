import logging
from datetime import datetime
from typing import Dict, List, Optional

from evalify.errors import GradingDataError, NormalizationError
from evalify.models.question import GradedResponse, GradeStatus, Question
from evalify.models.quiz import EvaluationSettings, QuizDefinition
from evalify.models.result import (
    EvaluationStatus,
    PerformanceBand,
    PerformanceEntry,
    PerformanceSummary,
    QuestionStats,
    QuizReport,
    QuizResult,
    ScorePoint,
)
from evalify.utils.state_machine import QuizLifecycleState

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Totals, normalization and performance bands for quiz results"""

    def aggregate(
        self,
        quiz: QuizDefinition,
        questions: List[Question],
        graded: List[GradedResponse],
        settings: Optional[EvaluationSettings] = None,
        student_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        submitted_at: Optional[datetime] = None,
    ) -> QuizResult:
        """Sum graded responses into a quiz result"""
        settings = settings or quiz.settings
        marks = {question.id: question.mark for question in questions}

        seen = set()
        for response in graded:
            if response.question_id not in marks:
                raise GradingDataError(
                    response.question_id, "graded response for a question not in this quiz"
                )
            if response.question_id in seen:
                raise GradingDataError(
                    response.question_id, "question graded more than once"
                )
            seen.add(response.question_id)

        total_score = sum(marks.values())
        raw_score = sum(response.score for response in graded) - sum(
            response.negative_score or 0.0 for response in graded
        )
        score = raw_score if settings.allow_negative_total else max(
            raw_score, settings.score_floor
        )

        ungraded = sorted(set(marks) - seen)
        if ungraded:
            logger.warning(
                "Result for quiz %s is missing grades for questions %s",
                quiz.id,
                ungraded,
            )

        # Unanswered questions need no grading, pending or missing ones do
        complete = not ungraded and all(
            response.status != GradeStatus.PENDING for response in graded
        )
        evaluation_status = (
            EvaluationStatus.EVALUATED if complete else EvaluationStatus.NOT_EVALUATED
        )

        return QuizResult(
            quiz_id=quiz.id,
            student_id=student_id,
            score=score,
            total_score=total_score,
            start_time=start_time,
            submitted_at=submitted_at,
            evaluation_status=evaluation_status,
            graded=graded,
        )

    def normalize(self, result: QuizResult) -> float:
        """Score as a percentage of the quiz total"""
        if result.total_score <= 0:
            raise NormalizationError(
                f"Quiz {result.quiz_id} has no marks to normalize against"
            )
        return result.score / result.total_score * 100

    def classify(self, percentage: float) -> PerformanceBand:
        """Map a percentage to a performance band"""
        if percentage >= 80:
            return PerformanceBand.EXCELLENT
        elif percentage >= 60:
            return PerformanceBand.GOOD
        elif percentage >= 40:
            return PerformanceBand.AVERAGE
        else:
            return PerformanceBand.POOR

    def summarize_performance(
        self, entries: List[PerformanceEntry]
    ) -> PerformanceSummary:
        """Average normalized score across a student's finished quizzes.

        A missed quiz counts as zero over its own total. A completed quiz whose
        results are not published, or are still being graded, is left out
        entirely rather than counted as zero.
        """
        history: List[ScorePoint] = []
        completed = 0
        missed = 0
        excluded = 0

        for entry in entries:
            if entry.state not in (
                QuizLifecycleState.COMPLETED,
                QuizLifecycleState.MISSED,
            ):
                continue
            is_missed = entry.state == QuizLifecycleState.MISSED
            if not is_missed and not entry.publish_result:
                excluded += 1
                continue
            if not is_missed and (
                entry.result is None
                or entry.result.evaluation_status != EvaluationStatus.EVALUATED
            ):
                # Submitted but not fully graded yet
                excluded += 1
                continue

            if is_missed:
                missed += 1
                result = QuizResult(
                    quiz_id=entry.quiz_id, score=0.0, total_score=entry.total_score
                )
            else:
                completed += 1
                result = entry.result

            percentage = self.normalize(result)
            history.append(
                ScorePoint(
                    quiz_id=entry.quiz_id,
                    missed=is_missed,
                    score=result.score,
                    total_score=result.total_score,
                    percentage=percentage,
                    band=self.classify(percentage),
                    ended_at=entry.ended_at,
                )
            )

        average = (
            sum(point.percentage for point in history) / len(history)
            if history
            else 0.0
        )

        return PerformanceSummary(
            average_percentage=average,
            counted_quizzes=len(history),
            completed_quizzes=completed,
            missed_quizzes=missed,
            excluded_quizzes=excluded,
            history=history,
        )

    def build_report(
        self,
        quiz: QuizDefinition,
        questions: List[Question],
        results: List[QuizResult],
    ) -> QuizReport:
        """Staff-facing statistics for one quiz"""
        total_score = sum(question.mark for question in questions)
        distribution: Dict[str, int] = {band.value: 0 for band in PerformanceBand}
        scores = [result.score for result in results]

        for result in results:
            band = self.classify(self.normalize(result))
            distribution[band.value] += 1

        question_stats = []
        for question in questions:
            correct = 0
            incorrect = 0
            not_attempted = 0
            pending = 0
            marks_obtained = 0.0
            for result in results:
                graded = next(
                    (g for g in result.graded if g.question_id == question.id), None
                )
                if graded is None or graded.status == GradeStatus.NOT_ATTEMPTED:
                    not_attempted += 1
                elif graded.status == GradeStatus.PENDING:
                    pending += 1
                else:
                    marks_obtained += graded.net_score
                    if graded.is_correct:
                        correct += 1
                    else:
                        incorrect += 1
            question_stats.append(
                QuestionStats(
                    question_id=question.id,
                    correct=correct,
                    incorrect=incorrect,
                    not_attempted=not_attempted,
                    pending=pending,
                    total_attempts=correct + incorrect,
                    average_marks=marks_obtained / len(results) if results else 0.0,
                    max_marks=question.mark,
                )
            )

        logger.info(
            "Built report for quiz %s over %d results", quiz.id, len(results)
        )
        return QuizReport(
            quiz_id=quiz.id,
            total_students=len(results),
            total_score=total_score,
            average_score=sum(scores) / len(scores) if scores else 0.0,
            max_score=max(scores) if scores else 0.0,
            min_score=min(scores) if scores else 0.0,
            distribution=distribution,
            question_stats=question_stats,
        )
