"""
Unit tests for per-question grading in ResponseGrader.
"""
import unittest

from pydantic import ValidationError

from evalify.errors import GradingDataError
from evalify.models.question import (
    ExternalGrade,
    GradeStatus,
    Question,
    QuestionResponse,
    QuestionType,
)
from evalify.models.quiz import EvaluationSettings
from evalify.services.grading_service import ResponseGrader
from quiz_fixtures import make_questions, negative_settings


def mcq(**overrides):
    fields = dict(id="q1", type=QuestionType.MCQ, mark=5, options=["A", "B", "C"], answer=["A"])
    fields.update(overrides)
    return Question(**fields)


def respond(question, value):
    return QuestionResponse(question_id=question.id, type=question.type, value=value)


class TestChoiceGrading(unittest.TestCase):
    def setUp(self):
        self.grader = ResponseGrader()

    def test_exact_match_scores_full_mark(self):
        graded = self.grader.grade(mcq(), respond(mcq(), ["A"]))
        self.assertEqual(graded.score, 5)
        self.assertTrue(graded.is_correct)
        self.assertEqual(graded.status, GradeStatus.GRADED)

    def test_wrong_option_scores_zero(self):
        graded = self.grader.grade(mcq(), respond(mcq(), ["B"]))
        self.assertEqual(graded.score, 0)
        self.assertFalse(graded.is_correct)
        self.assertIsNone(graded.negative_score)

    def test_wrong_option_with_negative_marking(self):
        graded = self.grader.grade(mcq(), respond(mcq(), ["B"]), negative_settings())
        self.assertEqual(graded.score, 0)
        self.assertEqual(graded.negative_score, 1.0)
        self.assertEqual(graded.net_score, -1.0)

    def test_penalty_precedence(self):
        question = mcq(negative_mark=2.0)
        graded = self.grader.grade(question, respond(question, ["C"]), negative_settings())
        self.assertEqual(graded.negative_score, 2.0)

        percent = EvaluationSettings(negative_marking=True, mcq_negative_percent=25)
        graded = self.grader.grade(mcq(), respond(mcq(), ["C"]), percent)
        self.assertEqual(graded.negative_score, 1.25)

    def test_penalty_ignored_when_negative_marking_off(self):
        question = mcq(negative_mark=2.0)
        graded = self.grader.grade(question, respond(question, ["C"]), EvaluationSettings())
        self.assertIsNone(graded.negative_score)

    def test_not_attempted_ignores_negative_marking(self):
        for value in (None, [], [""], ["  "]):
            with self.subTest(value=value):
                graded = self.grader.grade(mcq(), respond(mcq(), value), negative_settings())
                self.assertEqual(graded.score, 0)
                self.assertEqual(graded.remarks, "not attempted")
                self.assertEqual(graded.status, GradeStatus.NOT_ATTEMPTED)
                self.assertIsNone(graded.negative_score)

    def test_multi_select_requires_exact_set(self):
        question = mcq(answer=["A", "B"])
        self.assertEqual(self.grader.grade(question, respond(question, ["B", "A"])).score, 5)
        self.assertEqual(self.grader.grade(question, respond(question, ["A"])).score, 0)
        self.assertEqual(self.grader.grade(question, respond(question, ["A", "B", "C"])).score, 0)

    def test_partial_credit_when_question_allows_it(self):
        question = mcq(answer=["A", "B"], allow_partial=True)
        graded = self.grader.grade(question, respond(question, ["A"]))
        self.assertEqual(graded.score, 2.5)
        self.assertFalse(graded.is_correct)
        # A wrong pick voids partial credit
        self.assertEqual(self.grader.grade(question, respond(question, ["A", "C"])).score, 0)

    def test_true_false(self):
        question = Question(id="tf", type=QuestionType.TRUE_FALSE, mark=2, options=["true", "false"], answer=["false"])
        self.assertEqual(self.grader.grade(question, respond(question, "false")).score, 2)
        self.assertEqual(self.grader.grade(question, respond(question, "true")).score, 0)


class TestFillInBlank(unittest.TestCase):
    def setUp(self):
        self.grader = ResponseGrader()
        self.question = make_questions()[2]

    def test_normalized_match(self):
        graded = self.grader.grade(self.question, respond(self.question, "  Binary   Search Tree "))
        self.assertEqual(graded.score, 5)
        self.assertTrue(graded.is_correct)

    def test_case_sensitive(self):
        question = self.question.model_copy(update={"case_sensitive": True})
        self.assertEqual(self.grader.grade(question, respond(question, "Binary search tree")).score, 0)
        self.assertEqual(self.grader.grade(question, respond(question, "binary search tree")).score, 5)

    def test_mismatch(self):
        self.assertEqual(self.grader.grade(self.question, respond(self.question, "heap")).score, 0)


class TestExternallyGraded(unittest.TestCase):
    def setUp(self):
        self.grader = ResponseGrader()
        self.question = make_questions()[1]
        self.response = respond(self.question, "A heap is a tree-shaped priority queue.")

    def test_pending_without_external_grade(self):
        graded = self.grader.grade(self.question, self.response)
        self.assertEqual(graded.status, GradeStatus.PENDING)
        self.assertEqual(graded.score, 0)

    def test_external_grade_is_used(self):
        grade = ExternalGrade(score=7, remarks="Good", source="manual")
        graded = self.grader.grade(self.question, self.response, external=grade)
        self.assertEqual(graded.status, GradeStatus.GRADED)
        self.assertEqual(graded.score, 7)
        self.assertFalse(graded.flagged)
        self.assertEqual(graded.remarks, "Good")

    def test_out_of_range_scores_are_clamped_and_flagged(self):
        for supplied, expected in ((14, 10), (-3, 0)):
            with self.subTest(supplied=supplied):
                with self.assertLogs("evalify.services.grading_service", level="WARNING"):
                    graded = self.grader.grade(
                        self.question, self.response, external=ExternalGrade(score=supplied, source="llm")
                    )
                self.assertEqual(graded.score, expected)
                self.assertTrue(graded.flagged)
                self.assertIn("clamped", graded.remarks)

    def test_non_finite_external_score_is_rejected(self):
        for supplied in (float("nan"), float("inf")):
            with self.subTest(supplied=supplied):
                grade = ExternalGrade.model_construct(score=supplied, source="llm")
                with self.assertRaises(GradingDataError):
                    self.grader.grade(self.question, self.response, external=grade)

    def test_external_grade_model_refuses_nan(self):
        with self.assertRaises(ValidationError):
            ExternalGrade(score=float("nan"))

    def test_not_attempted_descriptive(self):
        graded = self.grader.grade(self.question, respond(self.question, "   "), external=ExternalGrade(score=5))
        self.assertEqual(graded.remarks, "not attempted")
        self.assertEqual(graded.score, 0)


class TestGradingDataErrors(unittest.TestCase):
    def setUp(self):
        self.grader = ResponseGrader()

    def test_missing_answer_key(self):
        question = mcq(answer=[])
        with self.assertRaises(GradingDataError) as ctx:
            self.grader.grade(question, respond(question, ["A"]))
        self.assertEqual(ctx.exception.question_id, "q1")

    def test_missing_answer_key_even_when_not_attempted(self):
        question = mcq(answer=[])
        with self.assertRaises(GradingDataError):
            self.grader.grade(question, respond(question, None))

    def test_answer_not_among_options(self):
        question = mcq(answer=["D"])
        with self.assertRaises(GradingDataError):
            self.grader.grade(question, respond(question, ["A"]))

    def test_true_false_with_two_answers(self):
        question = Question(id="tf", type=QuestionType.TRUE_FALSE, mark=1, answer=["true", "false"])
        with self.assertRaises(GradingDataError):
            self.grader.grade(question, respond(question, "true"))

    def test_fill_in_blank_without_expected_answer(self):
        question = Question(id="f", type=QuestionType.FILL_IN_BLANK, mark=1, expected_answer=" ")
        with self.assertRaises(GradingDataError):
            self.grader.grade(question, respond(question, "x"))

    def test_response_for_other_question(self):
        with self.assertRaises(GradingDataError):
            self.grader.grade(mcq(), QuestionResponse(question_id="q9", type=QuestionType.MCQ, value=["A"]))


class TestGradeAttempt(unittest.TestCase):
    def setUp(self):
        self.grader = ResponseGrader()
        self.questions = make_questions()

    def test_missing_responses_are_not_attempted(self):
        graded = self.grader.grade_attempt(self.questions, [respond(self.questions[0], ["A"])])
        self.assertEqual([g.question_id for g in graded], ["q1", "q2", "q3"])
        self.assertEqual(graded[0].score, 5)
        self.assertEqual(graded[1].status, GradeStatus.NOT_ATTEMPTED)
        self.assertEqual(graded[2].remarks, "not attempted")

    def test_external_grades_by_question(self):
        responses = [respond(self.questions[1], "answer")]
        graded = self.grader.grade_attempt(self.questions, responses, external={"q2": ExternalGrade(score=6)})
        self.assertEqual(graded[1].score, 6)

    def test_response_for_unknown_question(self):
        stray = QuestionResponse(question_id="q99", type=QuestionType.MCQ, value=["A"])
        with self.assertRaises(GradingDataError):
            self.grader.grade_attempt(self.questions, [stray])


if __name__ == "__main__":
    unittest.main()
