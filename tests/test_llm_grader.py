"""
Unit tests for AI-assisted grading of descriptive answers.
"""
import json
import unittest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from evalify.errors import LLMGradingError
from evalify.models.question import QuestionResponse, QuestionType
from evalify.models.quiz import EvaluationSettings
from evalify.services.llm_grader import DEFAULT_SYSTEM_PROMPT, LLMGrader
from quiz_fixtures import make_questions


def completion(content):
    return Mock(choices=[Mock(message=Mock(content=content))])


class TestLLMGrader(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.question = make_questions()[1]
        self.response = QuestionResponse(
            question_id="q2", type=QuestionType.DESCRIPTIVE, value="A heap is a complete binary tree."
        )
        self.client = MagicMock()
        self.client.chat.completions.create = AsyncMock()
        self.grader = LLMGrader(client=self.client, model="test-model")

    async def test_grade_parses_json_reply(self):
        self.client.chat.completions.create.return_value = completion(
            json.dumps({"score": 7.5, "remarks": "Mostly right", "breakdown": {"definition": 5, "example": 2.5}})
        )
        grade = await self.grader.grade(self.question, self.response)

        self.assertEqual(grade.score, 7.5)
        self.assertEqual(grade.remarks, "Mostly right")
        self.assertEqual(json.loads(grade.breakdown), {"definition": 5, "example": 2.5})
        self.assertEqual(grade.source, "llm")

        kwargs = self.client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "test-model")
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})
        self.assertEqual(kwargs["messages"][0]["content"], DEFAULT_SYSTEM_PROMPT)
        self.assertIn("A heap is a complete binary tree.", kwargs["messages"][1]["content"])
        self.assertIn("out of 10 marks", kwargs["messages"][1]["content"])

    async def test_quiz_settings_override_model_and_prompt(self):
        self.client.chat.completions.create.return_value = completion('{"score": 3}')
        settings = EvaluationSettings(llm_model_name="quiz-model", desc_llm_system_prompt="Be strict.")
        await self.grader.grade(self.question, self.response, settings)

        kwargs = self.client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "quiz-model")
        self.assertEqual(kwargs["messages"][0]["content"], "Be strict.")

    async def test_request_is_awaited(self):
        self.client.chat.completions.create.return_value = completion('{"score": 4}')
        await self.grader.grade(self.question, self.response)
        self.client.chat.completions.create.assert_awaited_once()

    def test_wrongly_typed_fields_are_unusable(self):
        with self.assertLogs("evalify.services.llm_grader", level="ERROR"):
            with self.assertRaises(LLMGradingError):
                self.grader.parse(self.question, '{"score": 3, "remarks": {"text": "ok"}}')

    async def test_configured_model_is_the_fallback(self):
        self.client.chat.completions.create.return_value = completion('{"score": 3}')
        grader = LLMGrader(client=self.client)
        with patch("evalify.services.llm_grader.get_settings", return_value=Mock(llm_model="env-model")):
            await grader.grade(self.question, self.response)
        self.assertEqual(self.client.chat.completions.create.call_args.kwargs["model"], "env-model")

    async def test_unusable_reply_raises(self):
        replies = (
            "not json",
            '{"remarks": "no score"}',
            '{"score": "lots"}',
            "[1, 2]",
            None,
            '{"score": "nan"}',
            '{"score": "-Infinity"}',
            '{"score": 3, "remarks": 5}',
        )
        for content in replies:
            with self.subTest(content=content):
                self.client.chat.completions.create.return_value = completion(content)
                with self.assertLogs("evalify.services.llm_grader", level="ERROR"):
                    with self.assertRaises(LLMGradingError):
                        await self.grader.grade(self.question, self.response)


class TestLazyClient(unittest.TestCase):
    def test_client_is_built_on_first_use(self):
        with patch("evalify.services.llm_grader.AsyncOpenAI") as openai_cls, patch(
            "evalify.services.llm_grader.get_settings", return_value=Mock(openai_api_key="sk-test")
        ):
            grader = LLMGrader()
            openai_cls.assert_not_called()
            client = grader.client
            self.assertIs(client, grader.client)
        openai_cls.assert_called_once_with(api_key="sk-test")


if __name__ == "__main__":
    unittest.main()
