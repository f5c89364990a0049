import json
import logging
import math
from typing import Dict, List, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from evalify.config import get_settings
from evalify.errors import LLMGradingError
from evalify.models.question import ExternalGrade, Question, QuestionResponse
from evalify.models.quiz import EvaluationSettings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an experienced examiner grading a student's written answer. "
    "Grade strictly against the expected answer and the guidelines."
)


class LLMGrader:
    def __init__(
        self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None
    ):
        self._client = client
        self.model = model

    @property
    def client(self) -> AsyncOpenAI:
        # Built on first use so the app starts without an API key
        if self._client is None:
            self._client = AsyncOpenAI(api_key=get_settings().openai_api_key)
        return self._client

    def build_messages(
        self,
        question: Question,
        response: QuestionResponse,
        settings: EvaluationSettings,
    ) -> List[Dict[str, str]]:
        """Prompt for one descriptive answer"""
        prompt = f"""Grade the following answer out of {question.mark:g} marks.

Question:
{question.text or "(question text not provided)"}

Expected answer:
{question.expected_answer or "(none provided)"}

Grading guidelines:
{question.guidelines or "(none provided)"}

Student answer:
{" ".join(response.values())}

Reply in JSON with the keys "score" (a number from 0 to {question.mark:g}),
"remarks" (one or two sentences for the student) and "breakdown" (how the marks
were awarded)."""

        return [
            {
                "role": "system",
                "content": settings.desc_llm_system_prompt or DEFAULT_SYSTEM_PROMPT,
            },
            {"role": "user", "content": prompt},
        ]

    async def grade(
        self,
        question: Question,
        response: QuestionResponse,
        settings: Optional[EvaluationSettings] = None,
    ) -> ExternalGrade:
        """AI-assisted grade for a descriptive answer"""
        settings = settings or EvaluationSettings()
        model = settings.llm_model_name or self.model or get_settings().llm_model

        completion = await self.client.chat.completions.create(
            model=model,
            messages=self.build_messages(question, response, settings),
            temperature=0.2,
            response_format={"type": "json_object"},
        )
        return self.parse(question, completion.choices[0].message.content)

    def parse(self, question: Question, content: Optional[str]) -> ExternalGrade:
        """Read the model's JSON reply; anything unusable is an error"""
        try:
            evaluation = json.loads(content or "")
            score = float(evaluation["score"])
            if not math.isfinite(score):
                raise ValueError(f"score {score} is not a finite number")

            breakdown = evaluation.get("breakdown")
            if breakdown is not None and not isinstance(breakdown, str):
                breakdown = json.dumps(breakdown)

            return ExternalGrade(
                score=score,
                remarks=evaluation.get("remarks"),
                breakdown=breakdown,
                source="llm",
            )
        except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("Unusable LLM grade for question %s: %s", question.id, e)
            raise LLMGradingError(
                f"Could not read a grade for question {question.id}"
            ) from e
