import os
import logging
from typing import Iterable, List, Optional

import openai
from pydantic import ValidationError as SchemaError

from errors import ProviderError
from models import QuestionType, QuizQuestion, Source, StudyNotes
from llm.schemas import NotesPayload, QuizPayload

NOTES_SYSTEM_PROMPT = """
You are an expert tutor. Provide comprehensive study material for a topic within a course.

Your material must have two parts:
1. "Tutor Explanation": a concise, clear explanation of the core concepts, as if explaining it to a student.
2. "Study Notes": well-structured, easy-to-digest bullet points covering key definitions, principles, and examples.

You MUST return a JSON object with the following fields:
1. "text": string - both parts, each starting with its heading ("Tutor Explanation", "Study Notes")
2. "sources": array of {"title": string, "uri": string} - reputable references a student can read next (may be empty)
"""

QUIZ_SYSTEM_PROMPT = """
You are a mock test generator. You write exam-style questions with a single unambiguous correct answer.

You MUST return a JSON object with a "questions" array. Each item has:
1. "question": string
2. "type": one of "Multiple Choice", "Short Answer", "True/False"
3. "options": array of exactly 4 distinct strings for "Multiple Choice", null otherwise
4. "answer": string - for Multiple Choice one of the options verbatim, for True/False "True" or "False",
   for Short Answer a short canonical answer (one word or number where possible)
5. "explanation": string - a brief explanation of the correct answer
"""


class AnswerProvider:
    """Generates study notes and mock quizzes through the OpenAI chat API."""

    def __init__(self, client=None, model: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        if client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY not found in environment.")
            client = openai.AsyncClient(api_key=api_key)
        self.client = client

    async def _complete_json(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt}
                ],
                temperature=temperature,
                response_format={"type": "json_object"}
            )
        except openai.OpenAIError as e:
            self.logger.error(f"Answer provider request failed: {e}", exc_info=True)
            raise ProviderError("The answer provider is unavailable.") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderError("The answer provider returned an empty response.")
        return content

    async def fetch_study_notes(self, course: str, topic: str) -> StudyNotes:
        user_prompt = f"""
        COURSE: {course}

        TOPIC: {topic}
        """
        content = await self._complete_json(NOTES_SYSTEM_PROMPT, user_prompt, temperature=0.3)

        try:
            payload = NotesPayload.model_validate_json(content)
        except SchemaError as e:
            self.logger.error(f"Malformed study notes for '{topic}': {e}")
            raise ProviderError("The answer provider returned malformed study notes.") from e

        return StudyNotes(
            text=payload.text.strip(),
            sources=tuple(Source(title=s.title or s.uri, uri=s.uri) for s in payload.sources),
        )

    async def generate_quiz(
        self,
        topic: str,
        count: int,
        types: Iterable[QuestionType],
        difficulty: str,
    ) -> List[QuizQuestion]:
        """
        Generates `count` questions on a topic. The response is validated
        strictly: any item that does not match the question shape fails the
        whole request with ProviderError.
        """
        type_names = ", ".join(t.value for t in sorted(types, key=lambda t: list(QuestionType).index(t)))
        user_prompt = f"""
        Generate a mock test with {count} questions on the topic "{topic}".
        The difficulty level should be {difficulty}.
        Include the following question types: {type_names}.
        Ensure MCQs have 4 distinct options.
        """
        content = await self._complete_json(QUIZ_SYSTEM_PROMPT, user_prompt, temperature=0.7)

        try:
            payload = QuizPayload.model_validate_json(content)
        except SchemaError as e:
            self.logger.error(f"Malformed quiz for '{topic}': {e}")
            raise ProviderError("The answer provider returned a malformed quiz.") from e

        if len(payload.questions) < count:
            raise ProviderError(
                f"Expected {count} questions but the answer provider returned {len(payload.questions)}."
            )

        return [
            QuizQuestion(
                id=index,
                question=item.question.strip(),
                type=item.type,
                answer=item.answer.strip(),
                explanation=item.explanation.strip(),
                options=tuple(o.strip() for o in item.options) if item.options is not None else None,
            )
            for index, item in enumerate(payload.questions[:count])
        ]

