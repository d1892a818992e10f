"""
Response schemas for the answer provider.

Everything the model returns is parsed through these models before it is
turned into QuizQuestion / StudyNotes, so malformed output never reaches a
quiz session.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from models import QuestionType

MCQ_OPTION_COUNT = 4
TRUE_FALSE_ANSWERS = ("True", "False")


class QuestionPayload(BaseModel):
    question: str = Field(..., min_length=1)
    type: QuestionType
    options: Optional[List[str]] = None
    answer: str = Field(..., min_length=1)
    explanation: str

    @model_validator(mode="after")
    def check_shape(self):
        if self.type == QuestionType.MCQ:
            if self.options is None or len(self.options) != MCQ_OPTION_COUNT:
                raise ValueError(f"multiple choice questions need exactly {MCQ_OPTION_COUNT} options")
            if any(not o.strip() for o in self.options):
                raise ValueError("multiple choice options cannot be blank")
            normalized = [o.strip().casefold() for o in self.options]
            if self.answer.strip().casefold() not in normalized:
                raise ValueError("the answer must be one of the options")
        else:
            self.options = None

        if self.type == QuestionType.TRUE_FALSE:
            matches = [v for v in TRUE_FALSE_ANSWERS if v.casefold() == self.answer.strip().casefold()]
            if not matches:
                raise ValueError("true/false answers must be 'True' or 'False'")
            self.answer = matches[0]
        return self


class QuizPayload(BaseModel):
    questions: List[QuestionPayload] = Field(..., min_length=1)


class SourcePayload(BaseModel):
    title: str = ""
    uri: str = Field(..., min_length=1)


class NotesPayload(BaseModel):
    text: str = Field(..., min_length=1)
    sources: List[SourcePayload] = Field(default_factory=list)
