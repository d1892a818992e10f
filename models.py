from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from errors import ValidationError

MAX_QUESTIONS = 20
DIFFICULTIES = ("Easy", "Medium", "Hard")


class QuestionType(str, Enum):
    MCQ = "Multiple Choice"
    SHORT_ANSWER = "Short Answer"
    TRUE_FALSE = "True/False"


@dataclass(frozen=True)
class QuizQuestion:
    id: int
    question: str
    type: QuestionType
    answer: str
    explanation: str
    options: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "type": self.type.value,
            "options": list(self.options) if self.options is not None else None,
            "answer": self.answer,
            "explanation": self.explanation,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "QuizQuestion":
        options = d.get("options")
        return QuizQuestion(
            id=int(d["id"]),
            question=d["question"],
            type=QuestionType(d["type"]),
            answer=d["answer"],
            explanation=d.get("explanation", ""),
            options=tuple(options) if options is not None else None,
        )


@dataclass
class UserAnswer:
    question_id: int
    user_answer: str


@dataclass(frozen=True)
class GradedAnswer:
    question: QuizQuestion
    user_answer: str
    is_correct: bool


@dataclass(frozen=True)
class QuizResult:
    topic: str
    score: int
    total_questions: int
    time_taken: int
    date: datetime
    answers: Tuple[GradedAnswer, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.total_questions <= 0:
            raise ValueError("A quiz result needs at least one question.")
        if not 0 <= self.score <= self.total_questions:
            raise ValueError(f"Score {self.score} is outside 0..{self.total_questions}.")
        if len(self.answers) != self.total_questions:
            raise ValueError("Every question must have exactly one graded answer.")
        if self.time_taken < 0:
            raise ValueError("Time taken cannot be negative.")

    @property
    def score_percent(self) -> float:
        return self.score / self.total_questions * 100

    def to_dict(self) -> Dict[str, Any]:
        # Field names match the quizAnalytics slot written by earlier releases.
        return {
            "topic": self.topic,
            "score": self.score,
            "totalQuestions": self.total_questions,
            "timeTaken": self.time_taken,
            "date": self.date.isoformat(),
            "answers": [
                {
                    "question": a.question.to_dict(),
                    "userAnswer": a.user_answer,
                    "isCorrect": a.is_correct,
                }
                for a in self.answers
            ],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "QuizResult":
        if not isinstance(d["date"], str):
            raise ValueError(f"Result date must be an ISO 8601 string, got {d['date']!r}.")
        answers = []
        for index, item in enumerate(d["answers"]):
            question = dict(item["question"])
            question.setdefault("id", index)
            answers.append(GradedAnswer(
                question=QuizQuestion.from_dict(question),
                user_answer=item["userAnswer"],
                is_correct=bool(item["isCorrect"]),
            ))
        return QuizResult(
            topic=d["topic"],
            score=int(d["score"]),
            total_questions=int(d["totalQuestions"]),
            time_taken=int(d["timeTaken"]),
            date=datetime.fromisoformat(d["date"].replace("Z", "+00:00")),
            answers=tuple(answers),
        )


@dataclass(frozen=True)
class Source:
    title: str
    uri: str


@dataclass(frozen=True)
class StudyNotes:
    text: str
    sources: Tuple[Source, ...] = ()


@dataclass
class QuizSettings:
    topic: str = ""
    count: int = 5
    difficulty: str = "Medium"
    types: FrozenSet[QuestionType] = frozenset({QuestionType.MCQ})
    time_limit: int = 10 * 60

    def validate(self) -> "QuizSettings":
        """Returns a cleaned copy or raises ValidationError."""
        topic = (self.topic or "").strip()
        if not topic:
            raise ValidationError("Please enter a topic.")
        if not 1 <= self.count <= MAX_QUESTIONS:
            raise ValidationError(f"Number of questions must be between 1 and {MAX_QUESTIONS}.")
        if self.difficulty not in DIFFICULTIES:
            raise ValidationError(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}.")
        if not self.types:
            raise ValidationError("Select at least one question type.")
        if self.time_limit < 0:
            raise ValidationError("Time limit cannot be negative.")
        return QuizSettings(
            topic=topic,
            count=self.count,
            difficulty=self.difficulty,
            types=frozenset(self.types),
            time_limit=self.time_limit,
        )


@dataclass(frozen=True)
class TopicAverage:
    topic: str
    average_score: int


@dataclass(frozen=True)
class TimelinePoint:
    date: datetime
    score_percent: int
