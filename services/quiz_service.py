import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from apscheduler.jobstores.base import JobLookupError

from models import GradedAnswer, QuizQuestion, QuizResult, UserAnswer
from services.result_store import ResultStore

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


def normalize_answer(text: Optional[str]) -> str:
    """Standardizes an answer for matching: trimmed and case-folded."""
    if not text:
        return ""
    return text.strip().casefold()


def is_correct_answer(user_answer: str, correct_answer: str) -> bool:
    return normalize_answer(user_answer) == normalize_answer(correct_answer)


class QuizSession:
    """
    One attempt at a generated quiz.

    Answers are keyed by question id, so two questions with identical text
    never share an answer. With a positive time limit the session counts down
    through tick() and finishes itself when the time runs out; a time limit of
    0 means no countdown. The countdown job is owned by the session: start()
    registers it on a scheduler and stop() removes it exactly once.
    """

    def __init__(
        self,
        topic: str,
        questions: Sequence[QuizQuestion],
        result_store: ResultStore,
        time_limit: int = 0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        if not questions:
            raise ValueError("A quiz session needs at least one question.")
        self.topic = topic
        self.questions: List[QuizQuestion] = list(questions)
        self.result_store = result_store
        self.time_limit = max(0, int(time_limit))
        self.time_remaining: Optional[int] = self.time_limit or None
        self.current_index = 0
        self.answers: Dict[int, UserAnswer] = {}
        self.status = SessionStatus.IN_PROGRESS
        self.result: Optional[QuizResult] = None
        self.discarded = False

        self._clock = clock
        self._now = now
        self._started_at = clock()
        self._job = None

    # Timer

    @property
    def has_time_limit(self) -> bool:
        return self.time_limit > 0

    def start(self, scheduler, on_tick: Optional[Callable] = None, job_id: Optional[str] = None):
        """
        Registers the one-second countdown job on an APScheduler scheduler.
        on_tick replaces self.tick as the job function when the caller needs to
        react to each tick (e.g. to announce a timeout); it must call tick().
        """
        if not self.has_time_limit or self._job is not None or not self.is_active:
            return None
        self._job = scheduler.add_job(
            on_tick or self.tick,
            'interval',
            seconds=1,
            id=job_id,
            replace_existing=job_id is not None,
        )
        logger.debug("Countdown started for '%s' (%ds)", self.topic, self.time_limit)
        return self._job

    def stop(self):
        job, self._job = self._job, None
        if job is None:
            return
        try:
            job.remove()
        except JobLookupError:
            # Already dropped by the scheduler, e.g. on shutdown
            logger.debug("Countdown job for '%s' was already removed", self.topic)

    def discard(self):
        """Abandons the attempt: the timer stops and no result is recorded."""
        self.stop()
        self.discarded = True

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS and not self.discarded

    def tick(self) -> bool:
        """Counts one elapsed second. Returns True when this tick finished the quiz."""
        if not self.is_active or self.time_remaining is None:
            return False
        self.time_remaining = max(0, self.time_remaining - 1)
        if self.time_remaining == 0:
            logger.info("Time is up for quiz '%s'", self.topic)
            self.finish()
            return True
        return False

    def format_time_remaining(self) -> str:
        if self.time_remaining is None:
            return "No limit"
        minutes, seconds = divmod(self.time_remaining, 60)
        return f"{minutes:02}:{seconds:02}"

    # Navigation & answers

    @property
    def current_question(self) -> QuizQuestion:
        return self.questions[self.current_index]

    @property
    def is_last_question(self) -> bool:
        return self.current_index == len(self.questions) - 1

    @property
    def answered_count(self) -> int:
        return sum(1 for a in self.answers.values() if a.user_answer.strip())

    def current_answer(self) -> str:
        answer = self.answers.get(self.current_question.id)
        return answer.user_answer if answer else ""

    def record_answer(self, text: str):
        if not self.is_active:
            return
        question_id = self.current_question.id
        self.answers[question_id] = UserAnswer(question_id=question_id, user_answer=text or "")

    def advance(self):
        if self.is_active and self.current_index < len(self.questions) - 1:
            self.current_index += 1

    def retreat(self):
        if self.is_active and self.current_index > 0:
            self.current_index -= 1

    # Scoring

    def grade(self) -> List[GradedAnswer]:
        graded = []
        for question in self.questions:
            answer = self.answers.get(question.id)
            user_answer = answer.user_answer if answer else ""
            graded.append(GradedAnswer(
                question=question,
                user_answer=user_answer,
                is_correct=is_correct_answer(user_answer, question.answer),
            ))
        return graded

    def finish(self) -> Optional[QuizResult]:
        """
        Scores the attempt and appends the result to the store. Calling it
        again returns the same result without storing a second copy.

        If the store raises PersistenceError the session stays in progress
        with its timer stopped, so finish() can be retried.
        """
        if self.status == SessionStatus.FINISHED:
            return self.result
        if self.discarded:
            return None

        self.stop()

        graded = self.grade()
        score = sum(1 for g in graded if g.is_correct)
        # Wall clock, not the countdown remainder
        time_taken = int(max(0.0, self._clock() - self._started_at))

        result = QuizResult(
            topic=self.topic,
            score=score,
            total_questions=len(self.questions),
            time_taken=time_taken,
            date=self._now(),
            answers=tuple(graded),
        )
        self.result_store.append(result)
        self.status = SessionStatus.FINISHED
        self.result = result
        logger.info("Quiz '%s' finished: %d/%d in %ds", self.topic, score, len(self.questions), time_taken)
        return self.result
