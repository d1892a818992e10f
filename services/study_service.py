import logging
from typing import Dict, List, Optional, Set, Tuple

from errors import RequestInProgressError, ValidationError
from models import QuizQuestion, QuizSettings, StudyNotes

logger = logging.getLogger(__name__)


def validate_search(course: Optional[str], topic: Optional[str]) -> Tuple[str, str]:
    course = (course or "").strip()
    topic = (topic or "").strip()
    if not course or not topic:
        raise ValidationError("Please enter both course and topic.")
    return course, topic


class StudyService:
    """
    Runs provider calls on behalf of a chat.

    While a request is outstanding an identical one from the same chat is
    refused. Each chat also carries a context counter; switching views bumps
    it, and a result that arrives after the bump is dropped instead of being
    shown in a view the user has already left.
    """

    def __init__(self, provider):
        self.provider = provider
        self._in_flight: Set[Tuple] = set()
        self._context: Dict[int, int] = {}

    def change_context(self, chat_id: int) -> int:
        self._context[chat_id] = self._context.get(chat_id, 0) + 1
        return self._context[chat_id]

    def is_current(self, chat_id: int, token: int) -> bool:
        return self._context.get(chat_id, 0) == token

    def is_loading(self, chat_id: int) -> bool:
        return any(key[0] == chat_id for key in self._in_flight)

    async def _run(self, key: Tuple, call):
        chat_id = key[0]
        if key in self._in_flight:
            raise RequestInProgressError("That request is still loading. Please wait.")

        token = self._context.get(chat_id, 0)
        self._in_flight.add(key)
        try:
            result = await call()
        finally:
            self._in_flight.discard(key)

        if not self.is_current(chat_id, token):
            logger.info("Dropping stale %s result for chat %s", key[1], chat_id)
            return None
        return result

    async def search_notes(self, chat_id: int, course: str, topic: str) -> Optional[StudyNotes]:
        course, topic = validate_search(course, topic)
        key = (chat_id, "notes", course.lower(), topic.lower())
        return await self._run(key, lambda: self.provider.fetch_study_notes(course, topic))

    async def generate_quiz(self, chat_id: int, settings: QuizSettings) -> Optional[List[QuizQuestion]]:
        settings = settings.validate()
        key = (chat_id, "quiz", settings.topic.lower(), settings.count, settings.difficulty,
               tuple(sorted(t.value for t in settings.types)))
        return await self._run(key, lambda: self.provider.generate_quiz(
            settings.topic, settings.count, settings.types, settings.difficulty
        ))
