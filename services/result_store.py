import json
import logging
from typing import Dict, List, Optional, Tuple

from errors import PersistenceError
from models import QuizResult

DEFAULT_SLOT = "quizAnalytics"

logger = logging.getLogger(__name__)


class MemoryBackend:
    """Keeps slot payloads in a dict. Used by tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.slots: Dict[str, str] = dict(initial or {})

    def read(self, slot: str) -> Optional[str]:
        return self.slots.get(slot)

    def write(self, slot: str, payload: str):
        self.slots[slot] = payload


class ResultStore:
    """
    Append-only history of finished quizzes, persisted under one named slot.
    The backend needs only read(slot) and write(slot, payload).
    """

    def __init__(self, backend, slot: str = DEFAULT_SLOT):
        self.backend = backend
        self.slot = slot
        self._results: List[QuizResult] = []

    def _decode(self, payload: str) -> List[QuizResult]:
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise PersistenceError(f"Slot {self.slot} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"Slot {self.slot} does not hold a list of results.")
        try:
            return [QuizResult.from_dict(item) for item in data]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Slot {self.slot} holds a malformed result: {e}") from e

    def load(self) -> "ResultStore":
        """Reloads the history; unreadable data resets it to empty."""
        try:
            payload = self.backend.read(self.slot)
            self._results = self._decode(payload) if payload else []
        except PersistenceError as e:
            logger.warning("Discarding stored quiz history: %s", e)
            self._results = []
        return self

    def append(self, result: QuizResult):
        results = self._results + [result]
        payload = json.dumps([r.to_dict() for r in results])
        self.backend.write(self.slot, payload)
        self._results = results
        logger.info("Stored result for '%s' (%d/%d) in %s", result.topic, result.score,
                    result.total_questions, self.slot)

    def all(self) -> Tuple[QuizResult, ...]:
        return tuple(self._results)

    def __len__(self):
        return len(self._results)
