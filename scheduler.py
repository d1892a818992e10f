import logging
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from errors import PersistenceError
from services.quiz_service import QuizSession

logger = logging.getLogger(__name__)


class CountdownScheduler:
    """
    Drives the one-second countdown of timed quiz sessions.

    Each session owns its job (see QuizSession.start/stop); this class only
    supplies the scheduler and the tick callback that reports a timeout back
    to the chat.
    """

    def __init__(self, on_timeout: Optional[Callable[[int, QuizSession], Awaitable[None]]] = None,
                 scheduler=None):
        self.on_timeout = on_timeout
        self.scheduler = scheduler or AsyncIOScheduler()

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Countdown scheduler started.")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def start_countdown(self, chat_id: int, session: QuizSession):
        async def tick():
            try:
                timed_out = session.tick()
            except PersistenceError as e:
                # Session stays in progress with no result; the chat is still told time ran out
                logger.error(f"Could not store the timed-out quiz for chat {chat_id}: {e}", exc_info=True)
                timed_out = True
            if timed_out and self.on_timeout is not None:
                try:
                    await self.on_timeout(chat_id, session)
                except Exception as e:
                    # Only the notification failed
                    logger.error(f"Failed to report timeout to chat {chat_id}: {e}", exc_info=True)

        return session.start(self.scheduler, on_tick=tick, job_id=f"countdown:{chat_id}")
