class StudyBotError(Exception):
    """Base class for every recoverable error raised by the bot."""


class ValidationError(StudyBotError, ValueError):
    """Required user input is missing or out of range."""


class ProviderError(StudyBotError):
    """The answer provider was unreachable or returned malformed data."""


class PersistenceError(StudyBotError):
    """Stored quiz history could not be read back."""


class RequestInProgressError(StudyBotError):
    """An identical provider request is already outstanding for this chat."""
