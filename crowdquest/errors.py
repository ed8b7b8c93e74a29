from typing import Optional


class CrowdQuestError(Exception):
    """Base class for all errors raised by crowdquest."""


class ConfigurationError(CrowdQuestError, ValueError):
    """Raised when required configuration (e.g. the API key) is missing or invalid."""


class MissingInput(CrowdQuestError):
    """Raised when a run is started without a photo or without a theme."""


class UnreadableImage(CrowdQuestError):
    """Raised when uploaded data cannot be decoded as an image."""


class GenerationInProgress(CrowdQuestError):
    """Raised when a run is started while another one is still generating."""


class APIRequestError(CrowdQuestError):
    """Transport-level failure talking to the remote capability."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationFailed(CrowdQuestError):
    """A page could not be generated. Fatal to the current run."""

    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason


class LocateFailed(CrowdQuestError):
    """The locate request failed (transport, parse or invalid box)."""

    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason


class EmptyResult(CrowdQuestError):
    """Raised when saving a book that has no pages."""


class BookNotFound(CrowdQuestError, KeyError):
    """Raised when a library lookup names an unknown book id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""
