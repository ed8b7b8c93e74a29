"""Hide yourself in an AI-generated search-and-find picture book."""

from .errors import (
    BookNotFound,
    CrowdQuestError,
    EmptyResult,
    GenerationFailed,
    LocateFailed,
    MissingInput,
    UnreadableImage,
)
from .generate_book import BookGenerator
from .hint_manager import HintManager, HintOutcome
from .library_manager import JsonFileBackend, LibraryManager, MemoryBackend
from .models import AppStatus, GeneratedPage, GenerationRun, NormalizedBox, SavedBook, UploadedPhoto

__version__ = "0.1.0"
