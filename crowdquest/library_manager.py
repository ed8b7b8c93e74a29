import json
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .errors import BookNotFound, EmptyResult
from .models import GeneratedPage, SavedBook

DEFAULT_LIBRARY_KEY = "crowd_quest_library"


class JsonFileBackend:
    """Key-value file: a JSON object whose values are JSON-encoded strings.

    Only the library key is read or written; other keys in the file are kept.
    """

    def __init__(self, path: str, key: str = DEFAULT_LIBRARY_KEY):
        self.path = Path(path)
        self.key = key

    def _read_store(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r', encoding='utf-8') as f:
            store = json.load(f)
        if not isinstance(store, dict):
            raise ValueError(f"Library file {self.path} does not hold a key-value object")
        return store

    def load_all(self) -> List[Dict[str, Any]]:
        """Return the stored records; an absent key means an empty library."""
        raw = self._read_store().get(self.key)
        if raw is None:
            return []
        records = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(records, list):
            raise ValueError(f"Library value under '{self.key}' is not a list")
        return records

    def save_all(self, records: List[Dict[str, Any]]) -> None:
        try:
            store = self._read_store()
        except ValueError:
            # Unreadable file: the library key is rewritten from scratch
            store = {}
        store[self.key] = json.dumps(records)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(store, f)
        tmp_path.replace(self.path)


class MemoryBackend:
    """In-process key-value backend holding the serialized library string."""

    def __init__(self, initial: Optional[str] = None, key: str = DEFAULT_LIBRARY_KEY):
        self.key = key
        self.store: Dict[str, str] = {}
        if initial is not None:
            self.store[key] = initial

    def load_all(self) -> List[Dict[str, Any]]:
        raw = self.store.get(self.key)
        if raw is None:
            return []
        records = json.loads(raw)
        if not isinstance(records, list):
            raise ValueError(f"Library value under '{self.key}' is not a list")
        return records

    def save_all(self, records: List[Dict[str, Any]]) -> None:
        self.store[self.key] = json.dumps(records)


class LibraryManager:
    """Saved books, most recently saved first.

    The whole collection is read once at construction and written back in full
    after every change (last writer wins).
    """

    def __init__(self, backend):
        """Initialize the library and load whatever the backend holds."""
        self.backend = backend
        self.books: List[SavedBook] = self._load_library()

    def _load_library(self) -> List[SavedBook]:
        try:
            records = self.backend.load_all()
            books = [SavedBook.from_dict(record) for record in records]
        except (ValueError, KeyError, TypeError, OSError) as e:
            logger.error(f"Failed to parse library, starting empty: {str(e)}")
            return []

        logger.info(f"Library loaded: {len(books)} books")
        return books

    def _persist(self, books: List[SavedBook]) -> None:
        """Write ``books`` to the backend, then adopt them as the in-memory library."""
        self.backend.save_all([book.to_dict() for book in books])
        self.books = books

    def save_book(self, title: str, pages: Iterable[GeneratedPage], target_image: Optional[str]) -> SavedBook:
        """Store a finished book and return it with its new id and timestamp."""
        pages = tuple(pages)
        if not pages:
            raise EmptyResult("There are no pages to save")

        book = SavedBook(
            id=uuid.uuid4().hex,
            title=title,
            pages=pages,
            target_image=target_image,
            created_at=int(time.time() * 1000),
        )
        self._persist([book] + self.books)

        logger.info(f"Saved book '{title}' ({len(pages)} pages) as {book.id}")
        return book

    def list_books(self) -> List[SavedBook]:
        return list(self.books)

    def load_book(self, book_id: str) -> SavedBook:
        for book in self.books:
            if book.id == book_id:
                return book
        raise BookNotFound(f"No saved book with id {book_id}")

    def delete_book(self, book_id: str) -> None:
        """Remove a book; unknown ids are ignored."""
        remaining = [book for book in self.books if book.id != book_id]
        if len(remaining) == len(self.books):
            logger.debug(f"Delete ignored, no book with id {book_id}")
            return
        self._persist(remaining)
        logger.info(f"Deleted book {book_id}")
