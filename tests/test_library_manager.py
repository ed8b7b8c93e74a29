import json

import pytest

from crowdquest.errors import BookNotFound, EmptyResult
from crowdquest.library_manager import JsonFileBackend, LibraryManager, MemoryBackend
from crowdquest.models import GeneratedPage

PAGES = (
    GeneratedPage("https://images.example/1.png", ("red kite", "lost shoe")),
    GeneratedPage("https://images.example/2.png"),
)


@pytest.fixture
def library():
    return LibraryManager(MemoryBackend())


def test_save_then_list_returns_book_first(library, photo):
    library.save_book("Older", PAGES[:1], None)
    saved = library.save_book("Jungle", PAGES, photo.data_url)

    books = library.list_books()

    assert books[0] == saved
    assert books[0].title == "Jungle"
    assert books[0].pages == PAGES
    assert books[0].target_image == photo.data_url
    assert books[0].id and books[0].created_at > 0
    assert [book.title for book in books] == ["Jungle", "Older"]


def test_ids_are_unique(library):
    ids = {library.save_book("Jungle", PAGES, None).id for _ in range(20)}
    assert len(ids) == 20


def test_load_book_round_trip(library, photo):
    saved = library.save_book("Jungle", PAGES, photo.data_url)

    loaded = library.load_book(saved.id)

    assert loaded == saved
    assert loaded.target_photo == photo


def test_load_unknown_book_raises(library):
    with pytest.raises(BookNotFound):
        library.load_book("missing")


def test_delete_is_idempotent(library):
    saved = library.save_book("Jungle", PAGES, None)

    library.delete_book(saved.id)
    library.delete_book(saved.id)
    library.delete_book("never-existed")

    assert saved.id not in [book.id for book in library.list_books()]


def test_save_without_pages_is_rejected(library):
    with pytest.raises(EmptyResult):
        library.save_book("Empty", [], None)
    assert library.list_books() == []


class FailingBackend(MemoryBackend):
    def __init__(self, initial=None):
        super().__init__(initial=initial)
        self.fail = False

    def save_all(self, records):
        if self.fail:
            raise OSError("disk full")
        super().save_all(records)


def test_failed_save_leaves_library_unchanged():
    backend = FailingBackend()
    library = LibraryManager(backend)
    kept = library.save_book("Kept", PAGES, None)
    backend.fail = True

    with pytest.raises(OSError):
        library.save_book("Lost", PAGES, None)

    assert library.list_books() == [kept]


def test_failed_delete_leaves_library_unchanged():
    backend = FailingBackend()
    library = LibraryManager(backend)
    kept = library.save_book("Kept", PAGES, None)
    backend.fail = True

    with pytest.raises(OSError):
        library.delete_book(kept.id)

    assert library.list_books() == [kept]
    assert library.load_book(kept.id) == kept


def test_order_survives_reload(tmp_path):
    path = tmp_path / "library.json"
    library = LibraryManager(JsonFileBackend(str(path)))
    first = library.save_book("First", PAGES, None)
    second = library.save_book("Second", PAGES, None)

    reloaded = LibraryManager(JsonFileBackend(str(path)))

    assert [book.id for book in reloaded.list_books()] == [second.id, first.id]
    assert reloaded.load_book(first.id) == first


def test_file_stores_json_list_under_library_key(tmp_path):
    path = tmp_path / "library.json"
    library = LibraryManager(JsonFileBackend(str(path), key="my_key"))
    saved = library.save_book("Jungle", PAGES, None)

    store = json.loads(path.read_text())
    records = json.loads(store["my_key"])

    assert records[0]["id"] == saved.id
    assert records[0]["pages"][0] == {"imageUrl": "https://images.example/1.png", "questItems": ["red kite", "lost shoe"]}
    assert set(records[0]) == {"id", "title", "pages", "targetImage", "createdAt"}


def test_absent_file_is_empty_library(tmp_path):
    library = LibraryManager(JsonFileBackend(str(tmp_path / "nope.json")))
    assert library.list_books() == []


@pytest.mark.parametrize("stored", ["{not json", json.dumps({"a": 1}), json.dumps([{"title": "no id"}])])
def test_corrupt_value_starts_empty(stored):
    library = LibraryManager(MemoryBackend(initial=stored))

    assert library.list_books() == []
    library.save_book("Fresh", PAGES, None)
    assert len(library.list_books()) == 1


def test_corrupt_file_starts_empty_and_recovers(tmp_path):
    path = tmp_path / "library.json"
    path.write_text("garbage")

    library = LibraryManager(JsonFileBackend(str(path)))
    assert library.list_books() == []

    saved = library.save_book("Fresh", PAGES, None)
    assert LibraryManager(JsonFileBackend(str(path))).load_book(saved.id) == saved


def test_flat_variant_records_are_readable():
    legacy = [{
        "id": "1700000000000",
        "title": "Jungle",
        "images": ["data:image/png;base64,AAAA"],
        "targetImage": None,
        "createdAt": 1700000000000,
    }]
    library = LibraryManager(MemoryBackend(initial=json.dumps(legacy)))

    book = library.load_book("1700000000000")

    assert book.pages == (GeneratedPage("data:image/png;base64,AAAA"),)
