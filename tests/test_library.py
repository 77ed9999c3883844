from __future__ import annotations

import json

import pytest

from shpeegle.library import LibraryStore
from shpeegle.theme import ThemeSettings


def test_missing_or_corrupt_file_loads_empty(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    assert store.books() == []
    assert store.last_read() is None
    (tmp_path / "library.json").write_text("{not json", encoding="utf-8")
    assert store.books() == []
    assert store.settings() == ThemeSettings()


def test_add_book_inserts_at_front_and_sets_last_read(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    store.add_book({"path": "/books/a.epub", "title": "A", "author": "X"})
    entry = store.add_book({"path": "/books/b.epub", "title": "B"})
    assert entry["progress"] == 0.0
    assert entry["position"] is None
    assert entry["added_at"] is not None
    assert [book["path"] for book in store.books()] == ["/books/b.epub", "/books/a.epub"]
    assert store.last_read() == "/books/b.epub"


def test_add_existing_book_merges_without_resetting_progress(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    store.add_book({"path": "/books/a.epub", "title": "A"})
    store.record_progress("/books/a.epub", 3, 0.5, mode="chapter")
    store.add_book({"path": "/books/b.epub", "title": "B"})
    entry = store.add_book({"path": "/books/a.epub", "title": "A (2nd ed.)"})
    assert entry["title"] == "A (2nd ed.)"
    assert entry["progress"] == 0.5
    assert entry["position"] == 3
    assert entry["mode"] == "chapter"
    assert len(store.books()) == 2
    assert store.last_read() == "/books/a.epub"


def test_record_progress_clamps(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    store.add_book({"path": "a.epub"})
    assert store.record_progress("a.epub", 0.9, 1.8, mode="book")["progress"] == 1.0
    assert store.record_progress("a.epub", 0.0, -1)["progress"] == 0.0
    assert store.record_progress("missing.epub", 1, 0.5) is None


def test_remove_book_clears_last_read(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    store.add_book({"path": "a.epub"})
    store.add_book({"path": "b.epub"})
    assert store.remove_book("b.epub") is True
    assert store.last_read() is None
    assert store.remove_book("b.epub") is False
    assert [book["path"] for book in store.books()] == ["a.epub"]


def test_settings_round_trip_through_file(tmp_path) -> None:
    path = tmp_path / "nested" / "library.json"
    store = LibraryStore(path)
    store.save_settings(ThemeSettings(font_size=24, font_family="Sans"))
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["settings"]["font_size"] == 24
    assert LibraryStore(path).settings().font_family == "Sans"


def test_invalid_entries_are_dropped_on_load(tmp_path) -> None:
    path = tmp_path / "library.json"
    path.write_text(
        json.dumps(
            {
                "books": [
                    {"path": "a.epub", "progress": 7},
                    {"title": "no path"},
                    "junk",
                    {"path": "a.epub", "title": "duplicate"},
                ],
                "last_read": "ghost.epub",
            }
        ),
        encoding="utf-8",
    )
    store = LibraryStore(path)
    books = store.books()
    assert len(books) == 1
    assert books[0]["title"] == "a"
    assert books[0]["progress"] == 1.0
    assert store.last_read() is None


def test_add_book_requires_path(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    with pytest.raises(ValueError):
        store.add_book({"title": "nameless"})


def test_update_book_keeps_its_path_and_cleans_fields(tmp_path) -> None:
    store = LibraryStore(tmp_path / "library.json")
    store.add_book({"path": "/books/a.epub", "title": "  ", "progress": 0.7, "position": 5})
    assert store.get("/books/a.epub")["title"] == "a"
    assert store.get("/books/a.epub")["progress"] == 0.0
    updated = store.update_book("/books/a.epub", path="/elsewhere.epub", title="Renamed", mode="scroll")
    assert updated["path"] == "/books/a.epub"
    assert updated["title"] == "Renamed"
    assert updated["mode"] is None
    assert [book["path"] for book in store.books()] == ["/books/a.epub"]
