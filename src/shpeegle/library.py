from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path

from .theme import ThemeSettings

logger = logging.getLogger(__name__)

LIBRARY_STATE_VERSION = 1


def _empty_state() -> dict[str, object]:
    return {
        "version": LIBRARY_STATE_VERSION,
        "books": [],
        "last_read": None,
        "settings": ThemeSettings().as_payload(),
    }


def _clean_book(entry: object) -> dict[str, object] | None:
    if not isinstance(entry, dict):
        return None
    path = entry.get("path")
    if not isinstance(path, str) or not path.strip():
        return None
    return _book_record(path, entry)


def _book_record(path: str, entry: dict[str, object]) -> dict[str, object]:
    title = entry.get("title")
    author = entry.get("author")
    cover = entry.get("cover")
    progress = entry.get("progress")
    position = entry.get("position")
    mode = entry.get("mode")
    added_at = entry.get("added_at")
    last_opened = entry.get("last_opened")
    return {
        "path": path,
        "title": title if isinstance(title, str) and title.strip() else Path(path).stem,
        "author": author if isinstance(author, str) else "",
        "cover": cover if isinstance(cover, str) else None,
        "progress": _clamp_progress(progress),
        "position": position if isinstance(position, (int, float, str)) and not isinstance(position, bool) else None,
        "mode": mode if mode in {"chapter", "book"} else None,
        "added_at": added_at if isinstance(added_at, (int, float)) else None,
        "last_opened": last_opened if isinstance(last_opened, (int, float)) else None,
    }


def _clamp_progress(value: object) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return 0.0
    return min(1.0, max(0.0, float(value)))


class LibraryStore:
    """Book list, last-read pointer and reading settings in one JSON file.

    A missing or corrupt file loads as an empty library. Every mutation reads
    the file, applies the change and writes it back under a lock.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, object]:
        if not self.path.exists():
            return _empty_state()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable library file %s: %s", self.path, exc)
            return _empty_state()
        if not isinstance(raw, dict):
            return _empty_state()
        books: list[dict[str, object]] = []
        seen: set[str] = set()
        payload = raw.get("books")
        if isinstance(payload, list):
            for entry in payload:
                cleaned = _clean_book(entry)
                if cleaned is None or cleaned["path"] in seen:
                    continue
                seen.add(cleaned["path"])  # type: ignore[arg-type]
                books.append(cleaned)
        last_read = raw.get("last_read")
        if not isinstance(last_read, str) or last_read not in seen:
            last_read = None
        return {
            "version": LIBRARY_STATE_VERSION,
            "books": books,
            "last_read": last_read,
            "settings": ThemeSettings.from_payload(raw.get("settings")).as_payload(),
        }

    def _save(self, state: dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(state, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    @staticmethod
    def _find(state: dict[str, object], path: str) -> dict[str, object] | None:
        for entry in state["books"]:  # type: ignore[union-attr]
            if entry["path"] == path:
                return entry
        return None

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return self._load()

    def books(self) -> list[dict[str, object]]:
        return list(self.snapshot()["books"])  # type: ignore[arg-type]

    def get(self, path: str) -> dict[str, object] | None:
        return self._find(self.snapshot(), path)

    def last_read(self) -> str | None:
        return self.snapshot()["last_read"]  # type: ignore[return-value]

    def settings(self) -> ThemeSettings:
        return ThemeSettings.from_payload(self.snapshot()["settings"])

    def save_settings(self, settings: ThemeSettings) -> ThemeSettings:
        with self._lock:
            state = self._load()
            state["settings"] = settings.as_payload()
            self._save(state)
        return settings

    def add_book(self, entry: dict[str, object]) -> dict[str, object]:
        """Insert or refresh a book keyed by path and mark it last read."""
        path = entry.get("path")
        if not isinstance(path, str) or not path.strip():
            raise ValueError("Library entries need a non-empty path.")
        now = time.time()
        with self._lock:
            state = self._load()
            existing = self._find(state, path)
            if existing is not None:
                for key in ("title", "author", "cover"):
                    value = entry.get(key)
                    if value:
                        existing[key] = value
                existing["last_opened"] = now
                book = existing
            else:
                book = _book_record(path, {**entry, "progress": 0.0, "position": None})
                book["added_at"] = now
                book["last_opened"] = now
                state["books"].insert(0, book)  # type: ignore[union-attr]
            state["last_read"] = path
            self._save(state)
        return dict(book)

    def update_book(self, path: str, **fields: object) -> dict[str, object] | None:
        with self._lock:
            state = self._load()
            existing = self._find(state, path)
            if existing is None:
                return None
            existing.update(_book_record(path, {**existing, **fields}))
            self._save(state)
        return dict(existing)

    def record_progress(
        self,
        path: str,
        position: int | float | str | None,
        progress: float,
        mode: str | None = None,
    ) -> dict[str, object] | None:
        fields: dict[str, object] = {
            "position": position,
            "progress": _clamp_progress(progress),
            "last_opened": time.time(),
        }
        if mode is not None:
            fields["mode"] = mode
        return self.update_book(path, **fields)

    def remove_book(self, path: str) -> bool:
        with self._lock:
            state = self._load()
            books = state["books"]
            remaining = [entry for entry in books if entry["path"] != path]  # type: ignore[union-attr]
            if len(remaining) == len(books):  # type: ignore[arg-type]
                return False
            state["books"] = remaining
            if state["last_read"] == path:
                state["last_read"] = None
            self._save(state)
        return True
