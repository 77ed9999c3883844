from __future__ import annotations

import base64
import io
import logging
import mimetypes
import threading
import zipfile
from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import unquote

from .paths import normalize_path

logger = logging.getLogger(__name__)

_MEDIA_TYPES_BY_SUFFIX = {
    ".xhtml": "application/xhtml+xml",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".ncx": "application/x-dtbncx+xml",
    ".opf": "application/oebps-package+xml",
}


class BookOpenError(RuntimeError):
    """Raised when a book cannot be opened at all."""

    user_message = "This book could not be opened."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail


class CorruptArchiveError(BookOpenError):
    """Raised when the bytes are not a readable zip container."""

    user_message = "The file is not a valid EPUB archive."


def guess_media_type(path: str) -> str:
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in _MEDIA_TYPES_BY_SUFFIX:
        return _MEDIA_TYPES_BY_SUFFIX[suffix]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    data: bytes
    media_type: str | None = None

    @property
    def data_uri(self) -> str:
        media_type = self.media_type or guess_media_type(self.path)
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{media_type};base64,{encoded}"


class Archive:
    """Read-only view over the entries of an EPUB container.

    Reads are idempotent: the same entry may be requested any number of times.
    """

    def __init__(self, zf: zipfile.ZipFile) -> None:
        self._zf = zf
        self._names = {info.filename for info in zf.infolist() if not info.is_dir()}
        self._cache: dict[str, bytes] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, data: bytes) -> "Archive":
        if not data:
            raise CorruptArchiveError("Archive is empty")
        try:
            zf = zipfile.ZipFile(io.BytesIO(data), "r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError) as exc:
            raise CorruptArchiveError(f"Not a zip container: {exc}") from exc
        return cls(zf)

    def __enter__(self) -> "Archive":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self._lookup_name(path) is not None

    @property
    def names(self) -> list[str]:
        return sorted(self._names)

    def close(self) -> None:
        with self._lock:
            self._cache.clear()
        self._zf.close()

    def _lookup_name(self, path: str) -> str | None:
        if path in self._names:
            return path
        normalized = normalize_path(path)
        if normalized in self._names:
            return normalized
        decoded = normalize_path(unquote(path))
        if decoded in self._names:
            return decoded
        return None

    def read(self, path: str) -> bytes | None:
        name = self._lookup_name(path)
        if name is None:
            return None
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached
            try:
                data = self._zf.read(name)
            except (
                zipfile.BadZipFile,
                KeyError,
                OSError,
                EOFError,
                RuntimeError,
                NotImplementedError,
                ValueError,
            ) as exc:
                # Damaged, encrypted or unsupported members behave like missing ones.
                logger.warning("Failed to read archive entry %s: %s", name, exc)
                return None
            self._cache[name] = data
            return data

    def read_text(self, path: str) -> str | None:
        raw = self.read(path)
        if raw is None:
            return None
        return raw.decode("utf-8-sig", errors="replace")

    def entry(self, path: str, media_type: str | None = None) -> ArchiveEntry | None:
        name = self._lookup_name(path)
        if name is None:
            return None
        data = self.read(name)
        if data is None:
            return None
        return ArchiveEntry(path=name, data=data, media_type=media_type)
