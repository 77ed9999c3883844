from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from .archive import Archive, BookOpenError
from .navigation import NavNode, find_label, parse_navigation
from .normalize import NormalizedFragment, normalize_fragment
from .package import BookMetadata, ManifestItem, PackageInfo, SpineItem, parse_package, read_metadata
from .paths import normalize_path, strip_fragment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookStructure:
    package: PackageInfo
    toc: tuple[NavNode, ...]
    metadata: BookMetadata

    @property
    def spine(self) -> tuple[SpineItem, ...]:
        return self.package.spine

    @property
    def manifest(self) -> Mapping[str, ManifestItem]:
        return self.package.manifest

    def spine_index_for_href(self, href: str) -> int | None:
        """First spine position whose document matches ``href``, fragment ignored."""
        target = normalize_path(strip_fragment(href))
        for entry in self.spine:
            if normalize_path(strip_fragment(entry.path)) == target:
                return entry.index
        return None

    def label_for_index(self, index: int) -> str:
        """TOC label for a spine position, or an ``N / total`` fallback."""
        if 0 <= index < len(self.spine):
            label = find_label(self.toc, self.spine[index].path)
            if label:
                return label
        return f"{index + 1} / {len(self.spine)}"


class BookSession:
    """One opened book: the decompressed archive plus everything parsed from it.

    Nothing is shared between sessions; reopening a book parses it again.
    """

    def __init__(self, path: str, archive: Archive, structure: BookStructure) -> None:
        self.path = path
        self.archive = archive
        self.structure = structure
        self._media_types = structure.package.media_types()
        self.closed = False

    def __enter__(self) -> "BookSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def spine(self) -> tuple[SpineItem, ...]:
        return self.structure.spine

    @property
    def toc(self) -> tuple[NavNode, ...]:
        return self.structure.toc

    @property
    def metadata(self) -> BookMetadata:
        return self.structure.metadata

    def fragment(self, index: int) -> NormalizedFragment:
        if self.closed:
            raise RuntimeError("Book session is closed")
        if not 0 <= index < len(self.spine):
            raise IndexError(f"Spine index {index} out of range (0..{len(self.spine) - 1})")
        return normalize_fragment(self.archive, self.spine[index], self._media_types)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.archive.close()
        logger.debug("Closed book session for %s", self.path)


def open_book(data: bytes, path: str = "") -> BookSession:
    """Open EPUB bytes; raises a ``BookOpenError`` subclass on structural failure.

    ``path`` identifies the book for display and persistence only.
    """
    archive = Archive.open(data)
    try:
        package = parse_package(archive)
    except BookOpenError:
        archive.close()
        raise
    toc = tuple(parse_navigation(archive, package))
    try:
        metadata = read_metadata(archive, package)
    except Exception as exc:
        logger.warning("Failed to read metadata for %s: %s", path or "<memory>", exc)
        metadata = BookMetadata()
    structure = BookStructure(package=package, toc=toc, metadata=metadata)
    logger.info(
        "Opened %s: %d spine items, %d toc entries",
        path or "<memory>",
        len(structure.spine),
        len(toc),
    )
    return BookSession(path, archive, structure)

