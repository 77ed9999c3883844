from .archive import Archive, BookOpenError, CorruptArchiveError
from .book import BookSession, BookStructure, open_book
from .navigation import NavNode, parse_navigation
from .normalize import NormalizedFragment, normalize_chapter
from .package import (
    BookMetadata,
    MalformedPackageDocumentError,
    MissingContainerDescriptorError,
    MissingPackageDocumentError,
    PackageInfo,
    parse_package,
)
from .strategies import ChapterReader, ProgressUpdate, WholeBookReader
from .theme import ThemeSettings, build_theme_css, render_document

__all__ = [
    "Archive",
    "BookOpenError",
    "CorruptArchiveError",
    "MissingContainerDescriptorError",
    "MissingPackageDocumentError",
    "MalformedPackageDocumentError",
    "BookSession",
    "BookStructure",
    "open_book",
    "PackageInfo",
    "BookMetadata",
    "parse_package",
    "NavNode",
    "parse_navigation",
    "NormalizedFragment",
    "normalize_chapter",
    "ChapterReader",
    "WholeBookReader",
    "ProgressUpdate",
    "ThemeSettings",
    "build_theme_css",
    "render_document",
]
