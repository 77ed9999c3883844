from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Callable

from .book import BookSession
from .navigation import NavNode
from .normalize import NormalizedFragment, section_id_for
from .package import SpineItem
from .paths import normalize_path, strip_fragment

logger = logging.getLogger(__name__)

SECTION_CLASS = "shpeegle-section"
DIVIDER = '<hr class="shpeegle-divider"/>'


@dataclass(frozen=True)
class ProgressUpdate:
    """What the persistence collaborator stores after a navigation settles."""

    book_path: str
    mode: str
    position: int | float
    progress: float

    def as_payload(self) -> dict[str, object]:
        return {
            "path": self.book_path,
            "mode": self.mode,
            "position": self.position,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class ChapterView:
    index: int
    total: int
    path: str
    label: str
    markup: str
    progress: float

    def as_payload(self) -> dict[str, object]:
        return {
            "index": self.index,
            "total": self.total,
            "path": self.path,
            "label": self.label,
            "markup": self.markup,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class WholeBookView:
    markup: str
    toc: tuple[NavNode, ...]
    sections: tuple[NormalizedFragment, ...]

    @property
    def section_ids(self) -> tuple[str, ...]:
        return tuple(section.section_id for section in self.sections)

    def as_payload(self) -> dict[str, object]:
        return {
            "markup": self.markup,
            "toc": [node.as_dict() for node in self.toc],
            "sections": [
                {"id": section.section_id, "path": section.path} for section in self.sections
            ],
        }


def _clamp_fraction(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class ChapterReader:
    """Per-chapter mode: one normalized spine item at a time.

    Only the most recent ``show`` request is meaningful; a load that finishes
    after a newer request was issued is dropped instead of displayed.
    """

    mode = "chapter"

    def __init__(self, session: BookSession, initial_index: int | None = None) -> None:
        self.session = session
        total = len(session.spine)
        if isinstance(initial_index, int) and not isinstance(initial_index, bool) and 0 <= initial_index < total:
            self._index = initial_index
        else:
            self._index = 0
        self._generation = 0
        self.current: ChapterView | None = None

    @property
    def index(self) -> int:
        return self._index

    @property
    def total(self) -> int:
        return len(self.session.spine)

    @property
    def progress(self) -> float:
        if not self.total:
            return 0.0
        return (self._index + 1) / self.total

    @property
    def label(self) -> str:
        return self.session.structure.label_for_index(self._index)

    def _clamp(self, index: int) -> int:
        return min(max(index, 0), max(self.total - 1, 0))

    def advance(self, step: int) -> int:
        self._index = self._clamp(self._index + step)
        return self._index

    def jump_to_href(self, href: str) -> bool:
        """Move to the spine item matching ``href``; unknown targets are ignored."""
        index = self.session.structure.spine_index_for_href(href)
        if index is None:
            logger.debug("No spine item matches %s", href)
            return False
        self._index = index
        return True

    def render(self, index: int) -> ChapterView:
        fragment = self.session.fragment(index)
        return ChapterView(
            index=index,
            total=self.total,
            path=fragment.path,
            label=self.session.structure.label_for_index(index),
            markup=fragment.markup,
            progress=(index + 1) / self.total,
        )

    async def show(self, index: int | None = None) -> ChapterView | None:
        """Load a chapter; returns None if the spine is empty or the load was superseded."""
        if index is not None:
            self._index = self._clamp(index)
        if not self.total:
            return None
        self._generation += 1
        ticket = self._generation
        target = self._index
        loop = asyncio.get_running_loop()
        view = await loop.run_in_executor(None, self.render, target)
        if ticket != self._generation:
            logger.debug("Discarding superseded load of spine index %d", target)
            return None
        self.current = view
        return view

    async def turn(self, step: int) -> ChapterView | None:
        self.advance(step)
        return await self.show()

    async def open_href(self, href: str) -> ChapterView | None:
        if not self.jump_to_href(href):
            return self.current
        return await self.show()

    def progress_update(self) -> ProgressUpdate:
        return ProgressUpdate(
            book_path=self.session.path,
            mode=self.mode,
            position=self._index,
            progress=self.progress,
        )


class WholeBookReader:
    """Whole-book mode: every content document normalized up front and concatenated."""

    mode = "book"

    def __init__(self, session: BookSession, initial_fraction: float | None = None) -> None:
        self.session = session
        self._fraction = 0.0
        if isinstance(initial_fraction, (int, float)) and not isinstance(initial_fraction, bool):
            self._fraction = _clamp_fraction(initial_fraction)
        self._pending: asyncio.Future | None = None
        self.view: WholeBookView | None = None

    @property
    def eligible_items(self) -> list[SpineItem]:
        # Fonts, stylesheets and images placed in the spine are skipped.
        return [entry for entry in self.session.spine if entry.item.is_content_document]

    @property
    def loading(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @property
    def progress(self) -> float:
        return self._fraction

    def build(self, on_section: Callable[[NormalizedFragment], None] | None = None) -> WholeBookView:
        sections: list[NormalizedFragment] = []
        parts: list[str] = []
        for entry in self.eligible_items:
            fragment = self.session.fragment(entry.index)
            sections.append(fragment)
            parts.append(
                f'<section id="{fragment.section_id}" class="{SECTION_CLASS}" '
                f'data-path="{html.escape(fragment.path, quote=True)}">\n'
                f"{fragment.markup}\n</section>"
            )
            if on_section is not None:
                on_section(fragment)
        markup = f"\n{DIVIDER}\n".join(parts)
        return WholeBookView(markup=markup, toc=self.session.toc, sections=tuple(sections))

    async def load(self) -> WholeBookView:
        """Build the combined view once; concurrent callers share the in-flight build."""
        if self.view is not None:
            return self.view
        if self._pending is None:
            loop = asyncio.get_running_loop()
            self._pending = loop.run_in_executor(None, self.build)
        pending = self._pending
        try:
            view = await pending
        except Exception:
            if self._pending is pending:
                self._pending = None
            raise
        self.view = view
        return view

    def section_for_href(self, href: str) -> str | None:
        target = normalize_path(strip_fragment(href))
        for entry in self.eligible_items:
            if normalize_path(strip_fragment(entry.path)) == target:
                return section_id_for(entry.index)
        return None

    def record_scroll(self, fraction: float) -> ProgressUpdate:
        self._fraction = _clamp_fraction(fraction)
        return self.progress_update()

    def progress_update(self) -> ProgressUpdate:
        return ProgressUpdate(
            book_path=self.session.path,
            mode=self.mode,
            position=self._fraction,
            progress=self._fraction,
        )
