from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from typing import Mapping

from bs4 import BeautifulSoup, ProcessingInstruction, Tag  # type: ignore

from .archive import Archive
from .markup import parse_markup, use_html_empty_elements
from .package import SpineItem
from .paths import has_scheme, resolve_path, split_fragment, strip_fragment

logger = logging.getLogger(__name__)

PLACEHOLDER_CLASS = "shpeegle-placeholder"
SVG_HREF_ATTRS = ("xlink:href", "href")
_STRIPPED_TAGS = ["style", "script"]


@dataclass(frozen=True)
class NormalizedFragment:
    section_id: str
    markup: str
    path: str


@dataclass
class _RewritePlan:
    removals: list[object] = field(default_factory=list)
    style_attrs: list[Tag] = field(default_factory=list)
    # (tag, attribute names to write, inline data value)
    embeds: list[tuple[Tag, tuple[str, ...], str]] = field(default_factory=list)


def section_id_for(index: int) -> str:
    return f"section-{index}"


def not_found_placeholder(path: str) -> str:
    return f'<p class="{PLACEHOLDER_CLASS}">Chapter not found: {html.escape(path)}</p>'


def failed_placeholder(path: str) -> str:
    return f'<p class="{PLACEHOLDER_CLASS}">Failed to load chapter: {html.escape(path)}</p>'


def _is_stylesheet_link(tag: Tag) -> bool:
    rel = tag.get("rel")
    if rel is None:
        return False
    tokens = rel if isinstance(rel, list) else str(rel).split()
    return any(token.lower() == "stylesheet" for token in tokens)


def _is_inline(reference: str) -> bool:
    return reference.strip().lower().startswith("data:")


def _inline_reference(
    archive: Archive,
    document_path: str,
    reference: str,
    media_types: Mapping[str, str],
) -> str | None:
    """Return a data URI for ``reference`` or None when it cannot be embedded."""
    if not reference or _is_inline(reference) or has_scheme(reference):
        return None
    target = resolve_path(document_path, strip_fragment(reference.strip()))
    try:
        entry = archive.entry(target, media_types.get(target))
        if entry is None:
            logger.debug("Image %s referenced from %s is not in the archive", target, document_path)
            return None
        return entry.data_uri
    except Exception as exc:  # leave the reference untouched
        logger.debug("Could not embed %s: %s", target, exc)
        return None


def _svg_reference(tag: Tag) -> str | None:
    for attr in SVG_HREF_ATTRS:
        value = tag.get(attr)
        if value:
            return value
    return None


def _plan_rewrites(
    soup: BeautifulSoup,
    root: Tag,
    archive: Archive,
    document_path: str,
    media_types: Mapping[str, str],
) -> _RewritePlan:
    plan = _RewritePlan()
    # Styling is removed from the whole document, not just the content root.
    plan.removals.extend(soup.find_all(_STRIPPED_TAGS))
    plan.removals.extend(link for link in soup.find_all("link") if _is_stylesheet_link(link))
    plan.removals.extend(
        node
        for node in soup.find_all(string=lambda text: isinstance(text, ProcessingInstruction))
        if "xml-stylesheet" in str(node)
    )

    candidates = [root, *root.find_all(True)]
    plan.style_attrs.extend(tag for tag in candidates if tag.has_attr("style"))

    for img in root.find_all("img"):
        source = img.get("src")
        if not source:
            continue
        inline = _inline_reference(archive, document_path, source, media_types)
        if inline is not None:
            plan.embeds.append((img, ("src",), inline))

    for image in root.find_all("image"):
        reference = _svg_reference(image)
        if not reference:
            continue
        inline = _inline_reference(archive, document_path, reference, media_types)
        if inline is not None:
            plan.embeds.append((image, SVG_HREF_ATTRS, inline))
    return plan


def _apply_plan(plan: _RewritePlan) -> None:
    for tag in plan.style_attrs:
        del tag["style"]
    for tag, attrs, value in plan.embeds:
        for attr in attrs:
            tag[attr] = value
    for node in plan.removals:
        node.extract()


def sanitize_markup(
    text: str,
    archive: Archive,
    document_path: str,
    media_types: Mapping[str, str] | None = None,
) -> str:
    soup, strict = parse_markup(text)
    root = soup.find("body") or soup.find("html") or soup
    plan = _plan_rewrites(soup, root, archive, document_path, media_types or {})
    _apply_plan(plan)
    if strict:
        use_html_empty_elements(soup)
    logger.debug(
        "Normalized %s (strict=%s, removed=%d, embedded=%d)",
        document_path,
        strict,
        len(plan.removals),
        len(plan.embeds),
    )
    return root.decode_contents()


def normalize_chapter(
    archive: Archive,
    spine_item: SpineItem,
    media_types: Mapping[str, str] | None = None,
) -> str:
    """Return sanitized, self-contained markup for one spine item.

    Never raises: a missing or unreadable document yields a placeholder.
    """
    path = split_fragment(spine_item.path)[0]
    try:
        text = archive.read_text(path)
        if text is None:
            logger.warning("Spine item %s points at missing entry %s", spine_item.id, path)
            return not_found_placeholder(path)
        return sanitize_markup(text, archive, path, media_types)
    except Exception:
        logger.exception("Failed to normalize %s", path)
        return failed_placeholder(path)


def normalize_fragment(
    archive: Archive,
    spine_item: SpineItem,
    media_types: Mapping[str, str] | None = None,
) -> NormalizedFragment:
    return NormalizedFragment(
        section_id=section_id_for(spine_item.index),
        markup=normalize_chapter(archive, spine_item, media_types),
        path=strip_fragment(spine_item.path),
    )
