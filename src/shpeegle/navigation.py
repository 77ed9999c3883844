from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterable, Iterator

from bs4 import Tag  # type: ignore

from .archive import Archive
from .markup import parse_markup
from .package import NCX_MEDIA_TYPE, ManifestItem, PackageInfo, first_child, get_attr, strip_tag
from .paths import resolve_href, same_document

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "Untitled"


@dataclass(frozen=True)
class NavNode:
    label: str
    href: str
    children: tuple["NavNode", ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "label": self.label,
            "href": self.href,
            "subitems": [child.as_dict() for child in self.children],
        }


def _clean_label(text: str | None) -> str:
    cleaned = " ".join((text or "").split())
    return cleaned or DEFAULT_LABEL


def iter_nodes(nodes: Iterable[NavNode], depth: int = 0) -> Iterator[tuple[int, NavNode]]:
    """Depth-first walk yielding ``(depth, node)`` pairs in document order."""
    for node in nodes:
        yield depth, node
        yield from iter_nodes(node.children, depth + 1)


def find_label(nodes: Iterable[NavNode], path: str) -> str | None:
    for _, node in iter_nodes(nodes):
        if node.href and same_document(node.href, path):
            return node.label
    return None


# ---------- legacy navigation-control (NCX) ----------


def _ncx_points(parent: ET.Element, ncx_path: str) -> list[NavNode]:
    nodes: list[NavNode] = []
    for point in parent:
        if not isinstance(point.tag, str) or strip_tag(point.tag) != "navPoint":
            continue
        label_elem = first_child(point, "navLabel")
        text_elem = first_child(label_elem, "text") if label_elem is not None else None
        label = "".join(text_elem.itertext()) if text_elem is not None else None
        content = first_child(point, "content")
        src = get_attr(content, "src") if content is not None else None
        children = tuple(_ncx_points(point, ncx_path))
        if not src or not src.strip():
            # Untargeted points keep their subtree at the parent level.
            nodes.extend(children)
            continue
        nodes.append(
            NavNode(
                label=_clean_label(label),
                href=resolve_href(ncx_path, src),
                children=children,
            )
        )
    return nodes


def parse_ncx(xml_bytes: bytes, ncx_path: str) -> list[NavNode]:
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        logger.debug("Navigation control %s is not well-formed: %s", ncx_path, exc)
        return []
    nav_map = first_child(root, "navMap")
    if nav_map is None:
        return []
    return _ncx_points(nav_map, ncx_path)


# ---------- navigation document (EPUB 3 nav) ----------


def _nav_type(nav: Tag) -> str:
    for key, value in nav.attrs.items():
        if key == "type" or key.endswith(":type"):
            return " ".join(value) if isinstance(value, list) else str(value)
    return ""


def _select_toc_nav(soup) -> Tag | None:
    navs = soup.find_all("nav")
    for nav in navs:
        if "toc" in _nav_type(nav).lower().split():
            return nav
    for nav in navs:
        if (nav.get("role") or "").lower() == "doc-toc":
            return nav
    return navs[0] if navs else None


def _nav_list(ol: Tag, nav_path: str) -> list[NavNode]:
    nodes: list[NavNode] = []
    for li in ol.find_all("li", recursive=False):
        link = li.find("a", recursive=False)
        if link is None:
            link = li.find(["a", "span"], recursive=False)
        child_list = li.find(["ol", "ul"], recursive=False)
        children = tuple(_nav_list(child_list, nav_path)) if child_list is not None else ()
        href = link.get("href") if link is not None else None
        if not href:
            nodes.extend(children)
            continue
        nodes.append(
            NavNode(
                label=_clean_label(link.get_text(" ")),
                href=resolve_href(nav_path, href),
                children=children,
            )
        )
    return nodes


def parse_nav_document(text: str, nav_path: str) -> list[NavNode]:
    soup, _ = parse_markup(text)
    nav = _select_toc_nav(soup)
    if nav is None:
        return []
    top = nav.find(["ol", "ul"])
    if top is None:
        return []
    return _nav_list(top, nav_path)


# ---------- dispatch ----------


def _ncx_candidates(package: PackageInfo) -> list[ManifestItem]:
    candidates: list[ManifestItem] = []
    if package.toc_id and package.toc_id in package.manifest:
        candidates.append(package.manifest[package.toc_id])
    for item in package.manifest.values():
        if item.media_type == NCX_MEDIA_TYPE and item not in candidates:
            candidates.append(item)
    return candidates


def _nav_candidates(package: PackageInfo) -> list[ManifestItem]:
    return [item for item in package.manifest.values() if "nav" in item.properties]


def parse_legacy_navigation(archive: Archive, package: PackageInfo) -> list[NavNode]:
    for item in _ncx_candidates(package):
        raw = archive.read(item.path)
        if raw is None:
            logger.debug("Navigation control %s is missing from the archive", item.path)
            continue
        nodes = parse_ncx(raw, item.path)
        if nodes:
            return nodes
    return []


def parse_modern_navigation(archive: Archive, package: PackageInfo) -> list[NavNode]:
    for item in _nav_candidates(package):
        text = archive.read_text(item.path)
        if text is None:
            logger.debug("Navigation document %s is missing from the archive", item.path)
            continue
        nodes = parse_nav_document(text, item.path)
        if nodes:
            return nodes
    return []


def parse_navigation(archive: Archive, package: PackageInfo) -> list[NavNode]:
    """Recover the table of contents; never raises.

    The legacy navigation-control tree wins whenever it yields at least one
    entry. The navigation document is only consulted as a fallback.
    """
    for source in (parse_legacy_navigation, parse_modern_navigation):
        try:
            nodes = source(archive, package)
        except Exception as exc:  # one broken nav source must not block the book
            logger.warning("Navigation source %s failed: %s", source.__name__, exc)
            continue
        if nodes:
            return nodes
    logger.debug("No table of contents could be recovered")
    return []
