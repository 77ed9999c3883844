from __future__ import annotations

import base64
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping
from urllib.parse import unquote

from .archive import Archive, BookOpenError
from .paths import normalize_path, resolve_path, split_fragment

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"
PACKAGE_MEDIA_TYPE = "application/oebps-package+xml"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
CONTENT_DOCUMENT_TYPES = frozenset(
    {
        "application/xhtml+xml",
        "text/html",
        "application/x-dtbook+xml",
        "text/x-oeb1-document",
    }
)


class MissingContainerDescriptorError(BookOpenError):
    """Raised when META-INF/container.xml is absent."""

    user_message = "The EPUB is missing its container descriptor (META-INF/container.xml)."


class MissingPackageDocumentError(BookOpenError):
    """Raised when the package document cannot be located."""

    user_message = "The EPUB does not point to a readable package document."


class MalformedPackageDocumentError(BookOpenError):
    """Raised when the package document cannot be parsed."""

    user_message = "The EPUB package document is malformed."


@dataclass(frozen=True)
class ManifestItem:
    id: str
    href: str
    path: str
    media_type: str
    properties: frozenset[str] = frozenset()

    @property
    def is_content_document(self) -> bool:
        return self.media_type in CONTENT_DOCUMENT_TYPES

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")


@dataclass(frozen=True)
class SpineItem:
    index: int
    item: ManifestItem
    linear: bool = True

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def path(self) -> str:
        return self.item.path

    @property
    def media_type(self) -> str:
        return self.item.media_type


@dataclass(frozen=True)
class PackageInfo:
    path: str
    manifest: Mapping[str, ManifestItem]
    spine: tuple[SpineItem, ...]
    toc_id: str | None = None
    version: str | None = None
    _root: ET.Element | None = field(default=None, repr=False, compare=False)

    def item_for_path(self, path: str) -> ManifestItem | None:
        target = normalize_path(split_fragment(path)[0])
        for item in self.manifest.values():
            if item.path == target:
                return item
        return None

    def media_types(self) -> dict[str, str]:
        return {item.path: item.media_type for item in self.manifest.values()}

    def spine_paths(self) -> list[str]:
        return [entry.path for entry in self.spine]


@dataclass(frozen=True)
class CoverImage:
    path: str
    media_type: str | None
    data: bytes

    @property
    def data_uri(self) -> str:
        media_type = self.media_type or "application/octet-stream"
        return f"data:{media_type};base64,{base64.b64encode(self.data).decode('ascii')}"


@dataclass(frozen=True)
class BookMetadata:
    title: str = "Untitled"
    authors: tuple[str, ...] = ()
    language: str | None = None
    publisher: str | None = None
    identifier: str | None = None
    cover: CoverImage | None = None

    @property
    def author(self) -> str:
        return ", ".join(self.authors)


def strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if strip_tag(attr) == name:
            return value
    return None


def child_elements(elem: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in elem:
        if isinstance(child.tag, str) and strip_tag(child.tag) == name:
            yield child


def first_child(elem: ET.Element, name: str) -> ET.Element | None:
    return next(child_elements(elem, name), None)


def _element_text(elem: ET.Element) -> str:
    return " ".join("".join(elem.itertext()).split())


def find_package_path(archive: Archive) -> str:
    container = archive.read(CONTAINER_PATH)
    if container is None:
        raise MissingContainerDescriptorError(f"{CONTAINER_PATH} not found")
    try:
        root = ET.fromstring(container)
    except ET.ParseError as exc:
        raise MissingPackageDocumentError(f"{CONTAINER_PATH} is not well-formed: {exc}") from exc
    candidates: list[tuple[str, str | None]] = []
    for elem in root.iter():
        if not isinstance(elem.tag, str) or strip_tag(elem.tag) != "rootfile":
            continue
        full_path = get_attr(elem, "full-path")
        if full_path and full_path.strip():
            candidates.append((full_path.strip(), get_attr(elem, "media-type")))
    if not candidates:
        raise MissingPackageDocumentError("container.xml declares no rootfile full-path")
    # Prefer the rootfile explicitly typed as a package document.
    candidates.sort(key=lambda entry: 0 if entry[1] == PACKAGE_MEDIA_TYPE else 1)
    full_path = normalize_path(unquote(candidates[0][0]))
    if full_path not in archive:
        raise MissingPackageDocumentError(f"Package document {full_path} not found in archive")
    return full_path


def _parse_manifest(manifest_elem: ET.Element, package_path: str) -> dict[str, ManifestItem]:
    manifest: dict[str, ManifestItem] = {}
    for item in child_elements(manifest_elem, "item"):
        item_id = get_attr(item, "id")
        href = get_attr(item, "href")
        if not item_id or not href:
            logger.debug("Skipping manifest item without id/href in %s", package_path)
            continue
        if item_id in manifest:
            logger.debug("Duplicate manifest id %s; keeping the first", item_id)
            continue
        target, _ = split_fragment(href)
        manifest[item_id] = ManifestItem(
            id=item_id,
            href=href,
            path=resolve_path(package_path, unquote(target)),
            media_type=(get_attr(item, "media-type") or "").strip().lower(),
            properties=frozenset((get_attr(item, "properties") or "").split()),
        )
    return manifest


def _parse_spine(spine_elem: ET.Element, manifest: Mapping[str, ManifestItem]) -> tuple[SpineItem, ...]:
    entries: list[SpineItem] = []
    for itemref in child_elements(spine_elem, "itemref"):
        idref = get_attr(itemref, "idref")
        item = manifest.get(idref or "")
        if item is None:
            logger.debug("Dropping spine itemref with unknown idref %r", idref)
            continue
        linear = (get_attr(itemref, "linear") or "yes").strip().lower() != "no"
        entries.append(SpineItem(index=len(entries), item=item, linear=linear))
    return tuple(entries)


def parse_package(archive: Archive) -> PackageInfo:
    """Locate and parse the package document of an opened archive."""
    package_path = find_package_path(archive)
    raw = archive.read(package_path)
    if raw is None:
        raise MissingPackageDocumentError(f"Package document {package_path} could not be read")
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as exc:
        raise MalformedPackageDocumentError(f"{package_path}: {exc}") from exc
    if strip_tag(root.tag) != "package":
        raise MalformedPackageDocumentError(
            f"{package_path}: root element is <{strip_tag(root.tag)}>, expected <package>"
        )
    manifest_elem = first_child(root, "manifest")
    if manifest_elem is None:
        raise MalformedPackageDocumentError(f"{package_path}: missing <manifest>")
    spine_elem = first_child(root, "spine")
    if spine_elem is None:
        raise MalformedPackageDocumentError(f"{package_path}: missing <spine>")

    manifest = _parse_manifest(manifest_elem, package_path)
    spine = _parse_spine(spine_elem, manifest)
    for entry in spine:
        if entry.path not in archive:
            logger.warning("Spine item %s points at missing entry %s", entry.id, entry.path)
    return PackageInfo(
        path=package_path,
        manifest=MappingProxyType(manifest),
        spine=spine,
        toc_id=get_attr(spine_elem, "toc"),
        version=root.attrib.get("version"),
        _root=root,
    )


def _metadata_values(root: ET.Element, name: str) -> list[str]:
    metadata = first_child(root, "metadata")
    if metadata is None:
        return []
    values = []
    for elem in metadata.iter():
        if isinstance(elem.tag, str) and strip_tag(elem.tag) == name:
            text = _element_text(elem)
            if text:
                values.append(text)
    return values


def _cover_candidates(root: ET.Element, package: PackageInfo) -> list[ManifestItem]:
    manifest = package.manifest
    candidates: list[ManifestItem] = []
    for elem in root.iter():
        if not isinstance(elem.tag, str) or strip_tag(elem.tag) != "meta":
            continue
        name = get_attr(elem, "name")
        content = get_attr(elem, "content")
        if name and name.lower() == "cover" and content:
            item = manifest.get(content.strip())
            if item is not None:
                candidates.append(item)
            break
    for item in manifest.values():
        if "cover-image" in item.properties and item.is_image:
            candidates.append(item)
    for item in manifest.values():
        if item.is_image and ("cover" in item.id.lower() or "cover" in item.href.lower()):
            candidates.append(item)
    if not candidates:
        for item in manifest.values():
            if item.is_image:
                candidates.append(item)
                break
    return candidates


def read_cover(archive: Archive, package: PackageInfo) -> CoverImage | None:
    if package._root is None:
        return None
    seen: set[str] = set()
    for item in _cover_candidates(package._root, package):
        if item.path in seen:
            continue
        seen.add(item.path)
        data = archive.read(item.path)
        if not data:
            continue
        return CoverImage(path=item.path, media_type=item.media_type or None, data=data)
    return None


def read_metadata(archive: Archive, package: PackageInfo) -> BookMetadata:
    root = package._root
    if root is None:
        return BookMetadata()
    titles = _metadata_values(root, "title")
    languages = _metadata_values(root, "language")
    publishers = _metadata_values(root, "publisher")
    identifiers = _metadata_values(root, "identifier")
    return BookMetadata(
        title=titles[0] if titles else "Untitled",
        authors=tuple(_metadata_values(root, "creator")),
        language=languages[0] if languages else None,
        publisher=publishers[0] if publishers else None,
        identifier=identifiers[0] if identifiers else None,
        cover=read_cover(archive, package),
    )
