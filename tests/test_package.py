from __future__ import annotations

import io
import zipfile

import pytest

from conftest import NCX, PNG_BYTES, XHTML, build_epub, package_document, sample_files, xhtml
from shpeegle.archive import Archive, BookOpenError
from shpeegle.package import (
    MalformedPackageDocumentError,
    MissingContainerDescriptorError,
    MissingPackageDocumentError,
    find_package_path,
    parse_package,
    read_metadata,
)


def _archive(files, **kwargs) -> Archive:
    return Archive.open(build_epub(files, **kwargs))


def test_spine_follows_itemref_order() -> None:
    files = {
        "OEBPS/content.opf": package_document(
            [("c1", "chap1.xhtml", XHTML), ("c2", "chap2.xhtml", XHTML)],
            ["c1", "c2"],
        ),
        "OEBPS/chap1.xhtml": xhtml("<p>1</p>"),
        "OEBPS/chap2.xhtml": xhtml("<p>2</p>"),
    }
    package = parse_package(_archive(files))
    assert package.path == "OEBPS/content.opf"
    assert package.spine_paths() == ["OEBPS/chap1.xhtml", "OEBPS/chap2.xhtml"]
    assert [entry.index for entry in package.spine] == [0, 1]


def test_unknown_itemref_is_dropped_without_error() -> None:
    files = {
        "OEBPS/content.opf": package_document(
            [("c1", "chap1.xhtml", XHTML), ("c2", "chap2.xhtml", XHTML)],
            ["c1", "ghost", "c2"],
        ),
        "OEBPS/chap1.xhtml": xhtml("<p>1</p>"),
        "OEBPS/chap2.xhtml": xhtml("<p>2</p>"),
    }
    package = parse_package(_archive(files))
    assert [entry.id for entry in package.spine] == ["c1", "c2"]
    assert package.spine[1].path == "OEBPS/chap2.xhtml"


def test_manifest_hrefs_resolve_against_package_directory() -> None:
    files = {
        "pkg/sub/content.opf": package_document(
            [
                ("c1", "../text/ch%201.xhtml", XHTML),
                ("img", "./images/a.png", "image/png"),
                ("nav", "nav.xhtml", XHTML, "nav scripted"),
            ],
            ["c1"],
        ),
        "pkg/text/ch 1.xhtml": xhtml("<p/>"),
    }
    package = parse_package(_archive(files, package_path="pkg/sub/content.opf"))
    assert package.manifest["c1"].path == "pkg/text/ch 1.xhtml"
    assert package.manifest["img"].path == "pkg/sub/images/a.png"
    assert package.manifest["img"].is_image
    assert package.manifest["nav"].properties == frozenset({"nav", "scripted"})
    assert package.item_for_path("pkg/text/ch 1.xhtml#frag").id == "c1"


def test_missing_container_descriptor() -> None:
    archive = _archive({"OEBPS/content.opf": "<package/>"}, include_container=False)
    with pytest.raises(MissingContainerDescriptorError) as excinfo:
        parse_package(archive)
    assert isinstance(excinfo.value, BookOpenError)


def test_container_pointing_at_absent_package_document() -> None:
    archive = _archive({}, package_path="OEBPS/missing.opf")
    with pytest.raises(MissingPackageDocumentError):
        find_package_path(archive)


def test_container_without_full_path() -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr(
            "META-INF/container.xml",
            '<container xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
            "<rootfiles><rootfile media-type=\"application/oebps-package+xml\"/></rootfiles></container>",
        )
    with pytest.raises(MissingPackageDocumentError):
        parse_package(Archive.open(buffer.getvalue()))


def test_malformed_package_document() -> None:
    archive = _archive({"OEBPS/content.opf": "<package><manifest></package"})
    with pytest.raises(MalformedPackageDocumentError):
        parse_package(archive)


def test_package_without_spine_is_malformed() -> None:
    archive = _archive(
        {"OEBPS/content.opf": '<package xmlns="http://www.idpf.org/2007/opf"><manifest/></package>'}
    )
    with pytest.raises(MalformedPackageDocumentError):
        parse_package(archive)


def test_dangling_spine_reference_is_kept() -> None:
    files = {
        "OEBPS/content.opf": package_document([("c1", "gone.xhtml", XHTML)], ["c1"]),
    }
    package = parse_package(_archive(files))
    assert package.spine_paths() == ["OEBPS/gone.xhtml"]


def test_spine_records_toc_attribute_and_linear_flag() -> None:
    opf = package_document(
        [("ncx", "toc.ncx", NCX), ("c1", "a.xhtml", XHTML), ("c2", "b.xhtml", XHTML)],
        ["c1", "c2"],
        spine_attrs=' toc="ncx"',
    ).replace('<itemref idref="c2"/>', '<itemref idref="c2" linear="no"/>')
    package = parse_package(_archive({"OEBPS/content.opf": opf}))
    assert package.toc_id == "ncx"
    assert [entry.linear for entry in package.spine] == [True, False]


def test_read_metadata_from_sample() -> None:
    archive = Archive.open(build_epub(sample_files()))
    package = parse_package(archive)
    metadata = read_metadata(archive, package)
    assert metadata.title == "Sample Book"
    assert metadata.authors == ("Ada Writer", "Ben Coauthor")
    assert metadata.author == "Ada Writer, Ben Coauthor"
    assert metadata.language == "en"
    assert metadata.publisher == "Example Press"
    assert metadata.identifier == "urn:uuid:1234"
    assert metadata.cover is not None
    assert metadata.cover.path == "OEBPS/images/cover.jpg"
    assert metadata.cover.data_uri.startswith("data:image/jpeg;base64,")


def test_metadata_defaults_and_cover_fallback() -> None:
    files = {
        "OEBPS/content.opf": package_document(
            [("c1", "a.xhtml", XHTML), ("pic", "art/plate.png", "image/png")],
            ["c1"],
        ),
        "OEBPS/a.xhtml": xhtml("<p/>"),
        "OEBPS/art/plate.png": PNG_BYTES,
    }
    archive = _archive(files)
    metadata = read_metadata(archive, parse_package(archive))
    assert metadata.title == "Untitled"
    assert metadata.author == ""
    assert metadata.cover is not None
    assert metadata.cover.path == "OEBPS/art/plate.png"


def test_cover_image_property_wins_over_name_match() -> None:
    files = {
        "OEBPS/content.opf": package_document(
            [
                ("c1", "a.xhtml", XHTML),
                ("cover-thumb", "images/cover-small.png", "image/png"),
                ("art", "images/front.png", "image/png", "cover-image"),
            ],
            ["c1"],
        ),
        "OEBPS/images/cover-small.png": PNG_BYTES,
        "OEBPS/images/front.png": PNG_BYTES,
    }
    archive = _archive(files)
    metadata = read_metadata(archive, parse_package(archive))
    assert metadata.cover.path == "OEBPS/images/front.png"
