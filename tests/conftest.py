from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import Callable, Iterable, Sequence

import pytest

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 16

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

XHTML = "application/xhtml+xml"
NCX = "application/x-dtbncx+xml"


def xhtml(body: str, head: str = "", title: str = "Chapter") -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
  <head><title>{title}</title>{head}</head>
  <body>{body}</body>
</html>
"""


def package_document(
    items: Iterable[Sequence[str]],
    spine: Iterable[str],
    metadata: str = "",
    spine_attrs: str = "",
) -> str:
    manifest_lines = []
    for item in items:
        item_id, href, media_type = item[0], item[1], item[2]
        props = f' properties="{item[3]}"' if len(item) > 3 and item[3] else ""
        manifest_lines.append(
            f'    <item id="{item_id}" href="{href}" media-type="{media_type}"{props}/>'
        )
    spine_lines = [f'    <itemref idref="{idref}"/>' for idref in spine]
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<package version="3.0" unique-identifier="BookId" xmlns="http://www.idpf.org/2007/opf">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
{metadata}
  </metadata>
  <manifest>
{chr(10).join(manifest_lines)}
  </manifest>
  <spine{spine_attrs}>
{chr(10).join(spine_lines)}
  </spine>
</package>
"""


def build_epub(
    files: dict[str, str | bytes],
    *,
    package_path: str = "OEBPS/content.opf",
    include_container: bool = True,
) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        if include_container:
            zf.writestr("META-INF/container.xml", CONTAINER_XML.format(path=package_path))
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


SAMPLE_NCX = """<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <head/>
  <docTitle><text>Sample Book</text></docTitle>
  <navMap>
    <navPoint id="p1" playOrder="1">
      <navLabel><text>Chapter One</text></navLabel>
      <content src="text/ch1.xhtml"/>
      <navPoint id="p1-1" playOrder="2">
        <navLabel><text>Section 1.1</text></navLabel>
        <content src="text/ch1.xhtml#s1"/>
      </navPoint>
    </navPoint>
    <navPoint id="p2" playOrder="3">
      <navLabel><text>Chapter Two</text></navLabel>
      <content src="text/ch2.xhtml"/>
    </navPoint>
    <navPoint id="p3" playOrder="4">
      <navLabel><text>Chapter Three</text></navLabel>
      <content src="text/ch3.xhtml#section2"/>
    </navPoint>
  </navMap>
</ncx>
"""

SAMPLE_NAV = xhtml(
    """
    <nav epub:type="toc" id="toc">
      <ol>
        <li><a href="text/ch1.xhtml">Nav One</a></li>
      </ol>
    </nav>
    """,
    title="Contents",
)

SAMPLE_CH1 = xhtml(
    """
    <h1 style="color: red">Chapter One</h1>
    <p id="s1" style="margin: 0">First paragraph.</p>
    <img src="../images/a.png" alt="a"/>
    <img src="../images/missing.png" alt="missing"/>
    <svg xmlns="http://www.w3.org/2000/svg" xmlns:xlink="http://www.w3.org/1999/xlink">
      <image xlink:href="../images/a.png" width="10" height="10"/>
    </svg>
    """,
    head='<link rel="stylesheet" type="text/css" href="../styles/book.css"/><style>p { color: blue; }</style>',
    title="Chapter One",
)

# Not well-formed XML: unclosed paragraph, void tag, HTML entity.
SAMPLE_CH2 = """<html><head><title>Chapter Two</title><style>body{}</style></head>
<body><h1>Chapter Two</h1><p>Loose paragraph<br>with&nbsp;a break<p>Another one</body></html>"""

SAMPLE_CH3 = xhtml('<h1>Chapter Three</h1><p id="section2">Target section.</p>', title="Chapter Three")

SAMPLE_METADATA = """    <dc:title>Sample Book</dc:title>
    <dc:creator>Ada Writer</dc:creator>
    <dc:creator>Ben Coauthor</dc:creator>
    <dc:language>en</dc:language>
    <dc:publisher>Example Press</dc:publisher>
    <dc:identifier id="BookId">urn:uuid:1234</dc:identifier>
    <meta name="cover" content="cover-img"/>"""

SAMPLE_ITEMS = [
    ("ncx", "toc.ncx", NCX),
    ("nav", "nav.xhtml", XHTML, "nav"),
    ("cover", "text/cover.xhtml", XHTML),
    ("front", "text/front.xhtml", XHTML),
    ("c1", "text/ch1.xhtml", XHTML),
    ("c2", "text/ch2.xhtml", XHTML),
    ("c3", "text/ch3.xhtml", XHTML),
    ("css", "styles/book.css", "text/css"),
    ("img", "images/a.png", "image/png"),
    ("cover-img", "images/cover.jpg", "image/jpeg"),
]


def sample_files() -> dict[str, str | bytes]:
    return {
        "OEBPS/content.opf": package_document(
            SAMPLE_ITEMS,
            ["cover", "front", "c1", "c2", "c3"],
            metadata=SAMPLE_METADATA,
            spine_attrs=' toc="ncx"',
        ),
        "OEBPS/toc.ncx": SAMPLE_NCX,
        "OEBPS/nav.xhtml": SAMPLE_NAV,
        "OEBPS/text/cover.xhtml": xhtml('<img src="../images/cover.jpg" alt="cover"/>', title="Cover"),
        "OEBPS/text/front.xhtml": xhtml("<p>Front matter.</p>", title="Front"),
        "OEBPS/text/ch1.xhtml": SAMPLE_CH1,
        "OEBPS/text/ch2.xhtml": SAMPLE_CH2,
        "OEBPS/text/ch3.xhtml": SAMPLE_CH3,
        "OEBPS/styles/book.css": "p { color: blue; }",
        "OEBPS/images/a.png": PNG_BYTES,
        "OEBPS/images/cover.jpg": JPEG_BYTES,
    }


@pytest.fixture
def make_epub() -> Callable[..., bytes]:
    return build_epub


@pytest.fixture
def sample_epub() -> bytes:
    return build_epub(sample_files())


@pytest.fixture
def sample_epub_path(tmp_path: Path, sample_epub: bytes) -> Path:
    path = tmp_path / "sample.epub"
    path.write_bytes(sample_epub)
    return path


def mark_encrypted(data: bytes, name: str) -> bytes:
    """Set the encryption flag on ``name`` in the zip central directory."""
    patched = bytearray(data)
    encoded = name.encode("utf-8")
    offset = patched.find(b"PK\x01\x02")
    while offset != -1:
        name_length = int.from_bytes(patched[offset + 28 : offset + 30], "little")
        if patched[offset + 46 : offset + 46 + name_length] == encoded:
            patched[offset + 8] |= 0x01
            return bytes(patched)
        offset = patched.find(b"PK\x01\x02", offset + 46)
    raise KeyError(name)
