from __future__ import annotations

import logging
import warnings
import xml.etree.ElementTree as ET

from bs4 import BeautifulSoup, FeatureNotFound, XMLParsedAsHTMLWarning  # type: ignore

logger = logging.getLogger(__name__)

_PERMISSIVE_PARSERS = ("html5lib", "lxml", "html.parser")
HTML_VOID_ELEMENTS = frozenset(
    {
        "area",
        "base",
        "br",
        "col",
        "embed",
        "hr",
        "img",
        "input",
        "link",
        "meta",
        "param",
        "source",
        "track",
        "wbr",
    }
)
FOREIGN_NAMESPACES = frozenset(
    {
        "http://www.w3.org/2000/svg",
        "http://www.w3.org/1998/Math/MathML",
    }
)


def is_well_formed(text: str) -> bool:
    try:
        ET.fromstring(text)
    except ET.ParseError:
        return False
    return True


def parse_permissive(text: str) -> BeautifulSoup:
    for parser in _PERMISSIVE_PARSERS:
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(text, parser)
        except FeatureNotFound:
            continue
    # html.parser ships with the standard library, so this is not reached in practice.
    raise FeatureNotFound("No HTML tree builder is available")


def parse_markup(text: str) -> tuple[BeautifulSoup, bool]:
    """Parse a content document, strict XML first.

    Returns the soup and whether the strict parse succeeded. Documents that
    are not well-formed XML are reparsed with a forgiving HTML builder.
    """
    if is_well_formed(text):
        try:
            return BeautifulSoup(text, "lxml-xml"), True
        except FeatureNotFound:
            logger.debug("lxml-xml tree builder unavailable; using HTML builder")
    else:
        logger.debug("Document is not well-formed XML; reparsing permissively")
    return parse_permissive(text), False


def use_html_empty_elements(soup: BeautifulSoup) -> None:
    """Let only void and SVG/MathML elements serialize as ``<tag/>``.

    The XML builder marks every element self-closable, which an HTML parser
    reads as an unclosed start tag (``<a id="p1"/>`` swallows what follows).
    """
    for tag in soup.find_all(True):
        local_name = tag.name.rsplit(":", 1)[-1].lower()
        tag.can_be_empty_element = local_name in HTML_VOID_ELEMENTS or tag.namespace in FOREIGN_NAMESPACES
