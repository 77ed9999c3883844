from __future__ import annotations

from urllib.parse import unquote


def normalize_path(path: str) -> str:
    """Collapse `.`/`..` and empty segments of an in-archive path.

    Popping past the archive root is a no-op.
    """
    segments: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments:
                segments.pop()
            continue
        segments.append(segment)
    return "/".join(segments)


def parent_dir(path: str) -> str:
    # Text up to and including the last slash; "" for root-level entries.
    return path[: path.rfind("/") + 1]


def resolve_path(base_path: str, reference: str) -> str:
    """Resolve ``reference`` against the directory of ``base_path``."""
    if reference.startswith("/"):
        return normalize_path(reference)
    return normalize_path(parent_dir(base_path) + reference)


def split_fragment(href: str) -> tuple[str, str | None]:
    if "#" in href:
        base, fragment = href.split("#", 1)
        return base, fragment
    return href, None


def strip_fragment(href: str) -> str:
    return split_fragment(href)[0]


def resolve_href(base_path: str, href: str) -> str:
    """Resolve a document link, keeping any fragment identifier.

    Link targets are URLs, so the path part is percent-decoded before it is
    matched against archive entry names.
    """
    target, fragment = split_fragment(href.strip())
    if not target:
        resolved = normalize_path(base_path)
    else:
        resolved = resolve_path(base_path, unquote(target))
    if fragment:
        return f"{resolved}#{fragment}"
    return resolved


def has_scheme(reference: str) -> bool:
    lowered = reference.strip().lower()
    if lowered.startswith("//"):
        return True
    head, sep, _ = lowered.partition(":")
    return bool(sep) and head.isalpha() and len(head) > 1


def same_document(left: str, right: str) -> bool:
    """Compare two in-archive hrefs with fragment identifiers stripped."""
    return normalize_path(strip_fragment(left)) == normalize_path(strip_fragment(right))
