from __future__ import annotations

import argparse
import socket
import sys
from importlib import metadata
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.tree import Tree

import tomllib

from .archive import BookOpenError
from .book import BookSession, open_book
from .logging_utils import build_uvicorn_log_config, configure_logging
from .navigation import NavNode
from .strategies import WholeBookReader
from .theme import ThemeSettings, render_document
from .web import READING_MODES, WebConfig, create_app

DEFAULT_LIBRARY_PATH = Path("~/.shpeegle/library.json")

console = Console()
err_console = Console(stderr=True)


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("shpeegle")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"shpeegle {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log parsing and normalization details to stderr.",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Read EPUB books. Commands: info, chapter, export, web.",
    )
    _add_common_flags(ap)
    ap.add_argument("command", choices=["info", "chapter", "export", "web"])
    return ap


def build_info_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="shpeegle info",
        description="Show metadata, table of contents and reading order of an EPUB.",
    )
    _add_common_flags(ap)
    ap.add_argument("book", help="Path to an .epub file.")
    return ap


def build_chapter_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="shpeegle chapter",
        description="Print one normalized chapter (spine item) as markup.",
    )
    _add_common_flags(ap)
    ap.add_argument("book", help="Path to an .epub file.")
    ap.add_argument("index", type=int, help="Zero-based spine index.")
    ap.add_argument(
        "--themed",
        action="store_true",
        help="Wrap the chapter in a standalone themed HTML document.",
    )
    return ap


def build_export_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="shpeegle export",
        description="Export the whole book as one self-contained themed HTML file.",
    )
    _add_common_flags(ap)
    ap.add_argument("book", help="Path to an .epub file.")
    ap.add_argument(
        "-o",
        "--output",
        help="Output .html path (defaults to the book path with an .html suffix).",
    )
    ap.add_argument("--font-size", type=int, help="Body font size in px (12-32).")
    ap.add_argument("--line-height", type=float, help="Line height (1.2-2.4).")
    ap.add_argument("--font", choices=["Serif", "Sans", "System"], help="Font family preset.")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="shpeegle web",
        description="Serve the browser-based reader.",
    )
    _add_common_flags(ap)
    ap.add_argument(
        "--library",
        default=str(DEFAULT_LIBRARY_PATH),
        help=f"Library JSON file (default: {DEFAULT_LIBRARY_PATH}).",
    )
    ap.add_argument(
        "--mode",
        choices=list(READING_MODES),
        default="chapter",
        help="Default reading mode for newly opened books (default: chapter).",
    )
    ap.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the web server (default: 127.0.0.1).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2047,
        help="Port for the web server (default: 2047).",
    )
    return ap


def _load_session(path_value: str) -> BookSession:
    path = Path(path_value).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Input path not found: {path}")
    return open_book(path.read_bytes(), str(path))


def _toc_tree(tree: Tree, nodes: tuple[NavNode, ...]) -> None:
    for node in nodes:
        branch = tree.add(f"{escape(node.label)} [dim]{escape(node.href)}[/dim]")
        _toc_tree(branch, node.children)


def _run_info(args: argparse.Namespace) -> int:
    with _load_session(args.book) as session:
        meta = session.metadata
        console.print(f"[bold]{escape(meta.title)}[/bold]")
        if meta.author:
            console.print(escape(meta.author))
        details = [
            ("Language", meta.language),
            ("Publisher", meta.publisher),
            ("Identifier", meta.identifier),
            ("Cover", meta.cover.path if meta.cover else None),
            ("Package", session.structure.package.path),
        ]
        for key, value in details:
            if value:
                console.print(f"[dim]{key}:[/dim] {escape(value)}")

        tree = Tree("Contents")
        if session.toc:
            _toc_tree(tree, session.toc)
        else:
            tree.add("[dim](no table of contents)[/dim]")
        console.print(tree)

        table = Table(title="Reading order")
        table.add_column("#", justify="right")
        table.add_column("Path")
        table.add_column("Media type")
        table.add_column("Label")
        for entry in session.spine:
            path_text = escape(entry.path) if entry.linear else f"{escape(entry.path)} [dim](non-linear)[/dim]"
            table.add_row(
                str(entry.index),
                path_text,
                entry.media_type,
                escape(session.structure.label_for_index(entry.index)),
            )
        console.print(table)
    return 0


def _run_chapter(args: argparse.Namespace) -> int:
    with _load_session(args.book) as session:
        total = len(session.spine)
        if not 0 <= args.index < total:
            raise ValueError(f"Chapter index {args.index} out of range (book has {total} spine items).")
        fragment = session.fragment(args.index)
        if args.themed:
            title = f"{session.metadata.title} - {session.structure.label_for_index(args.index)}"
            output = render_document(fragment.markup, ThemeSettings(), title)
        else:
            output = fragment.markup
    sys.stdout.write(output)
    if not output.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def _export_markup(session: BookSession) -> str:
    reader = WholeBookReader(session)
    with Progress(
        TextColumn("{task.description}", justify="left"),
        BarColumn(bar_width=None),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=err_console,
        transient=True,
    ) as progress:
        task = progress.add_task("Normalizing", total=len(reader.eligible_items))
        view = reader.build(on_section=lambda _fragment: progress.advance(task))
    return view.markup


def _run_export(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {}
    if args.font_size is not None:
        overrides["font_size"] = args.font_size
    if args.line_height is not None:
        overrides["line_height"] = args.line_height
    if args.font:
        overrides["font_family"] = args.font
    settings = ThemeSettings.from_payload(overrides)
    book_path = Path(args.book).expanduser()
    output_path = Path(args.output).expanduser() if args.output else book_path.with_suffix(".html")
    with _load_session(args.book) as session:
        markup = _export_markup(session)
        document = render_document(markup, settings, session.metadata.title)
    output_path.write_text(document, encoding="utf-8")
    console.print(f"Wrote {output_path}")
    return 0


def _resolve_local_ip(host: str) -> str:
    if host not in {"", "0.0.0.0"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def _run_web(args: argparse.Namespace) -> int:
    library_path = Path(args.library).expanduser().resolve()
    config = WebConfig(
        library_path=library_path,
        mode=args.mode,
        host=args.host,
        port=args.port,
    )
    app = create_app(config)
    url = f"http://{_resolve_local_ip(args.host)}:{args.port}/"
    console.print(f"Library: {library_path}")
    console.print(f"Web URL: {url}")
    console.print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(),
    )
    return 0


COMMANDS = {
    "info": (build_info_parser, _run_info),
    "chapter": (build_chapter_parser, _run_chapter),
    "export": (build_export_parser, _run_export),
    "web": (build_web_parser, _run_web),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] not in COMMANDS:
        parser = build_parser()
        if not argv:
            parser.print_help()
            return 0
        parser.parse_args(argv)
        return 2

    build, run = COMMANDS[argv[0]]
    args = build().parse_args(argv[1:])
    configure_logging(args.debug, console=err_console)
    try:
        return run(args)
    except BookOpenError as exc:
        err_console.print(f"[red]{escape(exc.user_message)}[/red]")
        if exc.detail:
            err_console.print(f"[dim]{escape(exc.detail)}[/dim]")
        return 1
    except (FileNotFoundError, ValueError) as exc:
        err_console.print(f"[red]{escape(str(exc))}[/red]")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
