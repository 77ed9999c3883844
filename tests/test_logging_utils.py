from __future__ import annotations

import logging

from rich.logging import RichHandler

from shpeegle.logging_utils import (
    ACCESS_FORMATTER,
    BookPathAccessFormatter,
    build_uvicorn_log_config,
    configure_logging,
    decode_request_target,
)


def _access_record(target: str) -> logging.LogRecord:
    return logging.LogRecord(
        name="uvicorn.access",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg='%s - "%s %s HTTP/%s" %d',
        args=("127.0.0.1:5000", "POST", target, "1.1", 200),
        exc_info=None,
    )


def test_decode_request_target_keeps_plus_in_path() -> None:
    assert decode_request_target("/books/a+b%20c.epub") == "/books/a+b c.epub"
    assert decode_request_target("/api/session/document?mode=book") == "/api/session/document?mode=book"
    assert (
        decode_request_target("/api/books/open?path=%2Fhome%2Freader%2F%E6%9C%AC+%E4%BA%8C.epub")
        == "/api/books/open?path=/home/reader/本 二.epub"
    )


def test_access_formatter_shows_book_paths() -> None:
    formatter = BookPathAccessFormatter('%(client_addr)s - "%(request_line)s" %(status_code)s', use_colors=False)
    line = formatter.format(_access_record("/api/session/document?path=%E5%B0%8F%E8%AA%AC.epub"))
    assert '"POST /api/session/document?path=小説.epub HTTP/1.1" 200' in line


def test_uvicorn_log_config_points_at_formatter() -> None:
    config = build_uvicorn_log_config()
    assert config["formatters"]["access"]["()"] == ACCESS_FORMATTER
    assert build_uvicorn_log_config() is not config


def test_configure_logging_is_idempotent() -> None:
    logger = configure_logging(debug=True)
    configure_logging(debug=True)
    assert logger.level == logging.DEBUG
    assert sum(isinstance(handler, RichHandler) for handler in logger.handlers) == 1
    configure_logging(debug=False)
    assert logger.level == logging.WARNING
