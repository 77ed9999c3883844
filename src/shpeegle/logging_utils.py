from __future__ import annotations

import logging
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote, unquote_plus

from rich.console import Console
from rich.logging import RichHandler
from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter

PACKAGE_LOGGER = "shpeegle"
ACCESS_FORMATTER = f"{__name__}.BookPathAccessFormatter"


def decode_request_target(target: str) -> str:
    """Percent-decode a request target for display.

    The query part also turns ``+`` into spaces, so ``?path=...`` book paths
    read the way they were typed.
    """
    path, sep, query = target.partition("?")
    decoded = unquote(path, errors="replace")
    if sep:
        decoded += sep + unquote_plus(query, errors="replace")
    return decoded


class BookPathAccessFormatter(AccessFormatter):
    """Access log formatter that prints request targets as readable UTF-8."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        args = record.args
        if isinstance(args, tuple) and len(args) == 5 and isinstance(args[2], str):
            record = copy(record)
            record.args = (*args[:2], decode_request_target(args[2]), *args[3:])
        return super().formatMessage(record)


def build_uvicorn_log_config() -> dict[str, Any]:
    config = deepcopy(LOGGING_CONFIG)
    config["formatters"]["access"]["()"] = ACCESS_FORMATTER
    return config


def configure_logging(debug: bool = False, console: Console | None = None) -> logging.Logger:
    """Route the package's log records through rich; idempotent."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
