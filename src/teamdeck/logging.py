from __future__ import annotations

import logging
from pathlib import Path

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# Libraries whose debug output drowns session traffic unless --verbose is given.
QUIET_LOGGERS = ("asyncio",)


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Log to the console through rich and, when ``log_file`` is given, to a plain file too."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [RichHandler(markup=False, rich_tracebacks=True, show_path=verbose)]
    if log_file is not None:
        log_file = log_file.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=level, format="%(name)s: %(message)s", datefmt="[%X]", handlers=handlers, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
