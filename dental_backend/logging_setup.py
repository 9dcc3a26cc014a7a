"""
Logging setup for the API server and the CLI.
"""
from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: int | str = logging.INFO, log_file: str | Path | None = None) -> None:
    """
    Configure the root logger.

    Args:
        level: logging level (name or number)
        log_file: optional file that also receives DEBUG output
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    # DEBUG records must reach the file handler
    root_logger.setLevel(logging.DEBUG if log_file else level)
    root_logger.handlers.clear()

    # stderr, so CLI output on stdout stays parseable
    console_handler = RichHandler(console=Console(stderr=True), show_time=True, show_path=False, rich_tracebacks=True)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root_logger.addHandler(file_handler)

    # SQL echo and access logs are noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("passlib").setLevel(logging.ERROR)
