"""
Logging setup shared by the library and the CLI.
"""
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_logging_configured = False


def _setup_logging():
    """Configure the root logger. Only runs once per process."""
    global _logging_configured
    if _logging_configured:
        return

    level_name = os.getenv("P2I_LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)

    if sys.stderr.isatty():
        console_handler = RichHandler(
            show_time=False,
            show_path=False,
            rich_tracebacks=True,
            show_level=True,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler = logging.StreamHandler(stream=sys.stderr)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addHandler(console_handler)

    # Build logs can get long, keep them on disk only when asked to
    log_dir = os.getenv("P2I_LOG_DIR")
    if log_dir:
        try:
            log_dir_path = Path(log_dir)
            log_dir_path.mkdir(parents=True, exist_ok=True)
            file_handler = TimedRotatingFileHandler(
                filename=log_dir_path / "p2i.log",
                when="midnight",
                backupCount=5,
                encoding="utf-8",
                utc=True,
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            file_handler.setLevel(log_level)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning("Failed to configure file logging to '%s'. Error: %s", log_dir, e)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.captureWarnings(True)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name, configuring logging on first use.
    """
    if not _logging_configured:
        _setup_logging()
    return logging.getLogger(name)


def set_log_level(level: Optional[str]) -> None:
    """
    Adjust the root and console handler level, e.g. from a CLI flag.

    Args:
        level: 'DEBUG', 'INFO', 'WARNING', 'ERROR' or 'CRITICAL'. Anything
            else falls back to INFO.
    """
    if not _logging_configured:
        _setup_logging()

    if not level or not level.strip():
        level = "INFO"
    level = level.strip().upper()

    log_level = getattr(logging, level, None)
    if not isinstance(log_level, int):
        get_logger(__name__).warning("Invalid log level '%s'. Defaulting to INFO.", level)
        log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers:
        if isinstance(handler, (RichHandler, logging.StreamHandler)) and not isinstance(
            handler, logging.FileHandler
        ):
            handler.setLevel(log_level)
