#!/usr/bin/env python3
"""
Centralized logging configuration for cassia-client.

Library modules only ask for a logger via get_logger(); handlers and levels
are installed by setup_logging(), which the CLI calls once at startup.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class LevelPrefixFormatter(logging.Formatter):
    """Formatter that marks warnings and errors with a short prefix."""

    LEVEL_PREFIXES = {
        logging.DEBUG: "",
        logging.INFO: "",
        logging.WARNING: "[!] ",
        logging.ERROR: "[x] ",
        logging.CRITICAL: "[!!] ",
    }

    def format(self, record: logging.LogRecord) -> str:
        prefix = self.LEVEL_PREFIXES.get(record.levelno, "")
        if prefix and not str(record.msg).startswith(prefix):
            record.msg = f"{prefix}{record.msg}"
        return super().format(record)


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
) -> None:
    """
    Configure logging for cassia-client.

    Args:
        verbose: Enable DEBUG level logging (default: INFO)
        console_output: Output to stderr (default: True)
        log_file: Optional file path for log output
        simple_format: Use simplified format without timestamps
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    root_logger.handlers.clear()

    fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(LevelPrefixFormatter(fmt, datefmt=DATE_FORMAT))
        root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    # aiohttp access/client chatter is only useful when debugging the transport
    if not verbose:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from .logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Stream opened: %s", url)
    """
    return logging.getLogger(name)
