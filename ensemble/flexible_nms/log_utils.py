"""
Logging setup for the flexible NMS tools.

Diagnostics go to stderr so stdout stays free for CSV output.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import colorlog

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    color_output: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to an additional plain-text log file
        color_output: Whether to colorize console output
        format_string: Custom format string

    Returns:
        The configured root logger
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    logger = logging.getLogger()
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    if format_string is None:
        format_string = DEFAULT_FORMAT

    if color_output:
        console_handler = colorlog.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            colorlog.ColoredFormatter("%(log_color)s" + format_string, log_colors=LOG_COLORS)
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(format_string))
    console_handler.setLevel(numeric_level)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(format_string))
        file_handler.setLevel(numeric_level)
        logger.addHandler(file_handler)

    return logger
