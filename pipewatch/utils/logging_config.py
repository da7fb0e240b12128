"""
Logging Setup
=============
Console + daily file logging for the monitor service.

Console output is coloured per level when stderr is a terminal. Under a
process manager or in CI the colour codes would end up in captured logs,
so plain lines are written instead. The file handler is always plain.
"""
import logging
import os
import sys
from datetime import datetime
from typing import Optional, TextIO, Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[31;1m",
}
RESET = "\x1b[0m"

# Loggers that must follow the root level; uvicorn installs its own otherwise
SERVICE_LOGGERS = ("pipewatch", "main", "uvicorn", "uvicorn.error", "uvicorn.access")


class ColoredFormatter(logging.Formatter):
    """Wraps each formatted line in the colour for its level."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{line}{RESET}" if color else line


def _console_formatter(stream: TextIO) -> logging.Formatter:
    isatty = getattr(stream, "isatty", None)
    if isatty is not None and isatty():
        return ColoredFormatter()
    return logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)


def log_file_path(log_dir: str, today: Optional[datetime] = None) -> str:
    today = today or datetime.now()
    return os.path.join(log_dir, f"pipewatch_{today.strftime('%Y%m%d')}.log")


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[str] = "logs",
    stream: Optional[TextIO] = None,
) -> None:
    """
    Replace the root handlers with a console handler and, unless log_dir
    is None, a file handler at log_dir/pipewatch_YYYYMMDD.log.

    level accepts a logging constant or a name such as "DEBUG".
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    stream = stream or sys.stderr
    root_logger = logging.getLogger()

    # Drop handlers left over from a previous call or from uvicorn
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(_console_formatter(stream))
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path(log_dir))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in SERVICE_LOGGERS:
        service_logger = logging.getLogger(name)
        service_logger.setLevel(level)
        service_logger.propagate = True

    # httpx logs every request at INFO; one line per poll is too chatty
    logging.getLogger("httpx").setLevel(logging.WARNING)

    root_logger.info("Logging initialized (level=%s, dir=%s)", logging.getLevelName(level), log_dir)
