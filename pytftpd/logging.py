from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any, MutableMapping, Tuple

from .util.io import PathLike, ensure_parent_directory

DEFAULT_LOG_FILE = "logs/tftp_server.log"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Color(Enum):
    RESET = 0
    RED = 31
    GREEN = 32
    YELLOW = 33
    BRIGHT_BLACK = 90
    BOLD_RED = "1;31"

    def __str__(self) -> str:
        return f"\x1b[{self.value}m"


class ColoredFormatter(logging.Formatter):

    COLORS = {
        logging.DEBUG: Color.BRIGHT_BLACK,
        logging.WARNING: Color.YELLOW,
        logging.ERROR: Color.RED,
        logging.CRITICAL: Color.BOLD_RED,
    }

    def format(self, record):
        color = self.COLORS.get(record.levelno, "")

        log_format = (
            f"{Color.RESET}{Color.GREEN}[%(asctime)s]  "
            f"{Color.RESET}{color}%(levelname)-8s | %(threadName)s - %(message)s "
            f"{Color.RESET}{Color.BRIGHT_BLACK}(%(name)s:%(lineno)d)"
            f"{Color.RESET}"
        )

        formatter = logging.Formatter(log_format, datefmt=DATE_FORMAT)
        return formatter.format(record)


class PlainFormatter(logging.Formatter):
    """``[2024-01-01 12:00:00] [INFO] message``, one line per record."""

    def __init__(self) -> None:
        super().__init__("[%(asctime)s] [%(levelname)s] %(message)s", DATE_FORMAT)


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the peer of the transfer it belongs to."""

    def __init__(self, logger: logging.Logger, peer: Tuple[str, int]) -> None:
        super().__init__(logger, {"peer": peer})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        return "[%s:%d] %s" % (*self.extra["peer"], msg), kwargs


class UserLogger:
    def __init__(self, logger: logging.Logger = None) -> None:
        if logger is None:
            # root logger
            self.logger = logging.getLogger(None)
        else:
            self.logger = logger

    def _add(self, handler: logging.Handler, level: int) -> None:
        handler.setLevel(level)
        self.logger.addHandler(handler)
        if self.logger.level == logging.NOTSET:
            self.logger.setLevel(level)
        else:
            self.logger.setLevel(min(self.logger.level, level))

    def add_stderr(self, level=logging.INFO) -> UserLogger:
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(ColoredFormatter())
        self._add(handler, level)
        return self

    def add_file(
        self, filepath: PathLike = DEFAULT_LOG_FILE, level=logging.INFO
    ) -> UserLogger:
        """Append to ``filepath``. The handler lock keeps lines from concurrent
        sessions whole.
        """
        path = ensure_parent_directory(filepath)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        handler.setFormatter(PlainFormatter())
        self._add(handler, level)
        return self
