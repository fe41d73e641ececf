# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

"""Logging for ecudiag.

All records of the ``ecudiag`` logger hierarchy pass through a single queue.
The handlers (console, optional zstd compressed JSON lines file) run in the
thread of a :class:`logging.handlers.QueueListener`, such that logging calls
never block the event loop. Two extra levels exist: ``TRACE`` for raw wire
dumps and ``NOTICE`` for results which should always be visible.
"""

from __future__ import annotations

import atexit
import datetime
import json
import logging
import os
import socket
import sys
from enum import Enum, IntEnum, unique
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Queue
from typing import Any, TextIO, cast

import zstandard

LOGGER_NAME = "ecudiag"


@unique
class ColorMode(Enum):
    """ColorMode is used as an argument to :func:`setup_logging`."""

    #: Colors are always turned on.
    ALWAYS = "always"
    #: Colors are turned off if the target
    #: stream (e.g. stderr) is not a tty.
    AUTO = "auto"
    #: No colors are used.
    NEVER = "never"


def resolve_color_mode(mode: ColorMode, stream: TextIO = sys.stderr) -> bool:
    if sys.platform == "win32":
        return False

    match mode:
        case ColorMode.ALWAYS:
            return True
        case ColorMode.AUTO:
            return os.getenv("NO_COLOR") is None and stream.isatty()
        case ColorMode.NEVER:
            return False


@unique
class Loglevel(IntEnum):
    CRITICAL = logging.CRITICAL
    ERROR = logging.ERROR
    WARNING = logging.WARNING
    NOTICE = 25
    INFO = logging.INFO
    DEBUG = logging.DEBUG
    TRACE = 5


logging.addLevelName(Loglevel.TRACE, "TRACE")
logging.addLevelName(Loglevel.NOTICE, "NOTICE")


@unique
class LogPriority(IntEnum):
    """Syslog style priorities (RFC3164) plus ``TRACE``; these are
    stored in the ``priority`` field of file log records.
    """

    EMERGENCY = 0
    ALERT = 1
    CRITICAL = 2
    ERROR = 3
    WARNING = 4
    NOTICE = 5
    INFO = 6
    DEBUG = 7
    TRACE = 8

    @classmethod
    def from_str(cls, string: str) -> LogPriority:
        """Accepts a number (``"0"`` to ``"8"``) or a level name such as ``debug``."""
        if string.isnumeric():
            return cls(int(string, 0))

        try:
            return cls[string.upper()]
        except KeyError:
            raise ValueError(f"{string} not a valid priority") from None

    @classmethod
    def from_level(cls, value: int) -> LogPriority:
        try:
            return _LEVEL_PRIORITIES[value]
        except KeyError:
            raise ValueError(f"invalid loglevel: {value}") from None

    def to_level(self) -> Loglevel:
        return _PRIORITY_LEVELS[self]


_PRIORITY_LEVELS = {
    LogPriority.EMERGENCY: Loglevel.CRITICAL,
    LogPriority.ALERT: Loglevel.CRITICAL,
    LogPriority.CRITICAL: Loglevel.CRITICAL,
    LogPriority.ERROR: Loglevel.ERROR,
    LogPriority.WARNING: Loglevel.WARNING,
    LogPriority.NOTICE: Loglevel.NOTICE,
    LogPriority.INFO: Loglevel.INFO,
    LogPriority.DEBUG: Loglevel.DEBUG,
    LogPriority.TRACE: Loglevel.TRACE,
}
_LEVEL_PRIORITIES = {
    level: prio for prio, level in _PRIORITY_LEVELS.items() if prio >= LogPriority.CRITICAL
}

_RESET = "\033[0m"
_STYLES = {
    Loglevel.TRACE: "\033[0;38;5;245m",
    Loglevel.DEBUG: "\033[0;38;5;245m",
    Loglevel.NOTICE: "\033[1m",
    Loglevel.WARNING: "\033[33m",
    Loglevel.ERROR: "\033[31m",
    Loglevel.CRITICAL: "\033[31m\033[1m",
}


class _ConsoleFormatter(logging.Formatter):
    """``Oct 17 10:42:01.123 ecudiag.uds [result]: VIN (0xf190): ...``"""

    def __init__(self, colored: bool = False) -> None:
        super().__init__()
        self.colored = colored

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created)
        return f"{dt:%b %d %H:%M:%S}.{int(record.msecs):03d}"

    def format(self, record: logging.LogRecord) -> str:
        head = f"{self.formatTime(record)} {record.name}"
        if tags := record.__dict__.get("tags"):
            head += f" [{', '.join(tags)}]"

        msg = record.getMessage()
        if self.colored and (style := _STYLES.get(record.levelno)) is not None:
            msg = f"{style}{msg}{_RESET}"

        out = f"{head}: {msg}\n"
        if record.exc_info:
            out += f"\n{self.formatException(record.exc_info)}\n"
        return out


class _JSONFormatter(logging.Formatter):
    """One JSON object per record, suitable for ``jq`` and friends."""

    def __init__(self) -> None:
        super().__init__()
        self.hostname = socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "host": self.hostname,
            "logger": record.name,
            "level": record.levelname,
            "priority": LogPriority.from_level(record.levelno),
            "msg": record.getMessage(),
            "tags": record.__dict__.get("tags"),
            "line": f"{record.pathname}:{record.lineno}",
        }
        if record.exc_info:
            entry["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class _ZstdFileHandler(logging.Handler):
    def __init__(self, path: Path, level: int | str = logging.NOTSET) -> None:
        super().__init__(level)
        self.file = zstandard.open(
            filename=path,
            mode="wb",
            cctx=zstandard.ZstdCompressor(write_checksum=True, write_content_size=True),
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.file.write(f"{self.format(record)}\n".encode())
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.file.flush()
        self.file.close()
        super().close()


class _LogPipeline:
    """A queue in front of a logger and the listener draining it."""

    def __init__(self, logger_name: str) -> None:
        self.queue: Queue[logging.LogRecord] = Queue()
        self.handlers: list[logging.Handler] = []
        self.listener: QueueListener | None = None

        logger = logging.getLogger(logger_name)
        # Level 0 (NOTSET) would defer to the root logger.
        logger.setLevel(1)
        logger.addHandler(QueueHandler(self.queue))

    def add_handler(self, handler: logging.Handler) -> None:
        # The listener copies its handler list on creation.
        self.stop()
        self.handlers.append(handler)
        self.listener = QueueListener(self.queue, *self.handlers, respect_handler_level=True)
        self.listener.start()

    def stop(self) -> None:
        if self.listener is not None:
            self.listener.stop()
            self.listener = None

    def close(self) -> None:
        self.stop()
        for handler in self.handlers:
            handler.close()
        self.handlers.clear()


_pipelines: dict[str, _LogPipeline] = {}


def _get_pipeline(logger_name: str) -> _LogPipeline:
    if logger_name not in _pipelines:
        _pipelines[logger_name] = _LogPipeline(logger_name)
    return _pipelines[logger_name]


def shutdown_logging() -> None:
    """Drains all queues and closes the handlers; log files are complete afterwards."""
    for name, pipeline in list(_pipelines.items()):
        pipeline.close()
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        del _pipelines[name]


atexit.register(shutdown_logging)


def setup_logging(
    level: Loglevel | None = None,
    color_mode: ColorMode = ColorMode.AUTO,
    logger_name: str = LOGGER_NAME,
) -> None:
    """(Re)initializes logging with a single console handler on stderr.

    :param level: The loglevel of the console. If None, ``ECUDIAG_LOGLEVEL``
                  is read (a level name or a priority number), falling back
                  to ``INFO``.
    :param color_mode: Whether the console output is colored.
    """
    if level is None:
        raw = os.getenv("ECUDIAG_LOGLEVEL")
        level = LogPriority.from_str(raw).to_level() if raw is not None else Loglevel.INFO

    logging.logMultiprocessing = False
    logging.logThreads = False
    logging.logProcesses = False

    if logger_name in _pipelines:
        _pipelines.pop(logger_name).close()
        logger = logging.getLogger(logger_name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)

    add_stderr_log_handler(logger_name, level, resolve_color_mode(color_mode))


def add_stderr_log_handler(logger_name: str, level: Loglevel, colored: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.terminator = ""
    handler.setFormatter(_ConsoleFormatter(colored))
    _get_pipeline(logger_name).add_handler(handler)


def add_zst_log_handler(
    logger_name: str, filepath: Path, file_log_level: Loglevel
) -> logging.Handler:
    """Additionally writes JSON lines into the zstd compressed ``filepath``."""
    handler = _ZstdFileHandler(filepath, level=file_log_level)
    handler.setFormatter(_JSONFormatter())
    _get_pipeline(logger_name).add_handler(handler)
    return handler


class Logger(logging.Logger):
    def trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        if self.isEnabledFor(Loglevel.TRACE):
            self._log(Loglevel.TRACE, msg, args, **kwargs)

    def notice(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        if self.isEnabledFor(Loglevel.NOTICE):
            self._log(Loglevel.NOTICE, msg, args, **kwargs)

    def result(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """A notice tagged with ``result``, e.g. a decoded DID value."""
        extra = kwargs.pop("extra", None) or {}
        kwargs["extra"] = extra | {"tags": [*extra.get("tags", []), "result"]}
        self.notice(msg, *args, **kwargs)


logging.setLoggerClass(Logger)


def get_logger(name: str) -> Logger:
    return cast(Logger, logging.getLogger(name))
