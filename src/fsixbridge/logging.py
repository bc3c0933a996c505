"""Loggers for the bridge and for the daemon it drives.

Everything logs under the ``fsixbridge`` logger. Bridge modules use a
child per area (``fsixbridge.rpc``, ``fsixbridge.session``, ...), and
``logging`` notifications sent by the daemon land on
``fsixbridge.daemon`` so they can be filtered apart from our own records.

Two levels sit beside the standard ones: VERBOSE for per-request detail
and TRACE for raw frames. ``-v`` on the command line counts up from
errors only (0) to TRACE (4).

Records go to ``logging.file`` (or ``$FSIX_LOG``) when set; otherwise to
stderr, but only on a terminal so editor hosts that parse stderr see
nothing.

LogSink is the other half: a target for user-facing messages (a cell's
output, the CLI console) that the session and coordinator write to
without knowing where they end up.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Protocol

from fsixbridge.types import LogLevel

if TYPE_CHECKING:
    from fsixbridge.config.schema import LoggingConfig
    from fsixbridge.types import LogNotification

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("fsixbridge")
daemon_log = logger.getChild("daemon")

LOG_FILE_ENV = "FSIX_LOG"

# Index is the -v count; anything past the end means TRACE.
_VERBOSITY_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, VERBOSE, TRACE)

_DAEMON_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
}

_configured = False


class _RecordFormatter(logging.Formatter):
    """``12:03:44 warning [fsixbridge.session]: message``"""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s [%(name)s]: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """The threshold for ``config``: ``verbose`` wins over ``level``; INFO otherwise."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        index = max(config.verbose, 0)
        return _VERBOSITY_LEVELS[min(index, len(_VERBOSITY_LEVELS) - 1)]
    if config.level:
        name = "WARNING" if config.level.upper() == "WARN" else config.level.upper()
        level = logging.getLevelName(name)
        if isinstance(level, int):
            return level
    return logging.INFO


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Attach a handler to the ``fsixbridge`` logger.

    Only the first call has any effect.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = resolve_level(config)
    logger.setLevel(level)

    path = (config.file if config else None) or os.environ.get(LOG_FILE_ENV)
    handler: logging.Handler | None = None
    if path:
        try:
            handler = logging.FileHandler(os.path.expanduser(path), mode="a", encoding="utf-8")
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[fsixbridge] Cannot write log file {path}: {e}", file=sys.stderr)
                handler = logging.StreamHandler(sys.stderr)
    elif sys.stderr.isatty():
        handler = logging.StreamHandler(sys.stderr)

    if handler is not None:
        handler.setLevel(level)
        handler.setFormatter(_RecordFormatter())
        logger.addHandler(handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """``fsixbridge.<name>``, or the package logger itself."""
    return logger.getChild(name) if name else logger


def forward_daemon_log(notification: LogNotification) -> None:
    """Record one daemon ``logging`` notification on ``fsixbridge.daemon``."""
    daemon_log.log(_DAEMON_LEVELS.get(notification.level, logging.INFO), "%s", notification.message)


class LogSink(Protocol):
    """Where user-facing messages for one operation go, e.g. one cell's output."""

    def info(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggerSink:
    """Sends sink messages to a logger at INFO and ERROR."""

    def __init__(self, target: logging.Logger) -> None:
        self._target = target

    def info(self, message: str) -> None:
        self._target.info("%s", message)

    def error(self, message: str) -> None:
        self._target.error("%s", message)


class ListSink:
    """Keeps ``(is_error, message)`` pairs, in order."""

    def __init__(self) -> None:
        self.messages: list[tuple[bool, str]] = []

    def info(self, message: str) -> None:
        self.messages.append((False, message))

    def error(self, message: str) -> None:
        self.messages.append((True, message))

    def text(self) -> str:
        return "\n".join(message for _, message in self.messages)
