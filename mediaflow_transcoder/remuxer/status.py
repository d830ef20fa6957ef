"""
Status reporting plane.

Every public operation of the decoder, encoder and pipeline returns a
``Status`` sentinel (or a stream index) and pushes its diagnostics through
a ``StatusReporter``. The reporter filters events by a severity mask and
hands the formatted message to a user callback, so programmatic callers
can stay silent while the CLI surfaces everything through ``logging``.

Runtime failures raised by PyAV are captured on the reporter
(``capture``), and the FFmpeg error string is appended to the next error
report in parentheses.
"""

import errno
import logging
import os
from collections.abc import Callable
from enum import Enum, IntEnum, IntFlag

import av

logger = logging.getLogger(__name__)

# FFERRTAG('E', 'O', 'F', ' ')
AVERROR_EOF = -0x20464F45
AVERROR_EAGAIN = -errno.EAGAIN


class Status(IntEnum):
    """Generic return sentinel of every public pipeline operation."""

    ERROR = -1
    NONE = 0
    OK = 1


class StatusKind(IntFlag):
    """Severity bits; a reporter only delivers kinds present in its mask."""

    NONE = 0
    INFO = 1
    ERROR = 2
    DEBUG = 4
    ALL = INFO | ERROR | DEBUG

    @classmethod
    def parse(cls, value: str) -> "StatusKind":
        """Parse ``"all"``, ``"none"`` or a comma separated list like ``"info,error"``."""
        kinds = cls.NONE
        for name in value.split(","):
            name = name.strip().upper()
            if not name:
                continue
            try:
                kinds |= cls[name]
            except KeyError:
                raise ValueError(f"Unknown status kind: {name.lower()}") from None
        return kinds


class ErrorKind(Enum):
    INVALID_ARGUMENT = "invalid_argument"
    RUNTIME_FAILURE = "runtime_failure"
    STREAM_NOT_FOUND = "stream_not_found"
    LIFECYCLE_VIOLATION = "lifecycle_violation"
    END_OF_STREAM = "end_of_stream"


StatusCallback = Callable[[StatusKind, str], None]

_AV_MESSAGES = {
    AVERROR_EOF: "End of file",
    AVERROR_EAGAIN: "Resource temporarily unavailable",
}


def av_strerror(code: int) -> str:
    """Human readable string for a negative FFmpeg status code."""
    if code in _AV_MESSAGES:
        return _AV_MESSAGES[code]
    if -4096 < code < 0:
        return os.strerror(-code)
    return f"Error number {code} occurred"


class StatusReporter:
    """
    Severity filtered event sink with runtime error interpolation.

    Args:
        callback: Receives ``(kind, message)`` for every delivered event.
        kinds: Mask of severities to deliver.
    """

    def __init__(self, callback: StatusCallback | None = None, kinds: StatusKind = StatusKind.NONE) -> None:
        self.callback = callback
        self.kinds = kinds
        self.av_status = 0  # last runtime code, negative on failure
        self.av_message: str | None = None
        self.last_error: ErrorKind | None = None

    def clone(self) -> "StatusReporter":
        """Copy the callback and mask; the runtime status starts clean."""
        return StatusReporter(self.callback, self.kinds)

    def reset(self) -> None:
        self.av_status = 0
        self.av_message = None

    def capture(self, exc: av.error.FFmpegError) -> int:
        """Remember the code and message of a PyAV runtime failure."""
        code = exc.errno or 1
        self.av_status = -abs(code)
        self.av_message = exc.strerror
        return self.av_status

    def report(self, kind: StatusKind, fmt: str, *args) -> Status:
        if self.callback is None or not self.kinds & kind:
            return Status.NONE

        message = fmt % args if args else fmt
        if kind is StatusKind.ERROR and self.av_status < 0:
            message = f"{message} ({self.av_message or av_strerror(self.av_status)})"

        self.callback(kind, message)
        return Status.OK

    def info(self, fmt: str, *args) -> Status:
        return self.report(StatusKind.INFO, fmt, *args)

    def debug(self, fmt: str, *args) -> Status:
        return self.report(StatusKind.DEBUG, fmt, *args)

    def error(self, fmt: str, *args, kind: ErrorKind = ErrorKind.INVALID_ARGUMENT) -> Status:
        """Report an error and return ``Status.ERROR`` so call sites can return it directly."""
        if kind is not ErrorKind.RUNTIME_FAILURE:
            self.reset()
        self.last_error = kind
        self.report(StatusKind.ERROR, fmt, *args)
        return Status.ERROR

    def runtime_error(self, exc: av.error.FFmpegError, fmt: str, *args) -> Status:
        self.capture(exc)
        return self.error(fmt, *args, kind=ErrorKind.RUNTIME_FAILURE)


def logging_status_callback(target: logging.Logger | None = None) -> StatusCallback:
    """Build a status callback that forwards events to a ``logging.Logger``."""
    target = target or logger

    def _callback(kind: StatusKind, message: str) -> None:
        if kind & StatusKind.ERROR:
            target.error(message)
        elif kind & StatusKind.DEBUG:
            target.debug(message)
        else:
            target.info(message)

    return _callback
