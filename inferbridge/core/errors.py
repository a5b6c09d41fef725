"""
Error taxonomy and the process-wide last-error channel.

The core layer raises BoundaryError subclasses. The C-style layer in
inferbridge.capi converts them into sentinel return values and stores the
message in a single shared slot that callers read with get_last_error().

Only one message is kept (last write wins). Every engine and every thread
writes to the same slot, so a caller that wants the message for its own
failure has to read it right after the failing call returns.
"""

import logging
import threading
from enum import IntEnum

logger = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    """Error categories surfaced by the boundary."""

    OK = 0
    INVALID_PARAMETERS = 1
    NOT_READY = 2
    BACKEND_FAILURE = 3
    UNIMPLEMENTED = 4


class BoundaryError(Exception):
    """Base class for every error raised by the core layer."""

    code = ErrorCode.BACKEND_FAILURE


class InvalidParametersError(BoundaryError):
    """Null, stale, zero or malformed arguments."""

    code = ErrorCode.INVALID_PARAMETERS


class InvalidConfigError(InvalidParametersError):
    """EngineConfig failed validation."""


class EngineNotReadyError(BoundaryError):
    """Operation attempted on an uninitialized or torn-down engine."""

    code = ErrorCode.NOT_READY


class BackendError(BoundaryError):
    """The inference backend raised an internal fault."""

    code = ErrorCode.BACKEND_FAILURE


class UnimplementedError(BoundaryError):
    """Reserved operation with no current behavior."""

    code = ErrorCode.UNIMPLEMENTED


class ErrorChannel:
    """Single lock-protected message slot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._message = ""

    def set(self, message: str) -> None:
        with self._lock:
            self._message = message
        logger.error("inferbridge error: %s", message)

    def get(self) -> str:
        with self._lock:
            return self._message

    def clear(self) -> None:
        with self._lock:
            self._message = ""


_channel = ErrorChannel()


def set_last_error(message: str) -> None:
    """Store the most recent error message."""
    _channel.set(message)


def get_last_error() -> str:
    """Return the most recent error message ("" if none)."""
    return _channel.get()


def clear_last_error() -> None:
    """Reset the error slot to the empty string."""
    _channel.clear()


def wrap_backend_error(context: str, exc: Exception) -> BoundaryError:
    """Convert a backend-thrown exception into a BackendError.

    BoundaryErrors pass through unchanged so their category is kept.
    """
    if isinstance(exc, BoundaryError):
        return exc
    return BackendError(f"{context}: {exc}")
