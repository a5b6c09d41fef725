"""
Tests for the error taxonomy and the last-error channel.
"""

import threading

import pytest

from inferbridge.core.errors import (
    BackendError,
    BoundaryError,
    EngineNotReadyError,
    ErrorChannel,
    ErrorCode,
    InvalidConfigError,
    InvalidParametersError,
    UnimplementedError,
    clear_last_error,
    get_last_error,
    set_last_error,
    wrap_backend_error,
)


@pytest.mark.unit
def test_last_error_starts_empty():
    """Test that the slot reads as empty after a clear."""
    assert get_last_error() == ""


@pytest.mark.unit
def test_last_write_wins():
    """Test that only the most recent message is kept."""
    set_last_error("first")
    set_last_error("second")
    assert get_last_error() == "second"

    clear_last_error()
    assert get_last_error() == ""


@pytest.mark.unit
def test_concurrent_writes_never_tear():
    """Test that concurrent writers leave exactly one complete message."""
    channel = ErrorChannel()
    messages = [f"error from thread {i} " + "x" * 200 for i in range(16)]

    def writer(message):
        for _ in range(200):
            channel.set(message)
            assert channel.get() in messages

    threads = [threading.Thread(target=writer, args=(m,)) for m in messages]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert channel.get() in messages


@pytest.mark.unit
def test_error_codes():
    """Test that each error class carries its category."""
    assert InvalidParametersError("x").code == ErrorCode.INVALID_PARAMETERS
    assert InvalidConfigError("x").code == ErrorCode.INVALID_PARAMETERS
    assert EngineNotReadyError("x").code == ErrorCode.NOT_READY
    assert BackendError("x").code == ErrorCode.BACKEND_FAILURE
    assert UnimplementedError("x").code == ErrorCode.UNIMPLEMENTED
    assert issubclass(InvalidConfigError, InvalidParametersError)


@pytest.mark.unit
def test_wrap_backend_error():
    """Test that foreign exceptions become BackendErrors with context."""
    wrapped = wrap_backend_error("Generation failed", RuntimeError("boom"))
    assert isinstance(wrapped, BackendError)
    assert str(wrapped) == "Generation failed: boom"

    original = EngineNotReadyError("Engine not ready")
    assert wrap_backend_error("ignored", original) is original
    assert isinstance(original, BoundaryError)
