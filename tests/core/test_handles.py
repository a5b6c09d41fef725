"""
Tests for HandleRegistry.
"""

import pytest

from inferbridge.core.errors import InvalidParametersError
from inferbridge.core.handles import HandleRegistry


@pytest.mark.unit
def test_register_and_get():
    """Test that a registered object is returned for its handle and kind."""
    registry = HandleRegistry()
    obj = object()
    handle = registry.register("tensor", obj)

    assert handle > 0
    assert registry.get(handle, "tensor") is obj
    assert registry.is_live(handle, "tensor")
    assert len(registry) == 1


@pytest.mark.unit
def test_handles_are_never_reused():
    """Test that a released handle is not issued again."""
    registry = HandleRegistry()
    first = registry.register("tensor", object())
    registry.release(first, "tensor")
    second = registry.register("tensor", object())

    assert second != first
    with pytest.raises(InvalidParametersError, match="not live"):
        registry.get(first, "tensor")


@pytest.mark.unit
def test_null_handle_is_invalid():
    """Test that null handles are rejected."""
    registry = HandleRegistry()
    with pytest.raises(InvalidParametersError, match="null"):
        registry.get(None, "engine")
    with pytest.raises(InvalidParametersError):
        registry.get(0, "engine")


@pytest.mark.unit
def test_wrong_kind_is_invalid():
    """Test that a handle cannot be used as another kind."""
    registry = HandleRegistry()
    handle = registry.register("tensor", object())

    with pytest.raises(InvalidParametersError, match="not a tensor_map"):
        registry.get(handle, "tensor_map")
    assert registry.release(handle, "tensor_map") is None
    assert registry.is_live(handle, "tensor")


@pytest.mark.unit
def test_release_is_idempotent():
    """Test that releasing twice (or releasing null) is a no-op."""
    registry = HandleRegistry()
    obj = object()
    handle = registry.register("model", obj)

    assert registry.release(handle, "model") is obj
    assert registry.release(handle, "model") is None
    assert registry.release(None, "model") is None
    assert registry.count("model") == 0


@pytest.mark.unit
def test_count_by_kind():
    """Test per-kind counting."""
    registry = HandleRegistry()
    registry.register("tensor", object())
    registry.register("tensor", object())
    registry.register("engine", object())

    assert registry.count("tensor") == 2
    assert registry.count("engine") == 1
    assert registry.count() == 3
