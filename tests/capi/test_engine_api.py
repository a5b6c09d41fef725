"""
Tests for the handle-based engine API.
"""

import threading

import pytest

from inferbridge.capi import engine_api as api
from inferbridge.capi import handles
from inferbridge.core.config import EngineConfig
from inferbridge.core.request import ModelInfo, RequestParams, ResponseData


@pytest.fixture
def engine(fake_config):
    handle = api.create_engine(fake_config)
    assert handle is not None
    yield handle
    api.destroy_engine(handle)


@pytest.mark.unit
def test_create_and_destroy(fake_config):
    """Test the engine handle lifecycle."""
    handle = api.create_engine(fake_config)

    assert api.is_ready(handle)
    api.destroy_engine(handle)
    assert not api.is_ready(handle)
    assert not handles.is_live(handle, "engine")

    # Repeated and null destroys are no-ops
    api.destroy_engine(handle)
    api.destroy_engine(None)
    assert api.get_last_error() == ""


@pytest.mark.unit
def test_create_engine_failures(tmp_path):
    """Test that creation failures return None and set the last error."""
    assert api.create_engine(None) is None
    assert "Invalid configuration" in api.get_last_error()

    assert api.create_engine(EngineConfig(model_path=str(tmp_path))) is None
    assert "Model directory does not contain recognizable model files" in api.get_last_error()

    assert api.create_engine({"model_path": "/m", "tp": "2", "backend": "fake"}) is None
    assert api.get_last_error() == "Invalid configuration: tp must be an integer, got '2'"


@pytest.mark.unit
def test_is_ready_never_raises():
    """Test readiness queries on bogus handles."""
    assert not api.is_ready(None)
    assert not api.is_ready(0)
    assert not api.is_ready(123456789)


@pytest.mark.unit
def test_generate(engine):
    """Test a successful generation."""
    response = ResponseData()
    assert api.generate(engine, RequestParams(prompt="hello"), response) == 0
    assert response.request_id == 1
    assert response.finished
    assert response.text.startswith("Hello!")

    api.free_response(response)
    assert not response.is_populated()
    api.free_response(response)


@pytest.mark.unit
def test_generate_invalid_arguments(engine):
    """Test null arguments, stale handles and empty prompts."""
    response = ResponseData()

    assert api.generate(None, RequestParams(prompt="hello"), response) == -1
    assert api.get_last_error() == "Invalid parameters"
    assert api.generate(engine, None, response) == -1
    assert api.get_last_error() == "Invalid parameters"
    assert api.generate(engine, RequestParams(prompt="hello"), None) == -1
    assert api.get_last_error() == "Invalid parameters"
    assert api.generate(engine, RequestParams(prompt=""), response) == -1
    assert api.get_last_error() == "Empty prompt"

    stale = api.create_engine(EngineConfig(model_path="/models/stale", backend="fake"))
    api.destroy_engine(stale)
    assert api.generate(stale, RequestParams(prompt="hello"), response) == -1
    assert "not live" in api.get_last_error()

    assert not response.is_populated()


@pytest.mark.unit
def test_generate_batch(engine):
    """Test batch success, fail-fast and invalid batches."""
    requests = [RequestParams(prompt="hello"), RequestParams(prompt=""), RequestParams(prompt="explain")]
    responses = [ResponseData() for _ in requests]

    assert api.generate_batch(engine, requests, responses) == -1
    assert api.get_last_error() == "Empty prompt"
    assert responses[0].is_populated()
    assert not responses[1].is_populated()
    assert not responses[2].is_populated()

    assert api.generate_batch(engine, [], []) == -1
    assert api.get_last_error() == "Invalid parameters for batch generation"
    assert api.generate_batch(engine, requests, responses[:1]) == -1
    assert api.get_last_error() == "Invalid parameters for batch generation"

    ok = [ResponseData(), ResponseData()]
    assert api.generate_batch(engine, [RequestParams(prompt="hello"), RequestParams(prompt="code")], ok) == 0
    assert all(r.finished for r in ok)


@pytest.mark.unit
def test_async_unimplemented(engine):
    """Test the reserved async operations."""
    assert api.generate_async(engine, RequestParams(prompt="hello")) == -1
    assert api.get_last_error() == "Async generation not implemented yet"
    assert api.get_response(engine, 1, ResponseData()) == -1
    assert api.get_last_error() == "Async response retrieval not implemented yet"


@pytest.mark.unit
def test_model_info(engine):
    """Test model info fill and free."""
    info = ModelInfo()
    assert api.get_model_info(engine, info) == 0
    assert info.model_name == "fake-model"
    assert info.model_type == "llm"

    api.free_model_info(info)
    assert info.model_name is None
    api.free_model_info(info)

    assert api.get_model_info(engine, None) == -1
    assert api.get_model_info(None, ModelInfo()) == -1


@pytest.mark.unit
def test_version():
    """Test static version info."""
    version = api.get_version()
    assert version.version == "0.1.0"


@pytest.mark.unit
def test_engines_share_one_error_slot(fake_model_dir):
    """Test that the last error is process-wide, not per engine."""
    first = api.create_engine(EngineConfig(model_path=fake_model_dir, backend="fake"))
    second = api.create_engine(EngineConfig(model_path=fake_model_dir, backend="fake"))

    api.generate(first, RequestParams(prompt=""), ResponseData())
    api.generate_async(second, RequestParams(prompt="hello"))
    assert api.get_last_error() == "Async generation not implemented yet"

    api.destroy_engine(first)
    api.destroy_engine(second)


@pytest.mark.unit
def test_concurrent_generate_and_destroy(fake_config):
    """Test that racing generations either complete or fail cleanly."""
    handle = api.create_engine(fake_config)
    results = []
    lock = threading.Lock()
    start = threading.Event()

    def run():
        start.wait()
        for _ in range(20):
            response = ResponseData()
            rc = api.generate(handle, RequestParams(prompt="hello"), response)
            with lock:
                results.append((rc, response))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    start.set()
    api.destroy_engine(handle)
    for t in threads:
        t.join()

    assert len(results) == 80
    for rc, response in results:
        if rc == 0:
            assert response.finished
        else:
            assert rc == -1
            assert not response.is_populated()
