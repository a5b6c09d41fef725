"""
Tests for Engine lifecycle and the generation request/response protocol.
"""

import threading
import time

import pytest

from inferbridge.backend.fake import FakeBackend
from inferbridge.core.config import EngineConfig
from inferbridge.core.engine import Engine, EngineState, get_version
from inferbridge.core.errors import (
    BackendError,
    EngineNotReadyError,
    InvalidParametersError,
    UnimplementedError,
)
from inferbridge.core.request import ModelInfo, RequestParams, ResponseData

HELLO_RESPONSE = "Hello! I'm an AI assistant powered by inferbridge. How can I help you today?"


def make_engine(config, **backend_kwargs):
    backend = FakeBackend(config.model_path, engine_config=config, **backend_kwargs)
    return Engine(config, backend=backend), backend


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.mark.unit
def test_engine_initialization(fake_config):
    """Test that an engine is ready after construction."""
    engine = Engine(fake_config)

    assert engine.is_ready()
    assert engine.state == EngineState.READY
    assert engine.backend.name == "fake"
    assert engine.backend.stages == ["create_shared_weights", "process_weights", "create_engine"]

    engine.destroy()


@pytest.mark.unit
def test_engine_accepts_dict_config(fake_model_dir):
    """Test that a mapping of config fields is accepted."""
    engine = Engine({"model_path": fake_model_dir, "backend": "fake"})
    assert engine.config.model_path == fake_model_dir
    engine.destroy()


@pytest.mark.unit
def test_engine_destroy_is_idempotent(fake_config):
    """Test that destroy clears readiness and can be repeated."""
    engine, backend = make_engine(fake_config)
    engine.destroy()

    assert not engine.is_ready()
    assert engine.state == EngineState.DESTROYED
    assert backend.shutdown_called

    engine.destroy()
    assert engine.state == EngineState.DESTROYED


@pytest.mark.unit
def test_engine_context_manager(fake_config):
    """Test that leaving the with-block destroys the engine."""
    with Engine(fake_config) as engine:
        assert engine.is_ready()
    assert not engine.is_ready()


@pytest.mark.unit
def test_engine_load_failure(fake_config):
    """Test that a failed load never leaves a ready engine behind."""
    backend = FakeBackend(fake_config.model_path, engine_config=fake_config, fail_on_load="corrupt weights")

    with pytest.raises(BackendError, match="corrupt weights"):
        Engine(fake_config, backend=backend)
    assert backend.shutdown_called


@pytest.mark.unit
def test_engine_unknown_backend(fake_model_dir):
    """Test that an unregistered backend name is rejected."""
    with pytest.raises(InvalidParametersError, match="Unknown backend"):
        Engine(EngineConfig(model_path=fake_model_dir, backend="missing"))


@pytest.mark.unit
def test_engine_malformed_model_directory(tmp_path):
    """Test that the transformers backend rejects directories without model files."""
    with pytest.raises(BackendError, match="does not exist"):
        Engine(EngineConfig(model_path=str(tmp_path / "nowhere")))

    with pytest.raises(BackendError, match="recognizable model files"):
        Engine(EngineConfig(model_path=str(tmp_path)))


@pytest.mark.unit
def test_engine_unsupported_quantization(tmp_path):
    """Test that quantized configs fail to load on the transformers backend."""
    (tmp_path / "config.json").write_text("{}")
    with pytest.raises(BackendError, match="Quantization policy INT4"):
        Engine(EngineConfig(model_path=str(tmp_path), quant_policy=4))


@pytest.mark.unit
def test_generate_hello(fake_config):
    """Test a basic generation."""
    with Engine(fake_config) as engine:
        response = engine.generate(RequestParams(prompt="hello there"))

    assert response.request_id == 1
    assert response.text == HELLO_RESPONSE
    assert response.finished
    assert response.input_tokens == len("hello there") // 4
    assert response.output_tokens == len(HELLO_RESPONSE) // 4
    assert response.error_code == 0
    assert response.error_message is None


@pytest.mark.unit
def test_generate_request_ids(fake_config):
    """Test auto-assigned ids increase and caller ids are honoured."""
    with Engine(fake_config) as engine:
        first = engine.generate(RequestParams(prompt="hello"))
        second = engine.generate(RequestParams(prompt="hello"))
        explicit = engine.generate(RequestParams(prompt="hello", request_id=42))
        third = engine.generate(RequestParams(prompt="hello"))

    assert first.request_id == 1
    assert second.request_id == 2
    assert explicit.request_id == 42
    assert third.request_id == 3


@pytest.mark.unit
def test_generate_invalid_arguments(fake_config):
    """Test null arguments and empty prompts."""
    with Engine(fake_config) as engine:
        with pytest.raises(InvalidParametersError, match="^Invalid parameters$"):
            engine.generate(None)
        with pytest.raises(InvalidParametersError, match="^Invalid parameters$"):
            engine.generate_into(RequestParams(prompt="hello"), None)
        with pytest.raises(InvalidParametersError, match="Empty prompt"):
            engine.generate(RequestParams(prompt=""))
        with pytest.raises(InvalidParametersError, match="stop_words"):
            engine.generate(RequestParams(prompt="hello", stop_words="[oops"))


@pytest.mark.unit
def test_generate_after_destroy(fake_config):
    """Test that a destroyed engine reports not-ready, not invalid parameters."""
    engine = Engine(fake_config)
    engine.destroy()

    with pytest.raises(EngineNotReadyError, match="Engine not ready"):
        engine.generate(RequestParams(prompt="hello"))


@pytest.mark.unit
def test_generate_truncates_to_token_budget(fake_config):
    """Test that the fake backend truncates at four characters per token."""
    with Engine(fake_config) as engine:
        response = engine.generate(RequestParams(prompt="hello", max_new_tokens=2))

    assert response.text == HELLO_RESPONSE[:8] + "..."


@pytest.mark.unit
def test_generate_stop_words(fake_config):
    """Test that stop words cut the generated text."""
    with Engine(fake_config) as engine:
        response = engine.generate(RequestParams(prompt="hello", stop_words='["AI"]'))

    assert response.text == "Hello! I'm an "


@pytest.mark.unit
def test_generate_backend_failure(fake_config):
    """Test that a backend fault leaves the response untouched."""
    engine, _ = make_engine(fake_config, fail_prompts=["explode"])
    response = ResponseData()

    with pytest.raises(BackendError, match="Generation failed: injected failure"):
        engine.generate_into(RequestParams(prompt="please explode"), response)

    assert not response.is_populated()
    stats = engine.get_stats()
    assert stats["failed_requests"] == 1
    assert stats["active_requests"] == 0
    engine.destroy()


@pytest.mark.unit
def test_duplicate_in_flight_request_id(fake_config):
    """Test that a caller id already in flight is rejected."""
    gate = threading.Event()
    engine, backend = make_engine(fake_config, gate=gate)
    results = {}

    def run():
        results["first"] = engine.generate(RequestParams(prompt="hello", request_id=5))

    worker = threading.Thread(target=run)
    worker.start()
    assert backend.entered.wait(5)

    with pytest.raises(InvalidParametersError, match="Request id 5 is already in flight"):
        engine.generate(RequestParams(prompt="hello", request_id=5))
    assert engine.active_request_ids() == [5]

    gate.set()
    worker.join(5)
    assert results["first"].request_id == 5
    assert engine.active_request_ids() == []
    engine.destroy()


@pytest.mark.unit
def test_auto_id_skips_caller_id_in_flight(fake_config):
    """Test that an auto-assigned id never collides with a caller id in flight."""
    gate = threading.Event()
    engine, backend = make_engine(fake_config, gate=gate)
    results = {}

    def run(name, params):
        results[name] = engine.generate(params)

    caller = threading.Thread(target=run, args=("caller", RequestParams(prompt="hi", request_id=1)))
    caller.start()
    assert backend.entered.wait(5)

    auto = threading.Thread(target=run, args=("auto", RequestParams(prompt="hello")))
    auto.start()
    assert wait_until(lambda: len(engine.active_request_ids()) == 2)
    assert engine.active_request_ids() == [1, 2]
    assert engine.get_stats()["active_requests"] == 2

    # Teardown must wait for both requests
    destroyer = threading.Thread(target=engine.destroy)
    destroyer.start()
    assert wait_until(lambda: not engine.is_ready())
    assert not backend.shutdown_called

    gate.set()
    caller.join(5)
    auto.join(5)
    destroyer.join(5)

    assert results["caller"].request_id == 1
    assert results["auto"].request_id == 2
    assert results["auto"].text == HELLO_RESPONSE
    assert backend.shutdown_called
    assert engine.get_stats()["completed_requests"] == 2


@pytest.mark.unit
def test_destroy_waits_for_in_flight_requests(fake_config):
    """Test that teardown drains in-flight work before shutting the backend down."""
    gate = threading.Event()
    engine, backend = make_engine(fake_config, gate=gate)
    results = {}

    def run():
        results["response"] = engine.generate(RequestParams(prompt="hello"))

    worker = threading.Thread(target=run)
    worker.start()
    assert backend.entered.wait(5)

    destroyer = threading.Thread(target=engine.destroy)
    destroyer.start()
    assert wait_until(lambda: not engine.is_ready())

    # Readiness is gone but the backend is still serving the in-flight request
    with pytest.raises(EngineNotReadyError):
        engine.generate(RequestParams(prompt="hello"))
    assert destroyer.is_alive()
    assert not backend.shutdown_called

    gate.set()
    worker.join(5)
    destroyer.join(5)

    assert results["response"].text == HELLO_RESPONSE
    assert backend.shutdown_called
    assert engine.state == EngineState.DESTROYED


@pytest.mark.unit
def test_concurrent_generation_ids_are_unique(fake_config):
    """Test that concurrent callers get distinct auto-assigned ids."""
    ids = []
    lock = threading.Lock()

    with Engine(fake_config) as engine:

        def run():
            for _ in range(10):
                response = engine.generate(RequestParams(prompt="hello"))
                with lock:
                    ids.append(response.request_id)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert engine.get_stats()["completed_requests"] == 80

    assert len(set(ids)) == 80
    assert sorted(ids) == list(range(1, 81))


@pytest.mark.unit
def test_generate_batch_fail_fast(fake_config):
    """Test that the first failing request aborts the rest of the batch."""
    engine, backend = make_engine(fake_config, fail_prompts=["explode"])
    requests = [
        RequestParams(prompt="hello"),
        RequestParams(prompt="explode"),
        RequestParams(prompt="what is this"),
    ]
    responses = [ResponseData() for _ in requests]

    with pytest.raises(BackendError):
        engine.generate_batch(requests, responses)

    assert responses[0].text == HELLO_RESPONSE
    assert not responses[1].is_populated()
    assert not responses[2].is_populated()
    assert backend.generate_calls == 2
    engine.destroy()


@pytest.mark.unit
def test_generate_batch_matches_individual_results(fake_config):
    """Test that a successful batch equals one generate per request."""
    prompts = ["hello", "explain rope", "write code"]
    with Engine(fake_config) as engine:
        batch = engine.generate_batch([RequestParams(prompt=p, request_id=i + 10) for i, p in enumerate(prompts)])
        single = [engine.generate(RequestParams(prompt=p, request_id=i + 10)) for i, p in enumerate(prompts)]

    assert batch == single


@pytest.mark.unit
def test_generate_batch_invalid(fake_config):
    """Test empty batches and length mismatches."""
    with Engine(fake_config) as engine:
        with pytest.raises(InvalidParametersError, match="Invalid parameters for batch generation"):
            engine.generate_batch([], [])
        with pytest.raises(InvalidParametersError, match="Invalid parameters for batch generation"):
            engine.generate_batch([RequestParams(prompt="hello")], [])


@pytest.mark.unit
def test_async_operations_unimplemented(fake_config):
    """Test that the reserved async operations always fail."""
    with Engine(fake_config) as engine:
        with pytest.raises(UnimplementedError, match="Async generation not implemented yet"):
            engine.generate_async(RequestParams(prompt="hello"))
        with pytest.raises(UnimplementedError, match="Async response retrieval not implemented yet"):
            engine.get_response(1, ResponseData())


@pytest.mark.unit
def test_get_model_info(fake_config):
    """Test model metadata reported by an engine."""
    info = ModelInfo()
    with Engine(fake_config) as engine:
        engine.get_model_info(info)

    assert info.model_name == "fake-model"
    assert info.model_type == "llm"
    assert info.vocab_size == 32000
    assert info.hidden_size == 4096
    assert info.num_layers == 32
    assert info.max_position_embeddings == 2048


@pytest.mark.unit
def test_get_version(monkeypatch):
    """Test build information from the environment."""
    monkeypatch.setenv("INFERBRIDGE_GIT_COMMIT", "abc123")
    monkeypatch.delenv("INFERBRIDGE_BUILD_TIME", raising=False)
    version = get_version()

    assert version.version == "0.1.0"
    assert version.git_commit == "abc123"
    assert version.build_time == "unknown"
    assert version.cuda_version
