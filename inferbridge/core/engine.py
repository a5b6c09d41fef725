"""
High-level inference engine for text generation.

An Engine owns one backend, an immutable EngineConfig, a readiness flag and
the table of requests currently being generated. Generation calls may run
from any number of threads; destroy() refuses new work, waits for the
in-flight requests to finish and only then shuts the backend down.
"""

import itertools
import logging
import os
import threading
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import torch

from inferbridge import __version__
from inferbridge.backend.base import InferenceBackend
from inferbridge.backend.registry import create_backend
from inferbridge.core.config import EngineConfig
from inferbridge.core.errors import (
    BackendError,
    BoundaryError,
    EngineNotReadyError,
    InvalidConfigError,
    InvalidParametersError,
    UnimplementedError,
)
from inferbridge.core.request import (
    ActiveRequest,
    ModelInfo,
    RequestParams,
    RequestState,
    ResponseData,
    VersionInfo,
    parse_stop_words,
)

logger = logging.getLogger(__name__)

MODEL_TYPE = "llm"


class EngineState(Enum):
    """Lifecycle of an Engine."""

    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    DESTROYED = "destroyed"


def get_version() -> VersionInfo:
    """Library version and build information."""
    return VersionInfo(
        version=__version__,
        git_commit=os.environ.get("INFERBRIDGE_GIT_COMMIT", "unknown"),
        build_time=os.environ.get("INFERBRIDGE_BUILD_TIME", "unknown"),
        cuda_version=torch.version.cuda or "unknown",
    )


def _device_index(device: str) -> int:
    index = torch.device(device).index
    return index if index is not None else 0


class Engine:
    """Inference engine bound to one model directory."""

    def __init__(
        self,
        config: Union[EngineConfig, Mapping[str, Any]],
        backend: Optional[InferenceBackend] = None,
    ):
        """Initialize the engine and load the model.

        Args:
            config: EngineConfig or a mapping of its fields
            backend: Pre-built backend to use instead of looking one up by
                config.backend (it is loaded here all the same)

        Raises:
            InvalidConfigError: If the configuration is invalid
            BackendError: If the backend fails to load the model
        """
        if config is None:
            raise InvalidConfigError("Invalid configuration: config is required")
        if not isinstance(config, EngineConfig):
            config = EngineConfig.from_dict(config)
        self.config = config

        self._state = EngineState.CREATED
        self._ready = threading.Event()
        self._cond = threading.Condition()
        self._active: Dict[int, ActiveRequest] = {}
        self._request_ids = itertools.count(1)

        # Metrics
        self._total_requests = 0
        self._completed_requests = 0
        self._failed_requests = 0

        self._state = EngineState.INITIALIZING
        weight_type = "fp32" if torch.device(config.device).type == "cpu" else "half"
        try:
            if backend is None:
                backend = create_backend(config.backend, config.model_path, "", weight_type, config)
            self._backend = backend
            backend.load()
            device_id = _device_index(config.device)
            backend.create_shared_weights(device_id, 0)
            backend.process_weights(device_id, 0)
            backend.create_engine(device_id, 0)
        except Exception as e:
            self._state = EngineState.DESTROYED
            if backend is not None:
                backend.shutdown()
            logger.error("Failed to initialize engine for %s: %s", config.model_path, e)
            if isinstance(e, BoundaryError):
                raise
            raise BackendError(f"Failed to initialize engine: {e}") from e

        self._state = EngineState.READY
        self._ready.set()
        logger.info(
            "Engine ready: model=%s backend=%s device=%s",
            config.model_path,
            backend.name,
            config.device,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def backend(self) -> InferenceBackend:
        return self._backend

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def destroy(self) -> None:
        """Stop accepting requests, wait for in-flight ones, release the backend.

        Safe to call more than once.
        """
        self._ready.clear()
        with self._cond:
            if self._state in (EngineState.SHUTTING_DOWN, EngineState.DESTROYED):
                return
            self._state = EngineState.SHUTTING_DOWN
            if self._active:
                logger.info("Waiting for %d in-flight requests", len(self._active))
            self._cond.wait_for(lambda: not self._active)

        self._backend.shutdown()
        self._state = EngineState.DESTROYED
        logger.info("Engine for %s destroyed", self.config.model_path)

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.destroy()

    def _register(self, params: RequestParams) -> ActiveRequest:
        gen_config = params.generation_config()
        with self._cond:
            # Readiness may have been cleared since the caller's check
            if not self._ready.is_set():
                raise EngineNotReadyError("Engine not ready")
            if params.request_id and params.request_id > 0:
                request_id = params.request_id
                if request_id in self._active:
                    raise InvalidParametersError(f"Request id {request_id} is already in flight")
            else:
                # Skip ids a caller has claimed for a request still in flight
                request_id = next(self._request_ids)
                while request_id in self._active:
                    request_id = next(self._request_ids)
            entry = ActiveRequest(request_id=request_id, params=params, gen_config=gen_config)
            self._active[request_id] = entry
            self._total_requests += 1
            return entry

    def _unregister(self, entry: ActiveRequest) -> None:
        with self._cond:
            self._active.pop(entry.request_id, None)
            if entry.state == RequestState.COMPLETED:
                self._completed_requests += 1
            else:
                self._failed_requests += 1
            self._cond.notify_all()

    def generate_into(self, params: RequestParams, response: ResponseData) -> None:
        """Generate text for a request, filling a caller-owned response.

        The response is only written on success.

        Raises:
            InvalidParametersError: On missing arguments, an empty prompt,
                malformed stop words or a duplicate in-flight request id
            EngineNotReadyError: If the engine is not ready
            BackendError: If the backend fails
        """
        if params is None or response is None:
            raise InvalidParametersError("Invalid parameters")
        if not self._ready.is_set():
            raise EngineNotReadyError("Engine not ready")
        if not params.prompt:
            raise InvalidParametersError("Empty prompt")
        stop_words = parse_stop_words(params.stop_words)

        entry = self._register(params)
        logger.debug("Dispatching request %d (%d chars)", entry.request_id, len(params.prompt))
        try:
            entry.state = RequestState.RUNNING
            result = self._backend.generate(params.prompt, entry.gen_config, stop_words)
            entry.state = RequestState.COMPLETED
        except BoundaryError:
            entry.state = RequestState.FAILED
            raise
        except Exception as e:
            entry.state = RequestState.FAILED
            raise BackendError(f"Generation failed: {e}") from e
        finally:
            self._unregister(entry)

        response.request_id = entry.request_id
        response.text = result.text
        response.input_tokens = result.input_tokens
        response.output_tokens = result.output_tokens
        response.finished = result.finished
        response.error_code = result.error_code
        response.error_message = result.error_message
        logger.debug(
            "Request %d finished: %d input tokens, %d output tokens",
            entry.request_id,
            result.input_tokens,
            result.output_tokens,
        )

    def generate(self, params: RequestParams) -> ResponseData:
        """Generate text for a request and return a new response."""
        response = ResponseData()
        self.generate_into(params, response)
        return response

    def generate_batch(
        self,
        requests: Sequence[RequestParams],
        responses: Optional[List[ResponseData]] = None,
    ) -> List[ResponseData]:
        """Generate a batch of requests in order, stopping at the first failure.

        Responses before the failing request keep their results; the
        failing one and those after it stay unpopulated. Nothing is retried
        or rolled back.

        Args:
            requests: Requests to run
            responses: Caller-owned responses, one per request

        Returns:
            The responses list
        """
        if responses is None and requests:
            responses = [ResponseData() for _ in requests]
        if not requests or responses is None or len(requests) != len(responses):
            raise InvalidParametersError("Invalid parameters for batch generation")

        for params, response in zip(requests, responses):
            self.generate_into(params, response)
        return responses

    def generate_async(self, params: RequestParams) -> int:
        raise UnimplementedError("Async generation not implemented yet")

    def get_response(self, request_id: int, response: ResponseData) -> None:
        raise UnimplementedError("Async response retrieval not implemented yet")

    def get_model_info(self, info: Optional[ModelInfo] = None) -> ModelInfo:
        """Fill (or create) a ModelInfo describing the loaded model."""
        if not self._ready.is_set():
            raise EngineNotReadyError("Engine not ready")
        model_config = self._backend.model_config()
        if info is None:
            info = ModelInfo()
        info.model_name = os.path.basename(os.path.normpath(self.config.model_path))
        info.model_type = MODEL_TYPE
        info.vocab_size = model_config.get("vocab_size", 0)
        info.hidden_size = model_config.get("hidden_size", 0)
        info.num_layers = model_config.get("num_layers", 0)
        info.max_position_embeddings = model_config.get("max_position_embeddings", 0)
        return info

    def active_request_ids(self) -> List[int]:
        with self._cond:
            return sorted(self._active)

    def get_stats(self) -> Dict[str, int]:
        """Get request counters.

        Returns:
            Dictionary containing request metrics
        """
        with self._cond:
            return {
                "total_requests": self._total_requests,
                "completed_requests": self._completed_requests,
                "failed_requests": self._failed_requests,
                "active_requests": len(self._active),
            }
