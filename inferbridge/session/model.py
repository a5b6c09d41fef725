"""
Low-level model path: staged weight preparation and per-device instances.

A Model wraps a backend built from a model directory. Callers prepare it in
stages (create_shared_weights, process_weights, create_engine), then create
one ModelInstance per device and drive sessions with forward().
"""

import logging
from dataclasses import dataclass

import torch

from inferbridge.backend.base import BackendInstance, InferenceBackend
from inferbridge.backend.registry import create_backend
from inferbridge.core.errors import (
    BackendError,
    BoundaryError,
    InvalidParametersError,
)
from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.session import RequestStatus, Session, SessionState, SessionTable
from inferbridge.tensor.tensor import TensorMap

logger = logging.getLogger(__name__)


@dataclass
class ForwardResult:
    """Output of ModelInstance.forward().

    Attributes:
        tensors: Output tensors (empty for killed sessions).
        status: Execution status of the call.
        seq_len: Total tokens in the session after the call.
    """

    tensors: TensorMap
    status: RequestStatus
    seq_len: int


def set_device(device_id: int) -> None:
    """Select the current CUDA device.

    Raises:
        BackendError: If CUDA is unavailable or the index is out of range.
    """
    if not torch.cuda.is_available():
        raise BackendError("CUDA is not available")
    if device_id < 0 or device_id >= torch.cuda.device_count():
        raise BackendError(f"Invalid device id: {device_id}")
    torch.cuda.set_device(device_id)


def _backend_call(context: str, fn, *args):
    try:
        return fn(*args)
    except BoundaryError:
        raise
    except Exception as e:
        raise BackendError(f"{context}: {e}") from e


class Model:
    """Backend handle for the low-level forward path."""

    def __init__(
        self,
        model_dir: str,
        config: str = "",
        weight_type: str = "half",
        backend: str = "transformers",
    ):
        """Create the backend and load the model.

        Args:
            model_dir: Path to the model directory
            config: Opaque backend configuration string (YAML/JSON)
            weight_type: Weight type name ("half" when empty)
            backend: Backend registry name

        Raises:
            InvalidParametersError: If model_dir is empty or weight_type unknown
            BackendError: If the backend fails to load the model
        """
        if not model_dir:
            raise InvalidParametersError("Invalid parameters: model_dir is required")
        self.model_dir = model_dir
        self.config = config or ""
        self.weight_type = weight_type or "half"
        self._backend = create_backend(backend, model_dir, self.config, self.weight_type)
        _backend_call("Failed to load model", self._backend.load)
        self._destroyed = False
        logger.info("Model loaded from %s (%s, %s)", model_dir, backend, self.weight_type)

    @property
    def backend(self) -> InferenceBackend:
        return self._backend

    def create_shared_weights(self, device_id: int, rank: int) -> None:
        _backend_call("create_shared_weights failed", self._backend.create_shared_weights, device_id, rank)

    def process_weights(self, device_id: int, rank: int) -> None:
        _backend_call("process_weights failed", self._backend.process_weights, device_id, rank)

    def create_engine(self, device_id: int, rank: int) -> None:
        _backend_call("create_engine failed", self._backend.create_engine, device_id, rank)

    def tensor_para_size(self) -> int:
        return self._backend.tensor_para_size()

    def pipeline_para_size(self) -> int:
        return self._backend.pipeline_para_size()

    def create_instance(self, device_id: int) -> "ModelInstance":
        if self._destroyed:
            raise InvalidParametersError("Invalid parameters: model has been destroyed")
        backend_instance = _backend_call(
            "create_model_instance failed", self._backend.create_instance, device_id
        )
        return ModelInstance(self, backend_instance, device_id)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._backend.shutdown()
        logger.info("Model %s destroyed", self.model_dir)


class ModelInstance:
    """Per-device request context with its own session table.

    Attributes:
        model: Owning Model.
        device_id: Device the instance was created on.
        sessions: Session state machine for this instance.
    """

    def __init__(self, model: Model, backend_instance: BackendInstance, device_id: int):
        self.model = model
        self.device_id = device_id
        self.sessions = SessionTable()
        self._instance = backend_instance

    @property
    def backend_instance(self) -> BackendInstance:
        return self._instance

    def forward(
        self,
        inputs: TensorMap,
        session: Session,
        gen_config: GenerationConfig,
        stream: bool = False,
    ) -> ForwardResult:
        """Run one forward step for a session.

        Raises:
            InvalidParametersError: On missing arguments or a transition the
                session state machine does not allow
            BackendError: If the backend fails
        """
        if inputs is None or session is None or gen_config is None:
            raise InvalidParametersError("Invalid parameters")
        resolved = gen_config.resolved()
        if "input_ids" not in inputs and not session.kill_flag:
            raise InvalidParametersError("Tensor not found in map: input_ids")

        if session.kill_flag:
            self.sessions.kill(session)
            self._instance.kill(session.id)
            logger.debug("Session %d killed", session.id)
            return ForwardResult(tensors=TensorMap(), status=RequestStatus.CANCELLED, seq_len=0)

        self.sessions.begin(session)

        try:
            output = self._instance.forward(inputs, session, resolved, stream)
        except BoundaryError:
            self.sessions.abort(session)
            raise
        except Exception as e:
            self.sessions.abort(session)
            raise BackendError(f"Forward failed: {e}") from e

        self.sessions.finish(session)
        logger.debug(
            "Session %d step %d: status=%s seq_len=%d",
            session.id,
            session.step,
            output.status.value,
            output.seq_len,
        )
        return ForwardResult(tensors=output.tensors, status=output.status, seq_len=output.seq_len)

    def end_session(self, session_id: int) -> None:
        """Signal graceful termination of a session without waiting."""
        if self.sessions.state(session_id) is SessionState.ACTIVE:
            self.sessions.end(session_id)
        self._instance.end(session_id)

    def cancel_request(self) -> None:
        """Signal abandonment of whatever is running on this instance."""
        self._instance.cancel()

    def destroy(self) -> None:
        self._instance.close()
