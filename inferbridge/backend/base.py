"""Abstract interface of the inference backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from inferbridge.core.errors import InvalidParametersError
from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.session import RequestStatus, Session
from inferbridge.tensor.tensor import DataType, TensorMap


@dataclass
class BackendGeneration:
    """Result of one text generation call."""

    text: str
    input_tokens: int
    output_tokens: int
    finished: bool = True
    error_code: int = 0
    error_message: Optional[str] = None


@dataclass
class BackendOutput:
    """Result of one forward call."""

    tensors: TensorMap
    status: RequestStatus
    seq_len: int


class BackendInstance(ABC):
    """Per-device request context created by an InferenceBackend.

    forward() blocks until the backend is done with the call. end() and
    cancel() are signals: they must return without waiting for the
    running forward to observe them.
    """

    @abstractmethod
    def forward(
        self,
        inputs: TensorMap,
        session: Session,
        gen_config: GenerationConfig,
        stream: bool = False,
    ) -> BackendOutput:
        """Run one forward step for a session.

        Args:
            inputs: Input tensors ("input_ids" is required)
            session: Session parameters (already validated)
            gen_config: Resolved generation configuration
            stream: Streaming output requested

        Returns:
            Output tensors with status and sequence length
        """
        pass

    @abstractmethod
    def end(self, session_id: int) -> None:
        """Signal graceful termination of a session.

        A running forward stops at its next token and the session's state
        is released when it returns; an idle session is released at once.
        """
        pass

    @abstractmethod
    def kill(self, session_id: int) -> None:
        """Abandon one session.

        A running forward on the session stops with CANCELLED; forwards on
        other sessions are not affected. The session's state is released.
        """
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Signal abandonment of whatever is running on this instance."""
        pass

    def close(self) -> None:
        """Release instance resources."""


class InferenceBackend(ABC):
    """Opaque model backend: loading, weights, tokenization and compute.

    Implementations are registered by name in inferbridge.backend.registry
    and constructed with the model directory, an opaque config string and
    the weight type, plus the engine configuration when created through an
    Engine.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the backend name.

        Returns:
            Backend name string
        """
        pass

    @abstractmethod
    def load(self) -> None:
        """Load the model. Raises on malformed directories or unsupported settings."""
        pass

    @abstractmethod
    def generate(
        self,
        prompt: str,
        gen_config: GenerationConfig,
        stop_words: Optional[List[str]] = None,
    ) -> BackendGeneration:
        """Generate text for a prompt (blocking)."""
        pass

    @abstractmethod
    def model_config(self) -> Dict[str, Any]:
        """Model metadata: vocab_size, hidden_size, num_layers, max_position_embeddings."""
        pass

    @abstractmethod
    def create_instance(self, device_id: int) -> BackendInstance:
        """Create a request context on a device."""
        pass

    def create_shared_weights(self, device_id: int, rank: int) -> None:
        """Allocate weights shared by all instances on a device."""

    def process_weights(self, device_id: int, rank: int) -> None:
        """Post-process loaded weights (layout conversion, quantization)."""

    def create_engine(self, device_id: int, rank: int) -> None:
        """Create the runtime engine for a device/rank."""

    def tensor_para_size(self) -> int:
        return 1

    def pipeline_para_size(self) -> int:
        return 1

    def shutdown(self) -> None:
        """Release all backend resources."""


# Weight type names accepted by create_model, mapped to the compute dtype
WEIGHT_TYPES = {
    "half": DataType.FP16,
    "fp16": DataType.FP16,
    "float16": DataType.FP16,
    "int4": DataType.FP16,
    "bf16": DataType.BF16,
    "bfloat16": DataType.BF16,
    "fp8": DataType.BF16,
    "fp32": DataType.FP32,
    "float": DataType.FP32,
    "float32": DataType.FP32,
}


def weight_data_type(weight_type: Optional[str]) -> DataType:
    """Resolve a weight type name ("half" when empty) to its compute dtype.

    Raises:
        InvalidParametersError: If the weight type is unknown.
    """
    key = (weight_type or "half").lower()
    if key not in WEIGHT_TYPES:
        raise InvalidParametersError(f"Unsupported weight type: {weight_type}")
    return WEIGHT_TYPES[key]
