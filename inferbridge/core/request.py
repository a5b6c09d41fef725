"""
Request and response structures for the generation protocol.
"""

import json
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional, Sequence, Union

from inferbridge.core.errors import InvalidParametersError
from inferbridge.session.generation_config import GenerationConfig

DEFAULT_MAX_NEW_TOKENS = 512
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.8
DEFAULT_TOP_K = 40
DEFAULT_REPETITION_PENALTY = 1.0


class RequestState(Enum):
    """State of a generation request inside an engine."""

    WAITING = "waiting"  # Registered, not yet dispatched
    RUNNING = "running"  # Dispatched to the backend
    COMPLETED = "completed"  # Backend returned a result
    FAILED = "failed"  # Backend raised or returned no result
    ABANDONED = "abandoned"  # Engine shut down before the request ran


def parse_stop_words(stop_words: Union[None, str, Sequence[str]]) -> List[str]:
    """Parse stop words given as a JSON array string or a list of strings.

    Raises:
        InvalidParametersError: If the JSON is malformed or not an array of strings.
    """
    if stop_words is None or stop_words == "":
        return []
    if isinstance(stop_words, str):
        try:
            stop_words = json.loads(stop_words)
        except ValueError as e:
            raise InvalidParametersError(f"Invalid parameters: stop_words is not valid JSON: {e}") from e
    if not isinstance(stop_words, (list, tuple)) or not all(isinstance(w, str) for w in stop_words):
        raise InvalidParametersError("Invalid parameters: stop_words must be an array of strings")
    return [w for w in stop_words if w]


@dataclass
class RequestParams:
    """Caller-supplied generation request.

    Attributes:
        request_id: Caller-chosen ID; non-positive means "assign one".
        prompt: Input text (must be non-empty).
        max_new_tokens: Maximum number of tokens to generate.
        min_new_tokens: Minimum number of tokens before eos/stop applies.
        temperature: Sampling temperature.
        top_p: Nucleus sampling threshold.
        top_k: Top-k sampling cutoff.
        min_p: Min-p sampling threshold (0 disables).
        repetition_penalty: Penalty for repeated tokens.
        random_seed: Sampling seed (0 means unseeded).
        stream: Streaming requested by the caller.
        stop_words: JSON array string or list of stop strings.
        eos_ids: Extra end-of-sequence token ids.
        stop_ids: Token ids that stop generation.
        bad_ids: Token ids that are never generated.
        output_logprobs: Ask the backend for log-probabilities.
    """

    request_id: int = 0
    prompt: Optional[str] = None
    max_new_tokens: int = 0
    min_new_tokens: int = 0
    temperature: float = 0.0
    top_p: float = 0.0
    top_k: int = 0
    min_p: float = 0.0
    repetition_penalty: float = 0.0
    random_seed: int = 0
    stream: bool = False
    stop_words: Union[None, str, Sequence[str]] = None
    eos_ids: Optional[Sequence[int]] = None
    stop_ids: Optional[Sequence[int]] = None
    bad_ids: Optional[Sequence[int]] = None
    output_logprobs: bool = False

    def generation_config(self) -> GenerationConfig:
        """Resolve the request's sampling fields into a GenerationConfig."""

        def positive(value, default):
            return value if value is not None and value > 0 else default

        return GenerationConfig(
            max_new_tokens=positive(self.max_new_tokens, DEFAULT_MAX_NEW_TOKENS),
            min_new_tokens=self.min_new_tokens,
            temperature=positive(self.temperature, DEFAULT_TEMPERATURE),
            top_p=positive(self.top_p, DEFAULT_TOP_P),
            top_k=int(positive(self.top_k, DEFAULT_TOP_K)),
            min_p=self.min_p,
            repetition_penalty=positive(self.repetition_penalty, DEFAULT_REPETITION_PENALTY),
            random_seed=self.random_seed,
            eos_ids=self.eos_ids,
            stop_ids=self.stop_ids,
            bad_ids=self.bad_ids,
            output_logprobs=self.output_logprobs,
        ).resolved()


@dataclass
class ResponseData:
    """Caller-owned response. A default-constructed instance is unpopulated.

    The caller releases the variable-length fields with free_response();
    freeing resets every field, so a second free is a no-op.
    """

    request_id: int = 0
    text: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    finished: bool = False
    error_code: int = 0
    error_message: Optional[str] = None

    def is_populated(self) -> bool:
        return self != ResponseData()

    def clear(self) -> None:
        for f in fields(self):
            setattr(self, f.name, f.default)


@dataclass
class ModelInfo:
    """Caller-owned model metadata; release with free_model_info()."""

    model_name: Optional[str] = None
    model_type: Optional[str] = None
    vocab_size: int = 0
    hidden_size: int = 0
    num_layers: int = 0
    max_position_embeddings: int = 0

    def clear(self) -> None:
        for f in fields(self):
            setattr(self, f.name, f.default)


@dataclass(frozen=True)
class VersionInfo:
    """Library build information (static, nothing to free)."""

    version: str
    git_commit: str
    build_time: str
    cuda_version: str


@dataclass
class ActiveRequest:
    """Entry of an engine's active-request table."""

    request_id: int
    params: RequestParams
    gen_config: GenerationConfig
    state: RequestState = RequestState.WAITING
    submitted_at: float = field(default_factory=time.monotonic)


def free_response(response: Optional[ResponseData]) -> None:
    """Release a response's fields. Safe to call more than once."""
    if response is not None:
        response.clear()


def free_model_info(info: Optional[ModelInfo]) -> None:
    """Release a model info's fields. Safe to call more than once."""
    if info is not None:
        info.clear()
