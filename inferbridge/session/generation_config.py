"""
Per-call generation configuration for the forward path.
"""

from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple

from inferbridge.core.errors import InvalidParametersError
from inferbridge.sampling.sampling import SamplingParams

DEFAULT_MAX_NEW_TOKENS = 100
DEFAULT_MIN_NEW_TOKENS = 1
DEFAULT_TOP_P = 0.8
DEFAULT_TOP_K = 40
DEFAULT_TEMPERATURE = 1.0
DEFAULT_REPETITION_PENALTY = 1.0


def copy_ids(
    name: str, ids: Optional[Sequence[int]], count: Optional[int]
) -> Tuple[int, ...]:
    """Copy a token-id list guarded by an optional explicit count.

    The ids are copied only when both the sequence and the count are
    positive. A positive count without ids, or ids whose length disagrees
    with the count, is a caller contract violation.

    Raises:
        InvalidParametersError: On a count/sequence mismatch.
    """
    length = len(ids) if ids is not None else 0
    if count is None:
        count = length
    if count < 0:
        raise InvalidParametersError(f"Invalid parameters: {name}_count is negative")
    if count > 0 and ids is None:
        raise InvalidParametersError(
            f"Invalid parameters: {name}_count is {count} but {name} is null"
        )
    if count != length:
        raise InvalidParametersError(
            f"Invalid parameters: {name} has {length} entries but {name}_count is {count}"
        )
    if count == 0:
        return ()
    return tuple(int(i) for i in ids)


@dataclass
class GenerationConfig:
    """Generation parameters for one forward call.

    Numeric fields that are non-positive (or None) are replaced by their
    defaults in resolved(); min_p and random_seed default to 0, which
    disables min-p filtering and leaves sampling unseeded respectively.
    """

    max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS
    min_new_tokens: int = DEFAULT_MIN_NEW_TOKENS
    top_p: float = DEFAULT_TOP_P
    top_k: int = DEFAULT_TOP_K
    min_p: float = 0.0
    temperature: float = DEFAULT_TEMPERATURE
    repetition_penalty: float = DEFAULT_REPETITION_PENALTY
    random_seed: int = 0
    eos_ids: Optional[Sequence[int]] = None
    stop_ids: Optional[Sequence[int]] = None
    bad_ids: Optional[Sequence[int]] = None
    eos_ids_count: Optional[int] = None
    stop_ids_count: Optional[int] = None
    bad_ids_count: Optional[int] = None
    output_logprobs: bool = False
    output_last_hidden_state: bool = False
    output_logits: bool = False

    def resolved(self) -> "GenerationConfig":
        """Return a defaulted, validated copy with tuple id lists."""

        def positive(value, default):
            return value if value is not None and value > 0 else default

        max_new_tokens = positive(self.max_new_tokens, DEFAULT_MAX_NEW_TOKENS)
        min_new_tokens = positive(self.min_new_tokens, DEFAULT_MIN_NEW_TOKENS)
        top_p = positive(self.top_p, DEFAULT_TOP_P)
        if top_p > 1.0:
            raise InvalidParametersError(f"Invalid parameters: top_p must be <= 1, got {top_p}")
        min_p = self.min_p if self.min_p is not None and self.min_p > 0 else 0.0
        if min_p > 1.0:
            raise InvalidParametersError(f"Invalid parameters: min_p must be <= 1, got {min_p}")

        eos_ids = copy_ids("eos_ids", self.eos_ids, self.eos_ids_count)
        stop_ids = copy_ids("stop_ids", self.stop_ids, self.stop_ids_count)
        bad_ids = copy_ids("bad_ids", self.bad_ids, self.bad_ids_count)

        return replace(
            self,
            max_new_tokens=max_new_tokens,
            min_new_tokens=min(min_new_tokens, max_new_tokens),
            top_p=top_p,
            top_k=positive(self.top_k, DEFAULT_TOP_K),
            min_p=min_p,
            temperature=positive(self.temperature, DEFAULT_TEMPERATURE),
            repetition_penalty=positive(self.repetition_penalty, DEFAULT_REPETITION_PENALTY),
            random_seed=self.random_seed if self.random_seed and self.random_seed > 0 else 0,
            eos_ids=eos_ids,
            stop_ids=stop_ids,
            bad_ids=bad_ids,
            eos_ids_count=len(eos_ids),
            stop_ids_count=len(stop_ids),
            bad_ids_count=len(bad_ids),
        )

    def sampling_params(self) -> SamplingParams:
        """Sampling parameters for the token sampler."""
        return SamplingParams(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            min_p=self.min_p,
            repetition_penalty=self.repetition_penalty,
            bad_ids=list(self.bad_ids or ()),
            seed=self.random_seed or None,
        )
