"""
Engine configuration.

This module defines EngineConfig, the immutable snapshot of settings that an
Engine captures at creation time, together with the quantization policy and
rope-scaling enums. Numeric fields fall back to their defaults when the
caller passes a non-positive value; anything that cannot be defaulted
(missing model path, unknown enum values, out-of-range fractions) is
rejected with InvalidConfigError.
"""

import json
import numbers
import os
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import Any, Dict, Mapping, Union

from inferbridge.core.errors import InvalidConfigError

SUPPORTED_MODEL_FORMATS = ("hf", "awq", "gptq", "turbomind")

DEFAULT_TP = 1
DEFAULT_SESSION_LEN = 2048
DEFAULT_MAX_BATCH_SIZE = 32
DEFAULT_CACHE_MAX_ENTRY_COUNT = 0.8
DEFAULT_ROPE_SCALING_FACTOR = 1.0

INTEGER_FIELDS = ("tp", "session_len", "max_batch_size")


class QuantPolicy(IntEnum):
    """Numeric format of the model weights during inference."""

    NONE = 0
    INT4 = 4
    INT8 = 8


class RopeScalingType(IntEnum):
    """Rotary embedding scaling scheme."""

    NONE = 0
    LINEAR = 1
    DYNAMIC = 2
    YARN = 3


@dataclass(frozen=True)
class EngineConfig:
    """Immutable engine configuration.

    Attributes:
        model_path: Path to the model directory (required, non-empty).
        model_format: Model format tag ("hf", "awq", "gptq", "turbomind").
        tp: Tensor-parallel degree.
        session_len: Maximum sequence length per session.
        max_batch_size: Maximum number of concurrently batched sequences.
        quant_policy: Weight quantization policy.
        cache_max_entry_count: Fraction of free memory reserved for KV cache.
        enable_prefix_caching: Reuse cached state for shared prompt prefixes.
        rope_scaling_factor: Rotary embedding scaling factor.
        rope_scaling_type: Rotary embedding scaling scheme.
        backend: Name of the inference backend in the backend registry.
        device: Torch device the backend runs on.
    """

    model_path: str
    model_format: str = "hf"
    tp: int = DEFAULT_TP
    session_len: int = DEFAULT_SESSION_LEN
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    quant_policy: QuantPolicy = QuantPolicy.NONE
    cache_max_entry_count: float = DEFAULT_CACHE_MAX_ENTRY_COUNT
    enable_prefix_caching: bool = False
    rope_scaling_factor: float = DEFAULT_ROPE_SCALING_FACTOR
    rope_scaling_type: RopeScalingType = RopeScalingType.NONE
    backend: str = "transformers"
    device: str = "cpu"

    def __post_init__(self) -> None:
        if isinstance(self.model_path, os.PathLike):
            object.__setattr__(self, "model_path", os.fspath(self.model_path))
        if not self.model_path or not isinstance(self.model_path, str):
            raise InvalidConfigError("Invalid configuration: model_path is required")

        # Non-positive numerics fall back to their defaults
        defaults = {
            "tp": DEFAULT_TP,
            "session_len": DEFAULT_SESSION_LEN,
            "max_batch_size": DEFAULT_MAX_BATCH_SIZE,
            "cache_max_entry_count": DEFAULT_CACHE_MAX_ENTRY_COUNT,
            "rope_scaling_factor": DEFAULT_ROPE_SCALING_FACTOR,
        }
        for name, default in defaults.items():
            value = getattr(self, name)
            self._check_number(name, value, int if name in INTEGER_FIELDS else numbers.Real)
            if value is None or value <= 0:
                object.__setattr__(self, name, default)
        for name in ("model_format", "backend", "device"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise InvalidConfigError(
                    f"Invalid configuration: {name} must be a string, got {value!r}"
                )

        object.__setattr__(self, "model_format", self.model_format or "hf")
        object.__setattr__(
            self, "quant_policy", self._coerce_enum(QuantPolicy, self.quant_policy, "quant_policy")
        )
        object.__setattr__(
            self,
            "rope_scaling_type",
            self._coerce_enum(RopeScalingType, self.rope_scaling_type, "rope_scaling_type"),
        )
        self._validate()

    @staticmethod
    def _check_number(name, value, kind) -> None:
        # bool is an int subclass but never a valid count or fraction
        if value is None:
            return
        if isinstance(value, bool) or not isinstance(value, kind):
            expected = "an integer" if kind is int else "a number"
            raise InvalidConfigError(
                f"Invalid configuration: {name} must be {expected}, got {value!r}"
            )

    @staticmethod
    def _coerce_enum(enum_cls, value, name):
        if value is None:
            return enum_cls(0)
        try:
            return enum_cls(value)
        except ValueError:
            raise InvalidConfigError(
                f"Invalid configuration: unsupported {name} {value!r}"
            ) from None

    def _validate(self) -> None:
        """Validate the fields that cannot be defaulted.

        Raises:
            InvalidConfigError: If any field is out of range.
        """
        if self.model_format not in SUPPORTED_MODEL_FORMATS:
            raise InvalidConfigError(
                f"Invalid configuration: unsupported model_format {self.model_format!r}"
            )
        if self.cache_max_entry_count > 1.0:
            raise InvalidConfigError(
                "Invalid configuration: cache_max_entry_count must be a fraction in (0, 1], "
                f"got {self.cache_max_entry_count}"
            )
        if not self.backend:
            raise InvalidConfigError("Invalid configuration: backend is required")
        if not self.device:
            raise InvalidConfigError("Invalid configuration: device is required")

    @classmethod
    def default(cls, model_path: str) -> "EngineConfig":
        """Default configuration for a model directory."""
        return cls(model_path=model_path)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from a mapping of field names.

        Raises:
            InvalidConfigError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidConfigError(
                f"Invalid configuration: unknown keys {', '.join(unknown)}"
            )
        if "model_path" not in values:
            raise InvalidConfigError("Invalid configuration: model_path is required")
        return cls(**dict(values))

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "EngineConfig":
        try:
            values = json.loads(data)
        except ValueError as e:
            raise InvalidConfigError(f"Invalid configuration: {e}") from e
        if not isinstance(values, dict):
            raise InvalidConfigError("Invalid configuration: expected a JSON object")
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a plain dictionary."""
        return {
            "model_path": self.model_path,
            "model_format": self.model_format,
            "tp": self.tp,
            "session_len": self.session_len,
            "max_batch_size": self.max_batch_size,
            "quant_policy": int(self.quant_policy),
            "cache_max_entry_count": self.cache_max_entry_count,
            "enable_prefix_caching": self.enable_prefix_caching,
            "rope_scaling_factor": self.rope_scaling_factor,
            "rope_scaling_type": int(self.rope_scaling_type),
            "backend": self.backend,
            "device": self.device,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
