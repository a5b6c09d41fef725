"""
Inference backends.

This module provides:
- InferenceBackend / BackendInstance: the interface engines and models drive
- FakeBackend: deterministic backend for tests and demos
- TransformersBackend: HuggingFace causal language models
- A registry to construct backends by name
"""

from inferbridge.backend.base import (
    BackendGeneration,
    BackendInstance,
    BackendOutput,
    InferenceBackend,
    weight_data_type,
)
from inferbridge.backend.registry import (
    available_backends,
    create_backend,
    register_backend,
    unregister_backend,
)

__all__ = [
    "BackendGeneration",
    "BackendInstance",
    "BackendOutput",
    "InferenceBackend",
    "available_backends",
    "create_backend",
    "register_backend",
    "unregister_backend",
    "weight_data_type",
]
