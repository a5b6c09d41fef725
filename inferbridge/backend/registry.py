"""
Registry of inference backends by name.

Engines and low-level models look their backend up here, which keeps the
real backend and the fake backend interchangeable behind one interface.
"""

import threading
from typing import Callable, Dict, List, Optional

from inferbridge.backend.base import InferenceBackend
from inferbridge.core.config import EngineConfig
from inferbridge.core.errors import InvalidParametersError

# factory(model_dir, config, weight_type, engine_config) -> InferenceBackend
BackendFactory = Callable[[str, str, str, Optional[EngineConfig]], InferenceBackend]

_lock = threading.Lock()
_factories: Dict[str, BackendFactory] = {}


def register_backend(name: str, factory: BackendFactory) -> None:
    """Register (or replace) a backend factory under ``name``."""
    if not name:
        raise InvalidParametersError("Backend name cannot be empty")
    with _lock:
        _factories[name] = factory


def unregister_backend(name: str) -> None:
    with _lock:
        _factories.pop(name, None)


def available_backends() -> List[str]:
    with _lock:
        return sorted(_factories)


def create_backend(
    name: str,
    model_dir: str,
    config: str = "",
    weight_type: str = "half",
    engine_config: Optional[EngineConfig] = None,
) -> InferenceBackend:
    """Construct (but do not load) a registered backend.

    Raises:
        InvalidParametersError: If no backend is registered under ``name``.
    """
    with _lock:
        factory = _factories.get(name)
    if factory is None:
        raise InvalidParametersError(
            f"Unknown backend {name!r}; available: {', '.join(available_backends())}"
        )
    return factory(model_dir, config, weight_type, engine_config)


def _register_builtin_backends() -> None:
    from inferbridge.backend.fake import FakeBackend
    from inferbridge.backend.transformers_backend import TransformersBackend

    register_backend("fake", FakeBackend)
    register_backend("transformers", TransformersBackend)


_register_builtin_backends()
