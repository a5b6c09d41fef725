"""
Handle registry for opaque cross-boundary handles.

Every object handed out by the C-style layer (engines, models, instances,
tensors, tensor maps, forward results) lives in a HandleRegistry and is
referred to only by an integer handle. Handles are never reused, so a
handle that has been destroyed can be detected instead of dereferenced.
"""

import itertools
import threading
from typing import Any, Dict, Optional, Tuple

from inferbridge.core.errors import InvalidParametersError


class HandleRegistry:
    """Thread-safe table mapping integer handles to (kind, object).

    Attributes:
        name: Label used in error messages.
    """

    def __init__(self, name: str = "handles") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._objects: Dict[int, Tuple[str, Any]] = {}
        self._next = itertools.count(1)

    def register(self, kind: str, obj: Any) -> int:
        """Store an object and return its new handle.

        Args:
            kind: Object kind (e.g. "engine", "tensor").
            obj: Object to own.

        Returns:
            A positive integer handle that has never been issued before.
        """
        with self._lock:
            handle = next(self._next)
            self._objects[handle] = (kind, obj)
            return handle

    def get(self, handle: Optional[int], kind: str) -> Any:
        """Resolve a handle of the given kind.

        Raises:
            InvalidParametersError: If the handle is null, stale, or refers
                to an object of a different kind.
        """
        if not handle:
            raise InvalidParametersError(f"Invalid parameters: {kind} handle is null")
        with self._lock:
            entry = self._objects.get(handle)
        if entry is None:
            raise InvalidParametersError(
                f"Invalid parameters: {kind} handle {handle} is not live"
            )
        if entry[0] != kind:
            raise InvalidParametersError(
                f"Invalid parameters: handle {handle} is a {entry[0]}, not a {kind}"
            )
        return entry[1]

    def release(self, handle: Optional[int], kind: str) -> Optional[Any]:
        """Remove a handle and return its object.

        Null, stale, and wrong-kind handles are ignored and None is
        returned, so destroy operations stay no-ops on repeated calls.
        """
        if not handle:
            return None
        with self._lock:
            entry = self._objects.get(handle)
            if entry is None or entry[0] != kind:
                return None
            del self._objects[handle]
        return entry[1]

    def is_live(self, handle: Optional[int], kind: str) -> bool:
        if not handle:
            return False
        with self._lock:
            entry = self._objects.get(handle)
        return entry is not None and entry[0] == kind

    def count(self, kind: Optional[str] = None) -> int:
        """Number of live handles, optionally of one kind."""
        with self._lock:
            if kind is None:
                return len(self._objects)
            return sum(1 for k, _ in self._objects.values() if k == kind)

    def __len__(self) -> int:
        return self.count()
