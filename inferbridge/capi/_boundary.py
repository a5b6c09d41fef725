"""
Shared plumbing for the handle-based API.

Every public function in inferbridge.capi is wrapped with @boundary: it
never raises, returns a sentinel on failure and leaves the message in the
last-error slot.
"""

import functools
import logging

from inferbridge.core.errors import set_last_error, wrap_backend_error
from inferbridge.core.handles import HandleRegistry

logger = logging.getLogger(__name__)

# Handle kinds
ENGINE = "engine"
MODEL = "model"
MODEL_INSTANCE = "model_instance"
TENSOR = "tensor"
TENSOR_MAP = "tensor_map"
FORWARD_RESULT = "forward_result"

handles = HandleRegistry("inferbridge")


def boundary(sentinel, context: str):
    """Convert exceptions raised by the wrapped call into ``sentinel``.

    Args:
        sentinel: Value returned on failure (None, -1, 0 or False)
        context: Prefix for messages of exceptions that are not BoundaryErrors
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                error = wrap_backend_error(context, e)
                if error is not e:
                    logger.debug("%s raised %s", fn.__name__, type(e).__name__, exc_info=True)
                set_last_error(str(error))
                return sentinel

        return wrapper

    return decorator
