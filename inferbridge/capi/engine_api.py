"""
Handle-based engine API.

create_engine() returns an integer handle; every other call takes it. Calls
return -1 (or None/False) on failure and leave the message in the
last-error slot, readable with get_last_error().
"""

from typing import List, Optional

from inferbridge.capi._boundary import ENGINE, boundary, handles
from inferbridge.core import engine as _engine
from inferbridge.core import request as _request
from inferbridge.core.config import EngineConfig
from inferbridge.core.engine import Engine
from inferbridge.core.errors import InvalidParametersError, UnimplementedError
from inferbridge.core.errors import get_last_error as _get_last_error
from inferbridge.core.request import ModelInfo, RequestParams, ResponseData, VersionInfo


@boundary(None, "Failed to create engine")
def create_engine(config: EngineConfig) -> Optional[int]:
    """Create and load an engine. Returns its handle, or None on failure."""
    engine = Engine(config)
    return handles.register(ENGINE, engine)


@boundary(None, "Failed to destroy engine")
def destroy_engine(engine: Optional[int]) -> None:
    """Tear an engine down. Null and already-destroyed handles are ignored.

    The handle stays live until in-flight requests have drained, so
    concurrent callers see "Engine not ready" rather than a stale handle.
    """
    if not handles.is_live(engine, ENGINE):
        return
    try:
        handles.get(engine, ENGINE).destroy()
    except InvalidParametersError:
        return
    finally:
        handles.release(engine, ENGINE)


def is_ready(engine: Optional[int]) -> bool:
    if not handles.is_live(engine, ENGINE):
        return False
    try:
        return handles.get(engine, ENGINE).is_ready()
    except InvalidParametersError:
        # destroyed between the two lookups
        return False


def _engine_for(engine: Optional[int]) -> Engine:
    if not engine:
        raise InvalidParametersError("Invalid parameters")
    return handles.get(engine, ENGINE)


@boundary(-1, "Generation failed")
def generate(
    engine: Optional[int], request: Optional[RequestParams], response: Optional[ResponseData]
) -> int:
    if request is None or response is None:
        raise InvalidParametersError("Invalid parameters")
    _engine_for(engine).generate_into(request, response)
    return 0


@boundary(-1, "Async generation failed")
def generate_async(engine: Optional[int], request: Optional[RequestParams]) -> int:
    raise UnimplementedError("Async generation not implemented yet")


@boundary(-1, "Async response retrieval failed")
def get_response(engine: Optional[int], request_id: int, response: Optional[ResponseData]) -> int:
    raise UnimplementedError("Async response retrieval not implemented yet")


@boundary(-1, "Batch generation failed")
def generate_batch(
    engine: Optional[int],
    requests: Optional[List[RequestParams]],
    responses: Optional[List[ResponseData]],
) -> int:
    """Generate a batch in order; the first failure aborts the rest.

    Responses before the failing request keep their results.
    """
    if not requests or responses is None or len(requests) != len(responses):
        raise InvalidParametersError("Invalid parameters for batch generation")
    _engine_for(engine).generate_batch(requests, responses)
    return 0


@boundary(-1, "Failed to get model info")
def get_model_info(engine: Optional[int], info: Optional[ModelInfo]) -> int:
    if info is None:
        raise InvalidParametersError("Invalid parameters")
    _engine_for(engine).get_model_info(info)
    return 0


def free_model_info(info: Optional[ModelInfo]) -> None:
    _request.free_model_info(info)


def free_response(response: Optional[ResponseData]) -> None:
    _request.free_response(response)


def get_version() -> VersionInfo:
    return _engine.get_version()


def get_last_error() -> str:
    return _get_last_error()
