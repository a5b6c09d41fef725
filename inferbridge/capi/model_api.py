"""
Handle-based model, tensor and forward API.

Models, instances, tensors, tensor maps and forward results are all owned
by the shared handle registry. Tensor maps copy on the way in
(tensor_map_set) and on the way out (tensor_map_get and
forward_result_tensors return new handles), so destroying any handle never
affects another.
"""

from typing import Any, Optional, Sequence

from inferbridge.capi._boundary import (
    FORWARD_RESULT,
    MODEL,
    MODEL_INSTANCE,
    TENSOR,
    TENSOR_MAP,
    boundary,
    handles,
)
from inferbridge.core.errors import InvalidParametersError
from inferbridge.session import model as _model
from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.model import Model
from inferbridge.session.session import RequestStatus, Session
from inferbridge.tensor.tensor import DataType, MemoryType, Tensor, TensorMap


def _destroy(handle: Optional[int], kind: str, method: Optional[str] = None) -> None:
    obj = handles.release(handle, kind)
    if obj is not None and method is not None:
        getattr(obj, method)()


# Models


@boundary(None, "Failed to create model")
def create_model(
    model_dir: str, config: str = "", weight_type: str = "half", backend: str = "transformers"
) -> Optional[int]:
    return handles.register(MODEL, Model(model_dir, config, weight_type, backend))


@boundary(None, "Failed to destroy model")
def destroy_model(model: Optional[int]) -> None:
    _destroy(model, MODEL, "destroy")


@boundary(-1, "create_shared_weights failed")
def create_shared_weights(model: Optional[int], device_id: int, rank: int) -> int:
    handles.get(model, MODEL).create_shared_weights(device_id, rank)
    return 0


@boundary(-1, "process_weights failed")
def process_weights(model: Optional[int], device_id: int, rank: int) -> int:
    handles.get(model, MODEL).process_weights(device_id, rank)
    return 0


@boundary(-1, "create_engine failed")
def create_engine(model: Optional[int], device_id: int, rank: int) -> int:
    handles.get(model, MODEL).create_engine(device_id, rank)
    return 0


@boundary(-1, "Failed to get tensor parallel size")
def get_tensor_para_size(model: Optional[int]) -> int:
    return handles.get(model, MODEL).tensor_para_size()


@boundary(-1, "Failed to get pipeline parallel size")
def get_pipeline_para_size(model: Optional[int]) -> int:
    return handles.get(model, MODEL).pipeline_para_size()


@boundary(None, "Failed to create model instance")
def create_model_instance(model: Optional[int], device_id: int) -> Optional[int]:
    instance = handles.get(model, MODEL).create_instance(device_id)
    return handles.register(MODEL_INSTANCE, instance)


@boundary(None, "Failed to destroy model instance")
def destroy_model_instance(instance: Optional[int]) -> None:
    _destroy(instance, MODEL_INSTANCE, "destroy")


@boundary(-1, "Failed to set device")
def set_device(device_id: int) -> int:
    _model.set_device(device_id)
    return 0


# Tensors


@boundary(None, "Failed to create tensor")
def create_tensor(
    data: Any,
    shape: Sequence[int],
    dtype: DataType,
    memory_type: MemoryType = MemoryType.CPU,
    device_id: int = 0,
) -> Optional[int]:
    return handles.register(TENSOR, Tensor(data, shape, dtype, memory_type, device_id))


def destroy_tensor(tensor: Optional[int]) -> None:
    _destroy(tensor, TENSOR)


def get_tensor(tensor: Optional[int]) -> Optional[Tensor]:
    """Borrow the Tensor behind a handle (None if the handle is not live)."""
    if not handles.is_live(tensor, TENSOR):
        return None
    return handles.get(tensor, TENSOR)


@boundary(0, "Failed to get tensor size")
def get_tensor_size(tensor: Optional[int]) -> int:
    return handles.get(tensor, TENSOR).byte_size


@boundary(-1, "Failed to copy tensor")
def copy_tensor(dst: Optional[int], src: Optional[int]) -> int:
    if not dst or not src:
        raise InvalidParametersError("Invalid parameters")
    handles.get(dst, TENSOR).copy_from(handles.get(src, TENSOR))
    return 0


@boundary(None, "Failed to create tensor map")
def create_tensor_map() -> Optional[int]:
    return handles.register(TENSOR_MAP, TensorMap())


def destroy_tensor_map(tensor_map: Optional[int]) -> None:
    _destroy(tensor_map, TENSOR_MAP)


@boundary(-1, "Failed to set tensor")
def tensor_map_set(tensor_map: Optional[int], key: str, tensor: Optional[int]) -> int:
    if not tensor_map or not key or not tensor:
        raise InvalidParametersError("Invalid parameters")
    handles.get(tensor_map, TENSOR_MAP).set(key, handles.get(tensor, TENSOR))
    return 0


@boundary(None, "Failed to get tensor")
def tensor_map_get(tensor_map: Optional[int], key: str) -> Optional[int]:
    """Return a new tensor handle holding a copy of the entry."""
    if not tensor_map or not key:
        raise InvalidParametersError("Invalid parameters")
    tensor = handles.get(tensor_map, TENSOR_MAP).get(key)
    return handles.register(TENSOR, tensor.clone())


# Forward


@boundary(None, "Forward failed")
def forward(
    instance: Optional[int],
    inputs: Optional[int],
    session: Optional[Session],
    gen_config: Optional[GenerationConfig],
    stream: bool = False,
) -> Optional[int]:
    if not instance or not inputs or session is None or gen_config is None:
        raise InvalidParametersError("Invalid parameters")
    model_instance = handles.get(instance, MODEL_INSTANCE)
    result = model_instance.forward(handles.get(inputs, TENSOR_MAP), session, gen_config, stream)
    return handles.register(FORWARD_RESULT, result)


def destroy_forward_result(result: Optional[int]) -> None:
    _destroy(result, FORWARD_RESULT)


@boundary(None, "Failed to read forward result")
def forward_result_status(result: Optional[int]) -> Optional[RequestStatus]:
    return handles.get(result, FORWARD_RESULT).status


@boundary(-1, "Failed to read forward result")
def forward_result_seq_len(result: Optional[int]) -> int:
    return handles.get(result, FORWARD_RESULT).seq_len


@boundary(None, "Failed to read forward result")
def forward_result_tensors(result: Optional[int]) -> Optional[int]:
    """Return a new tensor-map handle holding copies of the result's tensors."""
    tensors = handles.get(result, FORWARD_RESULT).tensors
    return handles.register(TENSOR_MAP, TensorMap(dict(tensors.items())))


@boundary(-1, "Failed to end session")
def end_session(instance: Optional[int], session_id: int) -> int:
    handles.get(instance, MODEL_INSTANCE).end_session(session_id)
    return 0


@boundary(-1, "Failed to cancel request")
def cancel_request(instance: Optional[int]) -> int:
    handles.get(instance, MODEL_INSTANCE).cancel_request()
    return 0
