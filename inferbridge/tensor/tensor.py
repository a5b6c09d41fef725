"""
Typed, shaped, device-located tensors and named tensor maps.

Tensor and TensorMap are the only input/output vocabulary of the forward
path. A Tensor owns its storage: the caller's data is copied into a
torch.Tensor on the requested memory location when the Tensor is built.

TensorMap follows a copy-in / copy-out policy. set() stores an independent
copy of the tensor, so the caller may destroy or mutate the source
afterwards. The boundary layer's tensor_map_get hands out a new copy as
well; no entry of a map is ever a borrowed view of caller memory.
"""

import math
from enum import Enum, IntEnum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import torch

from inferbridge.core.errors import BackendError, InvalidParametersError


class DataType(IntEnum):
    """Element types supported by the boundary."""

    BOOL = 1
    UINT8 = 2
    UINT16 = 3
    UINT32 = 4
    UINT64 = 5
    INT8 = 6
    INT16 = 7
    INT32 = 8
    INT64 = 9
    FP16 = 10
    FP32 = 11
    FP64 = 12
    BF16 = 13

    @property
    def itemsize(self) -> int:
        return _ITEMSIZE[self]

    @property
    def torch_dtype(self) -> torch.dtype:
        return _TORCH_DTYPES[self]

    @classmethod
    def from_torch(cls, dtype: torch.dtype) -> "DataType":
        for data_type, torch_dtype in _TORCH_DTYPES.items():
            if torch_dtype == dtype:
                return data_type
        raise InvalidParametersError(f"Unsupported torch dtype: {dtype}")


_ITEMSIZE = {
    DataType.BOOL: 1,
    DataType.UINT8: 1,
    DataType.UINT16: 2,
    DataType.UINT32: 4,
    DataType.UINT64: 8,
    DataType.INT8: 1,
    DataType.INT16: 2,
    DataType.INT32: 4,
    DataType.INT64: 8,
    DataType.FP16: 2,
    DataType.FP32: 4,
    DataType.FP64: 8,
    DataType.BF16: 2,
}

_TORCH_DTYPES = {
    DataType.BOOL: torch.bool,
    DataType.UINT8: torch.uint8,
    DataType.UINT16: torch.uint16,
    DataType.UINT32: torch.uint32,
    DataType.UINT64: torch.uint64,
    DataType.INT8: torch.int8,
    DataType.INT16: torch.int16,
    DataType.INT32: torch.int32,
    DataType.INT64: torch.int64,
    DataType.FP16: torch.float16,
    DataType.FP32: torch.float32,
    DataType.FP64: torch.float64,
    DataType.BF16: torch.bfloat16,
}


class MemoryType(Enum):
    """Where a tensor's storage lives."""

    CPU = 0  # host memory
    CPU_PINNED = 1  # page-locked host memory
    GPU = 2  # device memory, see Tensor.device_id


def byte_size(shape: Sequence[int], dtype: DataType) -> int:
    """Number of bytes needed for a tensor.

    Zero-rank shapes and shapes containing a zero dimension yield 0.

    Raises:
        InvalidParametersError: If any dimension is negative.
    """
    if any(dim < 0 for dim in shape):
        raise InvalidParametersError(f"Invalid tensor shape: {list(shape)}")
    if len(shape) == 0:
        return 0
    return math.prod(shape) * DataType(dtype).itemsize


def _resolve_device(memory_type: MemoryType, device_id: int) -> torch.device:
    if memory_type == MemoryType.GPU:
        if not torch.cuda.is_available():
            raise BackendError("Device memory requested but CUDA is not available")
        if device_id < 0 or device_id >= torch.cuda.device_count():
            raise BackendError(f"Invalid device id: {device_id}")
        return torch.device("cuda", device_id)
    return torch.device("cpu")


def _materialize(data: Any, shape: Tuple[int, ...], dtype: DataType) -> torch.Tensor:
    """Copy caller data into a new contiguous CPU torch.Tensor of the given shape."""
    numel = math.prod(shape)
    torch_dtype = dtype.torch_dtype

    if isinstance(data, torch.Tensor):
        if data.numel() != numel:
            raise InvalidParametersError(
                f"Tensor data has {data.numel()} elements, shape {list(shape)} needs {numel}"
            )
        return data.detach().to(device="cpu", dtype=torch_dtype).reshape(shape).clone()

    if isinstance(data, (bytes, bytearray, memoryview)):
        raw = bytes(data)
        expected = numel * dtype.itemsize
        if len(raw) != expected:
            raise InvalidParametersError(
                f"Tensor data has {len(raw)} bytes, shape {list(shape)} needs {expected}"
            )
        if numel == 0:
            return torch.empty(shape, dtype=torch_dtype)
        # bytearray gives frombuffer a private, writable copy
        return torch.frombuffer(bytearray(raw), dtype=torch_dtype).reshape(shape)

    values = torch.tensor(data, dtype=torch_dtype)
    if values.numel() != numel:
        raise InvalidParametersError(
            f"Tensor data has {values.numel()} elements, shape {list(shape)} needs {numel}"
        )
    return values.reshape(shape).contiguous()


class Tensor:
    """A typed, shaped, device-located buffer.

    Attributes:
        shape: Tuple of non-negative dimension sizes.
        dtype: Element type.
        memory_type: Memory location of the storage.
        device_id: Device index (meaningful for GPU memory).
    """

    def __init__(
        self,
        data: Any,
        shape: Sequence[int],
        dtype: Union[DataType, int],
        memory_type: MemoryType = MemoryType.CPU,
        device_id: int = 0,
    ) -> None:
        """Create a tensor that owns a copy of ``data``.

        Args:
            data: torch.Tensor, raw element bytes, or a sequence of numbers.
            shape: Dimension sizes (at least one dimension).
            dtype: Element type.
            memory_type: Host, pinned host, or device memory.
            device_id: Device index for device memory.

        Raises:
            InvalidParametersError: If data is None, the shape is empty or
                negative, or data does not match the shape.
            BackendError: If the memory location is unavailable.
        """
        if data is None or shape is None:
            raise InvalidParametersError("Invalid tensor parameters")
        shape = tuple(int(dim) for dim in shape)
        if len(shape) == 0:
            raise InvalidParametersError("Invalid tensor parameters")
        try:
            dtype = DataType(dtype)
        except ValueError:
            raise InvalidParametersError(f"Unsupported data type: {dtype!r}") from None
        memory_type = MemoryType(memory_type)
        byte_size(shape, dtype)  # rejects negative dims

        self.shape = shape
        self.dtype = dtype
        self.memory_type = memory_type
        self.device_id = device_id

        buffer = _materialize(data, shape, dtype)
        device = _resolve_device(memory_type, device_id)
        if memory_type == MemoryType.CPU_PINNED:
            if not torch.cuda.is_available():
                raise BackendError("Pinned host memory requested but CUDA is not available")
            buffer = buffer.pin_memory()
        elif device.type != "cpu":
            buffer = buffer.to(device)
        self._data = buffer

    @classmethod
    def from_torch(
        cls,
        tensor: torch.Tensor,
        memory_type: Optional[MemoryType] = None,
        device_id: Optional[int] = None,
    ) -> "Tensor":
        """Wrap a copy of a torch tensor, keeping its location by default."""
        if memory_type is None:
            memory_type = MemoryType.GPU if tensor.is_cuda else MemoryType.CPU
        if device_id is None:
            device_id = tensor.device.index or 0
        return cls(
            tensor,
            tuple(tensor.shape),
            DataType.from_torch(tensor.dtype),
            memory_type,
            device_id,
        )

    @property
    def data(self) -> torch.Tensor:
        return self._data

    @property
    def numel(self) -> int:
        return math.prod(self.shape)

    @property
    def byte_size(self) -> int:
        return byte_size(self.shape, self.dtype)

    def tolist(self) -> List[Any]:
        return self._data.cpu().tolist()

    def clone(self) -> "Tensor":
        """Deep copy with the same descriptor and location."""
        return Tensor(self._data, self.shape, self.dtype, self.memory_type, self.device_id)

    def copy_from(self, src: "Tensor") -> None:
        """Copy raw bytes from ``src`` into this tensor's storage.

        Raises:
            InvalidParametersError: If the byte sizes differ.
        """
        if self.byte_size != src.byte_size:
            raise InvalidParametersError("Tensor size mismatch for copy")
        if self.byte_size == 0:
            return
        dst_bytes = self._data.view(-1).view(torch.uint8)
        src_bytes = src.data.contiguous().view(-1).view(torch.uint8)
        dst_bytes.copy_(src_bytes.to(dst_bytes.device))

    def __repr__(self) -> str:
        return (
            f"Tensor(shape={list(self.shape)}, dtype={self.dtype.name}, "
            f"memory_type={self.memory_type.name}, device_id={self.device_id})"
        )


class TensorMap:
    """Mapping from unique tensor names to tensors (copy-in)."""

    def __init__(self, tensors: Optional[Dict[str, Tensor]] = None) -> None:
        self._tensors: Dict[str, Tensor] = {}
        for key, tensor in (tensors or {}).items():
            self.set(key, tensor)

    def set(self, key: str, tensor: Tensor) -> None:
        """Store a copy of ``tensor`` under ``key``, replacing any previous entry."""
        if not key or not isinstance(key, str) or tensor is None:
            raise InvalidParametersError("Invalid parameters for tensor map set")
        self._tensors[key] = tensor.clone()

    def get(self, key: str) -> Tensor:
        """Return the tensor stored under ``key``.

        Raises:
            InvalidParametersError: If the key is missing.
        """
        if not key:
            raise InvalidParametersError("Invalid parameters for tensor map get")
        try:
            return self._tensors[key]
        except KeyError:
            raise InvalidParametersError(f"Tensor not found in map: {key}") from None

    def pop(self, key: str) -> Tensor:
        if key not in self._tensors:
            raise InvalidParametersError(f"Tensor not found in map: {key}")
        return self._tensors.pop(key)

    def keys(self) -> List[str]:
        return list(self._tensors.keys())

    def items(self) -> Iterator[Tuple[str, Tensor]]:
        return iter(list(self._tensors.items()))

    def clear(self) -> None:
        self._tensors.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._tensors

    def __len__(self) -> int:
        return len(self._tensors)

    def __repr__(self) -> str:
        return f"TensorMap(keys={sorted(self._tensors)})"
