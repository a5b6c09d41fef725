"""
Tensor vocabulary of the forward path.

Provides:
- DataType: Element types with byte widths and torch dtype mapping
- MemoryType: Host, pinned host, and device memory locations
- Tensor: Owned, typed, shaped, device-located buffer
- TensorMap: Named collection of tensors (copy-in)
- byte_size: Byte size of a shape/dtype pair
"""

from inferbridge.tensor.tensor import DataType, MemoryType, Tensor, TensorMap, byte_size

__all__ = ["DataType", "MemoryType", "Tensor", "TensorMap", "byte_size"]
