"""
Aligned buffer pool for CoreML inputs.

Every staged model input lives in a buffer allocated once, aligned for the
Neural Engine, and overwritten in place on each chunk. ``copy_padded`` is the
only way buffer contents change after allocation.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Sequence, Union

import numpy as np

from .errors import AllocationFailed

logger = logging.getLogger(__name__)

# ANE reads input tensors most efficiently from 64-byte aligned memory
ANE_ALIGNMENT = 64

# Data types an MLMultiArray can hold
SUPPORTED_DTYPES = (np.dtype(np.float16), np.dtype(np.float32), np.dtype(np.float64), np.dtype(np.int32))

ArrayLike = Union[np.ndarray, Sequence[float], Sequence[int]]


def is_aligned(array: np.ndarray, alignment: int = ANE_ALIGNMENT) -> bool:
    return array.ctypes.data % alignment == 0


class AlignedBufferPool:
    """Allocates and owns fixed-shape, aligned numpy buffers."""

    def __init__(self, alignment: int = ANE_ALIGNMENT):
        if alignment <= 0 or alignment & (alignment - 1):
            raise ValueError(f"alignment must be a positive power of two, got {alignment}")
        self.alignment = alignment
        self._buffers: List[np.ndarray] = []

    def __len__(self):
        return len(self._buffers)

    @property
    def total_bytes(self) -> int:
        return sum(buf.nbytes for buf in self._buffers)

    def allocate(self, shape: Iterable[int], dtype=np.float32) -> np.ndarray:
        """
        Allocate a C-contiguous buffer whose data pointer is aligned to ``self.alignment``.

        Contents are left uninitialized until the first ``copy_padded``.

        Raises:
            AllocationFailed: if the shape or dtype cannot be represented.
        """
        try:
            shape = tuple(int(d) for d in shape)
            dtype = np.dtype(dtype)
        except (TypeError, ValueError) as e:
            raise AllocationFailed(f"Invalid buffer request shape={shape!r} dtype={dtype!r}: {e}") from e

        if not shape or any(d <= 0 for d in shape):
            raise AllocationFailed(f"Invalid buffer shape {list(shape)}")
        if dtype not in SUPPORTED_DTYPES:
            raise AllocationFailed(f"Unsupported buffer dtype {dtype}")

        nbytes = int(np.prod(shape)) * dtype.itemsize
        try:
            raw = np.empty(nbytes + self.alignment, dtype=np.uint8)
        except (MemoryError, ValueError) as e:
            raise AllocationFailed(f"Could not allocate {nbytes} bytes for shape {list(shape)}: {e}") from e

        offset = (-raw.ctypes.data) % self.alignment
        buffer = raw[offset:offset + nbytes].view(dtype).reshape(shape)
        self._buffers.append(buffer)
        return buffer

    def copy_padded(self, source: ArrayLike, into: np.ndarray, pad_value=0) -> int:
        """
        Copy ``source`` into the start of ``into`` (flattened, row-major) and
        fill the remaining capacity with ``pad_value``.

        Elements beyond the buffer capacity are dropped.

        Returns:
            Number of elements copied from ``source``.
        """
        flat = into.reshape(-1)
        capacity = flat.size
        src = np.asarray(source, dtype=into.dtype).reshape(-1)

        count = min(src.size, capacity)
        if src.size > capacity:
            logger.debug(
                f"Truncating {src.size - capacity} elements: source has {src.size}, "
                f"buffer capacity is {capacity} {list(into.shape)}"
            )

        flat[:count] = src[:count]
        if count < capacity:
            flat[count:] = pad_value
        return count
