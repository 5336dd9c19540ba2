"""
Logical <-> physical index mapping for strided buffers.

A logical index enumerates the elements of an N-d array in row-major order
(last axis fastest). A physical offset is the position of that element in the
flat buffer, ``sum(coord[d] * strides[d])``. Strides are counted in elements,
not bytes. A stride of 0 marks a broadcast axis: every coordinate along it
aliases the same physical slot.
"""
import math
from dataclasses import dataclass
from typing import Any, Sequence, Tuple

import numpy as np


def to_physical(idx: int, dims: Sequence[int], strides: Sequence[int]) -> int:
    """
    Map a logical row-major index to a physical offset.

    Axes are decoded last to first so the fastest-varying coordinate comes out
    of the remainder of the first division.
    """
    offset = 0
    for d in reversed(range(len(dims))):
        offset += (idx % dims[d]) * strides[d]
        idx //= dims[d]
    return offset


def to_logical(offset: int, dims: Sequence[int], strides: Sequence[int]) -> int:
    """
    Map a physical offset back to the logical row-major index.

    Broadcast axes (stride 0) decode to coordinate 0; they are never divided by.
    For non-broadcast axes the strides must describe a compact buffer (a
    permutation of contiguous strides), otherwise the decode is ambiguous.
    """
    idx = 0
    for d in range(len(dims)):
        coord = 0 if strides[d] == 0 else (offset // strides[d]) % dims[d]
        idx = idx * dims[d] + coord
    return idx


def restrided(
    offset: int,
    dims: Sequence[int],
    strides: Sequence[int],
    new_strides: Sequence[int],
) -> int:
    """Offset under ``new_strides`` of the element found at ``offset`` under ``strides``."""
    return to_physical(to_logical(offset, dims, strides), dims, new_strides)


def physical_offsets(dims: Sequence[int], strides: Sequence[int], xp: Any = np) -> Any:
    """
    Vectorized :func:`to_physical` over every logical index.

    Returns
    -------
    numpy.ndarray or cupy.ndarray
        int64 array of length ``prod(dims)``; entry ``i`` is the physical
        offset of logical index ``i``.
    """
    numel = math.prod(dims)
    idx = xp.arange(numel, dtype=xp.int64)
    offsets = xp.zeros(numel, dtype=xp.int64)
    for d in reversed(range(len(dims))):
        offsets += (idx % dims[d]) * strides[d]
        idx //= dims[d]
    return offsets


@dataclass(frozen=True)
class ShapeDescriptor:
    """
    ``dims`` plus co-indexed element ``strides`` describing a strided view.

    Notes
    -----
    The descriptor carries no offset: every view the kernels see starts at
    physical slot 0 of its buffer.
    """
    dims: Tuple[int, ...]
    strides: Tuple[int, ...]

    def __post_init__(self):
        if len(self.dims) != len(self.strides):
            raise ValueError(
                f"dims {self.dims} and strides {self.strides} must have the same length"
            )

    @property
    def num_dims(self) -> int:
        return len(self.dims)

    @property
    def numel(self) -> int:
        return math.prod(self.dims)

    @property
    def physical_numel(self) -> int:
        """Number of distinct slots addressed, broadcast axes counted once."""
        return math.prod(n for n, s in zip(self.dims, self.strides) if s != 0)

    @staticmethod
    def contiguous(dims: Sequence[int]) -> "ShapeDescriptor":
        """Row-major descriptor: shape (3, 2) -> strides (2, 1)."""
        dims = tuple(int(n) for n in dims)
        strides = [1] * len(dims)
        for i in range(len(dims) - 2, -1, -1):
            strides[i] = strides[i + 1] * dims[i + 1]
        return ShapeDescriptor(dims, tuple(strides))

    def is_contiguous(self) -> bool:
        return self.strides == ShapeDescriptor.contiguous(self.dims).strides

    def broadcast_to(self, target: Sequence[int]) -> "ShapeDescriptor":
        """
        Broadcast to ``target`` with numpy's right-aligned rules.

        New leading axes and expanded size-1 axes get stride 0.
        Example: dims=(3, 1), target=(3, 4) -> strides=(s0, 0).

        Raises
        ------
        ValueError
            If a dimension is neither equal to the target nor 1.
        """
        target = tuple(int(n) for n in target)
        if len(target) < len(self.dims):
            raise ValueError(f"Cannot broadcast {self.dims} to fewer dims {target}")

        pad = len(target) - len(self.dims)
        dims = (1,) * pad + self.dims
        strides = (0,) * pad + self.strides

        new_strides = []
        for n, t, s in zip(dims, target, strides):
            if n == t:
                new_strides.append(s)
            elif n == 1:
                new_strides.append(0)
            else:
                raise ValueError(f"Impossible broadcast: {self.dims} -> {target}")
        return ShapeDescriptor(target, tuple(new_strides))

    def permute(self, order: Sequence[int]) -> "ShapeDescriptor":
        if sorted(order) != list(range(self.num_dims)):
            raise ValueError(f"Invalid permutation {tuple(order)} for dims {self.dims}")
        return ShapeDescriptor(
            tuple(self.dims[i] for i in order),
            tuple(self.strides[i] for i in order),
        )
