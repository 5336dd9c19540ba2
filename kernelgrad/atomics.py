"""
Atomic read-modify-write on single slots of numpy buffers.

Python offers no compare-and-swap on array memory, so every update runs under
a lock. Locks are striped by the slot's memory address: two views of the same
memory always agree on the lock, and unrelated slots rarely contend.
"""
import math
import threading
from typing import Callable

import numpy as np

_NUM_STRIPES = 256
_STRIPES = [threading.Lock() for _ in range(_NUM_STRIPES)]


def _lock_for(buffer: np.ndarray, index: int) -> threading.Lock:
    address = buffer.ctypes.data + index * buffer.strides[0]
    return _STRIPES[(address // buffer.itemsize) % _NUM_STRIPES]


def atomic_update(
    buffer: np.ndarray,
    index: int,
    combine: Callable[[float, float], float],
    value: float,
) -> float:
    """
    Atomically set ``buffer[index] = combine(buffer[index], value)``.

    Returns
    -------
    float
        The value held before the update.
    """
    with _lock_for(buffer, index):
        old = buffer[index]
        buffer[index] = combine(old, value)
    return old


def float_max(current: float, candidate: float) -> float:
    """
    ``max`` over IEEE floats: ``+0.0`` beats ``-0.0`` and a NaN candidate wins.

    A NaN already stored stays, since nothing compares greater than it.
    """
    if math.isnan(candidate) or candidate > current:
        return candidate
    if candidate == current == 0.0 and math.copysign(1.0, current) < 0.0 < math.copysign(1.0, candidate):
        return candidate
    return current


def float_add(current: float, value: float) -> float:
    return current + value


def atomic_max(buffer: np.ndarray, index: int, candidate: float) -> float:
    """Atomic ``buffer[index] = max(buffer[index], candidate)``; returns the old value."""
    return atomic_update(buffer, index, float_max, candidate)


def atomic_add(buffer: np.ndarray, index: int, value: float) -> float:
    """Atomic ``buffer[index] += value``; returns the old value."""
    return atomic_update(buffer, index, float_add, value)
