from typing import Any


def fill_with(buffer: Any, value: float, count: int) -> None:
    """Write ``value`` into the first ``count`` slots of a flat numpy/cupy buffer."""
    buffer[:count] = value
