from typing import Any, Literal, Optional, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

SUPPORTED_DTYPES = (np.dtype(np.float32), np.dtype(np.float64))
"""tuple of numpy.dtype: Precisions every kernel family is instantiated for."""


def has_cupy() -> bool:
    return _HAS_CUPY


def is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    Safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)


def get_array_module(*arrays: Any) -> Any:
    """
    Return ``cupy`` if any of ``arrays`` lives on the GPU, otherwise ``numpy``.

    Kernel entry points use this to dispatch between the CUDA module and the
    CPU simulator, and elementwise ops use it to pick ``xp``.
    """
    for a in arrays:
        if is_cupy_array(a):
            return cp
    return np


_DeviceStr = Literal["cpu", "cuda"]
def normalize_device(device: Optional[Union[str, _DeviceStr]]) -> Optional[_DeviceStr]:
    """
    Normalize a device specifier to 'cpu', 'cuda', or None.

    Parameters
    ----------
    device : {None, 'cpu', 'cuda', str}
        Strings starting with 'cuda' (e.g. 'cuda:0') normalize to 'cuda'.

    Raises
    ------
    ValueError
        If ``device`` is a string that is neither 'cpu' nor starts with 'cuda'.

    Examples
    --------
    >>> normalize_device('cuda:1')
    'cuda'
    >>> normalize_device('gpu')
    Traceback (most recent call last):
        ...
    ValueError: Unknown device spec: 'gpu'
    """
    if device is None:
        return None
    if isinstance(device, str):
        dev = device.lower()
        if dev.startswith("cuda"):
            return "cuda"
        if dev == "cpu":
            return "cpu"
    raise ValueError(f"Unknown device spec: {device!r}")


def module_for_device(device: Optional[str]) -> Any:
    """Return the array module for ``device`` ('cpu' when None)."""
    dev = normalize_device(device) or "cpu"
    if dev == "cuda":
        if not _HAS_CUPY:
            raise RuntimeError("CUDA requested but CuPy is not installed/available.")
        return cp
    return np


def check_dtype(dtype: Any) -> np.dtype:
    """
    Normalize ``dtype`` and make sure a kernel family exists for it.

    Raises
    ------
    TypeError
        If ``dtype`` is not float32 or float64.
    """
    dt = np.dtype(dtype)
    if dt not in SUPPORTED_DTYPES:
        raise TypeError(f"Unsupported kernel dtype {dt}; expected float32 or float64")
    return dt


def dtype_suffix(dtype: Any) -> str:
    """'f32' / 'f64' suffix used in kernel names."""
    return "f%d" % (check_dtype(dtype).itemsize * 8)


def to_numpy(x: Any) -> np.ndarray:
    if is_cupy_array(x):
        return cp.asnumpy(x)
    return np.asarray(x)
