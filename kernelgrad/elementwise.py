"""
Generic forward/backward kernels for elementwise operations.

An operation is a small value type implementing :class:`UnaryDerivative` or
:class:`BinaryDerivative`: the scalar function and one derivative per input,
written against the array module so the same definition runs on numpy and
cupy buffers. The kernels below are shared by every op; :func:`unary_kernels`
and :func:`binary_kernels` bind them to one op type and one precision.

All buffers are flat and addressed by the same index. Broadcasting is the
caller's job. Gradient buffers are always accumulated into (``+=``).
"""
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Type

import numpy as np

from kernelgrad.backend import check_dtype, dtype_suffix


class UnaryDerivative(ABC):
    name: ClassVar[str]

    @abstractmethod
    def f(self, x: Any) -> Any:
        """Forward value."""

    @abstractmethod
    def df(self, x: Any) -> Any:
        """``d f / d x``."""


class BinaryDerivative(ABC):
    name: ClassVar[str]

    @abstractmethod
    def f(self, x: Any, y: Any) -> Any:
        """Forward value."""

    @abstractmethod
    def dfdx(self, x: Any, y: Any) -> Any:
        """``d f / d x``."""

    @abstractmethod
    def dfdy(self, x: Any, y: Any) -> Any:
        """``d f / d y``."""


def unary_fwd(count: int, inp: Any, out: Any, op: UnaryDerivative) -> None:
    out[:count] = op.f(inp[:count])


def unary_bwd(count: int, inp: Any, grad_inp: Any, grad_out: Any, op: UnaryDerivative) -> None:
    grad_inp[:count] += grad_out[:count] * op.df(inp[:count])


def binary_fwd(count: int, lhs: Any, rhs: Any, out: Any, op: BinaryDerivative) -> None:
    out[:count] = op.f(lhs[:count], rhs[:count])


def binary_bwd_lhs(
    count: int, lhs: Any, rhs: Any, grad_lhs: Any, grad_out: Any, op: BinaryDerivative
) -> None:
    grad_lhs[:count] += grad_out[:count] * op.dfdx(lhs[:count], rhs[:count])


def binary_bwd_rhs(
    count: int, lhs: Any, rhs: Any, grad_rhs: Any, grad_out: Any, op: BinaryDerivative
) -> None:
    grad_rhs[:count] += grad_out[:count] * op.dfdy(lhs[:count], rhs[:count])


def _specialize(kernel: Callable[..., None], op_type: type, dtype: np.dtype, name: str) -> Callable[..., None]:
    """
    Bind ``kernel`` to one op type and one precision.

    The returned function has the kernel's signature and rejects buffers of
    another dtype or an op descriptor of another type with ``TypeError``.
    """
    @functools.wraps(kernel)
    def specialized(count: int, *args: Any) -> None:
        *buffers, op = args
        if not isinstance(op, op_type):
            raise TypeError(f"{name} expects a {op_type.__name__}, got {type(op).__name__}")
        for buf in buffers:
            if buf.dtype != dtype:
                raise TypeError(f"{name} expects {dtype} buffers, got {buf.dtype}")
        kernel(count, *args)

    specialized.__name__ = name
    specialized.__qualname__ = name
    return specialized


@dataclass(frozen=True)
class UnaryKernels:
    """Forward/backward pair of one unary op at one precision."""
    dtype: np.dtype
    forward: Callable[..., None]
    backward: Callable[..., None]


@dataclass(frozen=True)
class BinaryKernels:
    """Forward and per-operand backward kernels of one binary op at one precision."""
    dtype: np.dtype
    forward: Callable[..., None]
    backward_lhs: Callable[..., None]
    backward_rhs: Callable[..., None]


@functools.lru_cache(maxsize=None)
def _unary_kernels(op_type: Type[UnaryDerivative], dtype: np.dtype) -> UnaryKernels:
    sfx = dtype_suffix(dtype)
    return UnaryKernels(
        dtype=dtype,
        forward=_specialize(unary_fwd, op_type, dtype, f"{op_type.name}_fwd_{sfx}"),
        backward=_specialize(unary_bwd, op_type, dtype, f"{op_type.name}_bwd_{sfx}"),
    )


@functools.lru_cache(maxsize=None)
def _binary_kernels(op_type: Type[BinaryDerivative], dtype: np.dtype) -> BinaryKernels:
    sfx = dtype_suffix(dtype)
    return BinaryKernels(
        dtype=dtype,
        forward=_specialize(binary_fwd, op_type, dtype, f"{op_type.name}_fwd_{sfx}"),
        backward_lhs=_specialize(binary_bwd_lhs, op_type, dtype, f"{op_type.name}_bwd_lhs_{sfx}"),
        backward_rhs=_specialize(binary_bwd_rhs, op_type, dtype, f"{op_type.name}_bwd_rhs_{sfx}"),
    )


def unary_kernels(op_type: Type[UnaryDerivative], dtype: Any) -> UnaryKernels:
    """
    Kernel family of ``op_type`` for ``dtype`` (float32 or float64).

    Families are built once per (op type, precision) and cached.

    Raises
    ------
    TypeError
        If ``op_type`` is not a unary op or ``dtype`` is unsupported.
    """
    if not (isinstance(op_type, type) and issubclass(op_type, UnaryDerivative)):
        raise TypeError(f"{op_type!r} does not implement UnaryDerivative")
    return _unary_kernels(op_type, check_dtype(dtype))


def binary_kernels(op_type: Type[BinaryDerivative], dtype: Any) -> BinaryKernels:
    """Binary counterpart of :func:`unary_kernels`."""
    if not (isinstance(op_type, type) and issubclass(op_type, BinaryDerivative)):
        raise TypeError(f"{op_type!r} does not implement BinaryDerivative")
    return _binary_kernels(op_type, check_dtype(dtype))
