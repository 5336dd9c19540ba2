"""
Host-side launchers: compute kernel metadata, allocate outputs, launch.

These functions operate on flat physical buffers plus a
:class:`~kernelgrad.indexing.ShapeDescriptor`. A buffer must be compact: every
slot is addressed by at least one logical index, and the non-broadcast
strides are a permutation of contiguous strides. :class:`~kernelgrad.tensor.Tensor`
keeps its buffers that way.
"""
from typing import Any, Optional, Sequence, Tuple, Union

from kernelgrad.backend import get_array_module
from kernelgrad.elementwise import binary_kernels, unary_kernels
from kernelgrad.indexing import ShapeDescriptor
from kernelgrad.kernels.fill import fill_with
from kernelgrad.kernels.max_to import max_to_backward, max_to_forward
from kernelgrad.log import get_logger
from kernelgrad.ops.leaky_relu import LeakyReLUKernelOp
from kernelgrad.ops.prelu import PReLUKernelOp

logger = get_logger(__name__)

Axes = Optional[Union[int, Sequence[int]]]


def normalize_axes(axes: Axes, ndim: int) -> Tuple[int, ...]:
    """
    Sorted, non-negative, duplicate-free reduction axes; None means all axes.

    Raises
    ------
    ValueError
        If an axis is out of range or repeated.
    """
    if axes is None:
        return tuple(range(ndim))
    if isinstance(axes, int):
        axes = (axes,)
    out = []
    for a in axes:
        a = int(a)
        if not -ndim <= a < ndim:
            raise ValueError(f"Axis {a} out of range for {ndim} dims")
        out.append(a % ndim)
    if len(set(out)) != len(out):
        raise ValueError(f"Repeated axis in {tuple(axes)}")
    return tuple(sorted(out))


def reduction_layout(shape: ShapeDescriptor, axes: Axes) -> Tuple[Tuple[int, ...], Tuple[int, ...], ShapeDescriptor, int]:
    """
    Lay a reduction out as contiguous logical chunks.

    The reduced axes are moved last so each output element owns a run of
    ``chunk_len`` consecutive logical indices.

    Returns
    -------
    axes : tuple of int
        Normalized reduced axes.
    kept : tuple of int
        Remaining axes, in order.
    permuted : ShapeDescriptor
        ``shape`` with ``kept + axes`` ordering.
    chunk_len : int
        Product of the reduced dims.
    """
    axes = normalize_axes(axes, shape.num_dims)
    kept = tuple(d for d in range(shape.num_dims) if d not in axes)
    permuted = shape.permute(kept + axes)
    chunk_len = 1
    for a in axes:
        chunk_len *= shape.dims[a]
    return axes, kept, permuted, chunk_len


def max_forward(
    buffer: Any,
    shape: ShapeDescriptor,
    axes: Axes = None,
    block_dim: Optional[int] = None,
) -> Any:
    """
    Max of the strided array ``(buffer, shape)`` over ``axes``.

    Returns
    -------
    array
        Flat output holding one value per kept-axes position, in row-major
        order of the kept axes.

    Raises
    ------
    ValueError
        If the array is empty or the axes are invalid.
    """
    if shape.numel == 0:
        raise ValueError(f"max of an empty array of shape {shape.dims}")
    axes, kept, permuted, chunk_len = reduction_layout(shape, axes)
    xp = get_array_module(buffer)

    out = xp.empty(shape.numel // chunk_len, dtype=buffer.dtype)
    fill_with(out, float("-inf"), out.size)
    logger.debug(f"max over axes {axes} of {shape.dims}: chunk_len={chunk_len} outputs={out.size}")
    max_to_forward(
        shape.numel, permuted.num_dims, chunk_len,
        buffer, permuted.dims, permuted.strides, out,
        block_dim=block_dim,
    )
    return out


def broadcasts_kept_axis(shape: ShapeDescriptor, axes: Axes) -> bool:
    """True when an axis outside ``axes`` repeats its slots (stride 0, extent > 1)."""
    axes = normalize_axes(axes, shape.num_dims)
    return any(
        shape.strides[d] == 0 and shape.dims[d] > 1
        for d in range(shape.num_dims)
        if d not in axes
    )


def max_backward(
    buffer: Any,
    shape: ShapeDescriptor,
    axes: Axes,
    out: Any,
    grad_out: Any,
    grad_inp: Any,
    block_dim: Optional[int] = None,
) -> None:
    """
    Accumulate the gradient of :func:`max_forward` into ``grad_inp``.

    ``grad_inp`` is laid out like ``buffer``. Every input equal to its chunk's
    maximum receives the full upstream gradient, ties included.

    Notes
    -----
    When ``shape`` broadcasts the buffer over reduced axes, each physical slot
    stands for ``numel / physical_numel`` logical elements of one chunk and its
    gradient is scaled by that factor.

    Raises
    ------
    ValueError
        If a kept axis is broadcast. Such a slot feeds several outputs with
        different upstream gradients; materialize the view first.
    """
    if broadcasts_kept_axis(shape, axes):
        raise ValueError(
            f"max backward over axes {axes} of {shape.dims} with strides {shape.strides}: "
            "kept axes must not be broadcast"
        )
    axes, kept, permuted, chunk_len = reduction_layout(shape, axes)
    out_desc = ShapeDescriptor.contiguous([shape.dims[d] for d in kept])
    out_strides = out_desc.strides + (0,) * len(axes)
    count = shape.physical_numel
    elems_per_thread = shape.numel / count

    max_to_backward(
        count, permuted.num_dims, elems_per_thread, permuted.dims,
        buffer, grad_inp, permuted.strides,
        out, grad_out, out_strides,
        block_dim=block_dim,
    )


def leaky_relu(x: Any, alpha: float) -> Any:
    xp = get_array_module(x)
    out = xp.empty_like(x)
    unary_kernels(LeakyReLUKernelOp, x.dtype).forward(x.size, x, out, LeakyReLUKernelOp(float(alpha)))
    return out


def leaky_relu_backward(x: Any, grad_x: Any, grad_out: Any, alpha: float) -> None:
    unary_kernels(LeakyReLUKernelOp, x.dtype).backward(
        x.size, x, grad_x, grad_out, LeakyReLUKernelOp(float(alpha))
    )


def prelu(x: Any, alpha: Any) -> Any:
    if x.shape != alpha.shape:
        raise ValueError(f"prelu operands must match, got {x.shape} and {alpha.shape}")
    xp = get_array_module(x, alpha)
    out = xp.empty_like(x)
    binary_kernels(PReLUKernelOp, x.dtype).forward(x.size, x, alpha, out, PReLUKernelOp())
    return out


def prelu_backward(
    x: Any,
    alpha: Any,
    grad_out: Any,
    grad_x: Optional[Any] = None,
    grad_alpha: Optional[Any] = None,
) -> None:
    kernels = binary_kernels(PReLUKernelOp, x.dtype)
    if grad_x is not None:
        kernels.backward_lhs(x.size, x, alpha, grad_x, grad_out, PReLUKernelOp())
    if grad_alpha is not None:
        kernels.backward_rhs(x.size, x, alpha, grad_alpha, grad_out, PReLUKernelOp())
