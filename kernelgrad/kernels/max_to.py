"""
Max reduction over chunks of a strided array, forward and backward.

The entry points take the flat argument lists a host launcher would pass to a
device kernel. numpy buffers run on the CPU execution model, cupy buffers on
the CUDA module. Nothing is validated here: ``numel % chunk_len == 0``, a
``-inf`` pre-filled output and consistent ``dims``/``strides`` are the
caller's contract.
"""
from typing import Any, Optional, Sequence

import numpy as np

from kernelgrad.atomics import atomic_add
from kernelgrad.backend import get_array_module
from kernelgrad.execution import ThreadContext, launch
from kernelgrad.indexing import restrided, to_physical
from kernelgrad.reduction import chunk_max


def max_to_fwd(
    ctx: ThreadContext,
    numel: int,
    num_dims: int,
    chunk_len: int,
    inp: np.ndarray,
    dims: Sequence[int],
    strides: Sequence[int],
    out: np.ndarray,
) -> None:
    i = ctx.global_idx
    if i >= numel:
        return
    x = inp[to_physical(i, dims[:num_dims], strides[:num_dims])]
    chunk_max(ctx, chunk_len, x, out)


def max_to_bwd(
    ctx: ThreadContext,
    numel: int,
    num_dims: int,
    elems_per_thread: float,
    dims: Sequence[int],
    inp: np.ndarray,
    grad_inp: np.ndarray,
    inp_strides: Sequence[int],
    out: np.ndarray,
    grad_out: np.ndarray,
    out_strides: Sequence[int],
) -> None:
    inp_i = ctx.global_idx
    if inp_i >= numel:
        return
    dims = dims[:num_dims]
    out_i = restrided(inp_i, dims, inp_strides[:num_dims], out_strides[:num_dims])
    # every tied maximum gets the full share, there is no division by tie count
    if inp[inp_i] == out[out_i]:
        atomic_add(grad_inp, inp_i, grad_out[out_i] * elems_per_thread)


def _as_index_tuple(values: Sequence[int]) -> tuple:
    return tuple(int(v) for v in values)


def max_to_forward(
    count: int,
    axis_count: int,
    chunk_len: int,
    inp: Any,
    dims: Sequence[int],
    strides: Sequence[int],
    out: Any,
    block_dim: Optional[int] = None,
) -> None:
    """
    ``out[k] = max(out[k], max of logical elements k*chunk_len ... (k+1)*chunk_len-1)``.

    Parameters
    ----------
    count : int
        Logical element count of ``inp`` (``prod(dims)``).
    axis_count : int
        Length of ``dims`` and ``strides``.
    chunk_len : int
        Elements per chunk; reduced axes must be the trailing logical axes.
    inp : array
        Flat physical input buffer.
    dims, strides : sequence of int
        Logical shape of ``inp`` and element strides into it.
    out : array
        Flat output of ``count // chunk_len`` slots, pre-filled with ``-inf``.
    block_dim : int, optional
        CPU simulator block size; ignored on CUDA.
    """
    if get_array_module(inp, out) is not np:
        from kernelgrad.kernels import cuda
        cuda.max_to_forward(count, axis_count, chunk_len, inp, dims, strides, out)
        return
    launch(
        max_to_fwd,
        count,
        count,
        axis_count,
        chunk_len,
        inp,
        _as_index_tuple(dims),
        _as_index_tuple(strides),
        out,
        block_dim=block_dim,
        shared_dtype=out.dtype,
    )


def max_to_backward(
    count: int,
    axis_count: int,
    elems_per_thread: float,
    dims: Sequence[int],
    inp: Any,
    grad_inp: Any,
    inp_strides: Sequence[int],
    out: Any,
    grad_out: Any,
    out_strides: Sequence[int],
    block_dim: Optional[int] = None,
) -> None:
    """
    Scatter ``grad_out`` back onto every input slot that equals its chunk max.

    One unit per *physical* input slot. Each slot's logical index is recovered
    with ``inp_strides`` (broadcast axes decode to 0) and re-mapped with
    ``out_strides``, which are the output's strides broadcast back over the
    reduced axes (0 there). ``elems_per_thread`` is the number of logical
    elements each physical slot stands for when ``inp`` is itself broadcast.

    ``grad_inp`` is accumulated into, never reset.
    """
    if get_array_module(inp, grad_inp, out, grad_out) is not np:
        from kernelgrad.kernels import cuda
        cuda.max_to_backward(
            count, axis_count, elems_per_thread, dims,
            inp, grad_inp, inp_strides, out, grad_out, out_strides,
        )
        return
    launch(
        max_to_bwd,
        count,
        count,
        axis_count,
        elems_per_thread,
        _as_index_tuple(dims),
        inp,
        grad_inp,
        _as_index_tuple(inp_strides),
        out,
        grad_out,
        _as_index_tuple(out_strides),
        block_dim=block_dim,
    )
