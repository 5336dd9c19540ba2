from typing import Callable, Optional

import numpy as np

from kernelgrad.atomics import atomic_max, float_max
from kernelgrad.execution import ThreadContext, next_power_of_two


def block_reduce(
    ctx: ThreadContext,
    value: float,
    group_start: int,
    group_end: int,
    span: int,
    combine: Callable[[float, float], float],
) -> Optional[float]:
    """
    Cooperatively reduce the group ``[group_start, group_end)`` of a block.

    Every in-range unit of the block must call this with its own value; groups
    partition the block's shared buffer. The reduction is a sequential-addressing
    tree: at each step the lower half of the group folds in the upper half, with
    a barrier between steps.

    Parameters
    ----------
    ctx : ThreadContext
        The calling unit. ``ctx.shared`` must be allocated.
    value : float
        This unit's contribution, stored at ``ctx.thread_idx``.
    group_start, group_end : int
        Block-local bounds of the caller's group.
    span : int
        Upper bound on any group length in this block. It must be the same for
        every unit of the block so all of them hit the same number of barriers.
    combine : callable
        Associative binary function.

    Returns
    -------
    float or None
        The group's reduced value for the unit at ``group_start``, None for the
        rest.
    """
    buf = ctx.shared
    i = ctx.thread_idx
    buf[i] = value
    ctx.sync()

    j = i - group_start
    n = group_end - group_start
    stride = next_power_of_two(span) // 2
    while stride > 0:
        if j < stride and j + stride < n:
            buf[i] = combine(buf[i], buf[i + stride])
        ctx.sync()
        stride //= 2

    return buf[i] if j == 0 else None


def chunk_max(ctx: ThreadContext, chunk_len: int, value: float, out: np.ndarray) -> None:
    """
    Fold ``value`` into ``out[global_idx // chunk_len]``.

    A chunk may straddle blocks: each block reduces the fragment it holds and
    the fragment leaders combine through :func:`atomic_max`, so ``out`` must
    start at ``-inf``.
    """
    chunk = ctx.global_idx // chunk_len
    block_end = ctx.block_start + ctx.active
    start = max(chunk * chunk_len, ctx.block_start) - ctx.block_start
    end = min((chunk + 1) * chunk_len, block_end) - ctx.block_start

    partial = block_reduce(ctx, value, start, end, min(chunk_len, ctx.active), float_max)
    if partial is not None:
        atomic_max(out, chunk, partial)
