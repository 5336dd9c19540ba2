import threading

import numpy as np
import pytest

from kernelgrad.atomics import atomic_add
from kernelgrad.execution import launch, launch_config, next_power_of_two
from kernelgrad.reduction import block_reduce


def test_next_power_of_two():
    assert [next_power_of_two(n) for n in (0, 1, 2, 3, 4, 5, 17, 64)] == [1, 1, 2, 4, 4, 8, 32, 64]


def test_launch_config_covers_numel():
    assert launch_config(10, 4).grid_dim == 3
    assert launch_config(8, 4).grid_dim == 2
    assert launch_config(0, 4).grid_dim == 0
    with pytest.raises(ValueError):
        launch_config(10, 0)


def test_every_in_range_unit_runs_once():
    hits = np.zeros(10, dtype=np.float64)

    def kernel(ctx, numel, hits):
        i = ctx.global_idx
        if i >= numel:
            return
        atomic_add(hits, i, 1.0)

    cfg = launch(kernel, 10, 10, hits, block_dim=4)
    assert (cfg.grid_dim, cfg.block_dim) == (3, 4)
    assert hits.tolist() == [1.0] * 10


def test_barrier_orders_shared_memory():
    out = np.zeros(12, dtype=np.float64)

    def rotate(ctx, numel, out):
        i = ctx.global_idx
        if i >= numel:
            return
        ctx.shared[ctx.thread_idx] = i
        ctx.sync()
        out[i] = ctx.shared[(ctx.thread_idx + 1) % ctx.active]

    launch(rotate, 12, 12, out, block_dim=5, shared_dtype=np.float64)
    assert out.tolist() == [1, 2, 3, 4, 0, 6, 7, 8, 9, 5, 11, 10]


def test_unit_exception_is_raised_from_launch():
    def kernel(ctx, numel):
        if ctx.global_idx >= numel:
            return
        if ctx.thread_idx == 2:
            raise ZeroDivisionError("unit 2")
        ctx.sync()

    with pytest.raises(ZeroDivisionError):
        launch(kernel, 8, 8, block_dim=4)


def test_block_reduce_with_sum_over_groups():
    # groups of 3 inside blocks of 8; the last group of each block is cut short
    values = np.arange(16, dtype=np.float64)
    out = np.zeros(16, dtype=np.float64)

    def kernel(ctx, numel, values, out):
        i = ctx.global_idx
        if i >= numel:
            return
        start = (ctx.thread_idx // 3) * 3
        end = min(start + 3, ctx.active)
        total = block_reduce(ctx, values[i], start, end, 3, lambda a, b: a + b)
        if total is not None:
            out[i] = total

    launch(kernel, 16, 16, values, out, block_dim=8, shared_dtype=np.float64)
    expected = np.zeros(16)
    for block in (0, 8):
        for start in (0, 3, 6):
            lo = block + start
            hi = block + min(start + 3, 8)
            expected[lo] = values[lo:hi].sum()
    assert out.tolist() == expected.tolist()


def test_units_run_concurrently_within_block():
    seen = []
    lock = threading.Lock()

    def kernel(ctx, numel):
        if ctx.global_idx >= numel:
            return
        with lock:
            seen.append(threading.get_ident())
        ctx.sync()

    launch(kernel, 6, 6, block_dim=6)
    assert len(set(seen)) == 6


def test_launch_config_default_comes_from_config(kernel_config):
    kernel_config(block_dim=3)
    assert launch_config(10).block_dim == 3
    assert launch_config(10, None).grid_dim == 4
