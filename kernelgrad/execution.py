"""
CPU execution model for data-parallel kernels.

A launch is a grid of blocks; a block is ``block_dim`` execution units that
share a small scratch buffer and a barrier. Every unit runs on its own thread,
so the barrier is a real synchronization point and unsynchronized shared
accesses are genuine races. Blocks run concurrently on a thread pool and can
only communicate through atomics on global buffers.

Units whose global index is past ``numel`` exist, as on a GPU, but the barrier
is sized to the in-range units only: a kernel must return from out-of-range
units *before* its first ``ctx.sync()``.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import numpy as np

from kernelgrad.config import get_config
from kernelgrad.log import get_logger

logger = get_logger(__name__)


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= ``n`` (1 for ``n <= 1``)."""
    return 1 << max(0, n - 1).bit_length()


@dataclass(frozen=True)
class LaunchConfig:
    grid_dim: int
    block_dim: int


def launch_config(numel: int, block_dim: Optional[int] = None) -> LaunchConfig:
    """One unit per element, ``ceil(numel / block_dim)`` blocks."""
    if block_dim is None:
        block_dim = get_config().block_dim
    if block_dim < 1:
        raise ValueError(f"block_dim must be positive, got {block_dim}")
    return LaunchConfig(grid_dim=-(-numel // block_dim), block_dim=block_dim)


class Block:
    """Per-block state: scratch memory plus a barrier over the in-range units."""
    def __init__(
        self,
        block_idx: int,
        block_dim: int,
        active: int,
        shared_dtype: Optional[Any] = None,
    ) -> None:
        self.block_idx = block_idx
        self.block_dim = block_dim
        self.active = active
        self.shared = np.empty(block_dim, dtype=shared_dtype) if shared_dtype is not None else None
        self.barrier = threading.Barrier(active, timeout=get_config().barrier_timeout)


@dataclass
class ThreadContext:
    """What a kernel sees of its own position in the launch."""
    block: Block
    thread_idx: int

    @property
    def block_idx(self) -> int:
        return self.block.block_idx

    @property
    def block_dim(self) -> int:
        return self.block.block_dim

    @property
    def active(self) -> int:
        """Number of in-range units in this block."""
        return self.block.active

    @property
    def block_start(self) -> int:
        return self.block.block_idx * self.block.block_dim

    @property
    def global_idx(self) -> int:
        return self.block_start + self.thread_idx

    @property
    def shared(self) -> np.ndarray:
        return self.block.shared

    def sync(self) -> None:
        """Block-wide barrier; returns once every in-range unit has arrived."""
        self.block.barrier.wait()


def _run_block(kernel: Callable[..., None], block: Block, args: tuple) -> None:
    errors: List[BaseException] = []

    def unit(thread_idx: int) -> None:
        try:
            kernel(ThreadContext(block, thread_idx), *args)
        except BaseException as exc:
            errors.append(exc)
            block.barrier.abort()

    threads = [threading.Thread(target=unit, args=(t,)) for t in range(block.block_dim)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    if errors:
        # the unit that broke the barrier is more interesting than the ones it woke
        primary = [e for e in errors if not isinstance(e, threading.BrokenBarrierError)]
        raise (primary or errors)[0]


def launch(
    kernel: Callable[..., None],
    numel: int,
    *args: Any,
    block_dim: Optional[int] = None,
    shared_dtype: Optional[Any] = None,
) -> LaunchConfig:
    """
    Run ``kernel(ctx, *args)`` once per execution unit of a 1-d grid.

    Parameters
    ----------
    kernel : callable
        Per-unit body. Receives a :class:`ThreadContext` and ``args``.
    numel : int
        Number of in-range units; the grid covers it with whole blocks.
    block_dim : int, optional
        Units per block. Defaults to ``KernelConfig.block_dim``.
    shared_dtype : dtype, optional
        If given, every block gets a ``block_dim``-long scratch buffer.

    Returns
    -------
    LaunchConfig
        The geometry that was used.

    Raises
    ------
    Exception
        The first exception raised by any unit, after all blocks finished.
    """
    cfg = launch_config(numel, block_dim)
    if cfg.grid_dim == 0:
        return cfg

    name = getattr(kernel, "__name__", repr(kernel))
    logger.debug(f"launch {name}: numel={numel} grid={cfg.grid_dim} block={cfg.block_dim}")

    blocks = [
        Block(b, cfg.block_dim, min(cfg.block_dim, numel - b * cfg.block_dim), shared_dtype)
        for b in range(cfg.grid_dim)
    ]
    with ThreadPoolExecutor(max_workers=get_config().workers) as pool:
        futures = [pool.submit(_run_block, kernel, block, args) for block in blocks]
        for f in futures:
            f.result()
    return cfg
