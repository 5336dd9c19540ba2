import functools
import os
from dataclasses import dataclass, fields, replace
from typing import Any


@functools.lru_cache(maxsize=None)
def getenv(key: str, default: Any = 0) -> Any:
    """Read ``key`` from the environment, cast to the type of ``default``."""
    return type(default)(os.getenv(key, default))


@dataclass(frozen=True)
class KernelConfig:
    """
    Launch-time settings shared by the CPU simulator and the CUDA backend.

    Attributes
    ----------
    block_dim : int
        Execution units per block for the CPU simulator.
    cuda_block_dim : int
        Threads per block for CUDA launches (at most 1024).
    workers : int
        Blocks the CPU simulator runs concurrently.
    barrier_timeout : float
        Seconds a unit may wait at a block barrier before the barrier breaks.
    log_level : str
        Level of the ``kernelgrad`` logger.
    """
    block_dim: int = 64
    cuda_block_dim: int = 256
    workers: int = 4
    barrier_timeout: float = 30.0
    log_level: str = "WARNING"

    @staticmethod
    def from_env() -> "KernelConfig":
        return KernelConfig(
            block_dim=getenv("KERNELGRAD_BLOCK_DIM", 64),
            cuda_block_dim=getenv("KERNELGRAD_CUDA_BLOCK_DIM", 256),
            workers=getenv("KERNELGRAD_WORKERS", 4),
            barrier_timeout=getenv("KERNELGRAD_BARRIER_TIMEOUT", 30.0),
            log_level=getenv("KERNELGRAD_LOG_LEVEL", "WARNING").upper(),
        )


_config = KernelConfig.from_env()


def get_config() -> KernelConfig:
    return _config


def configure(**overrides: Any) -> KernelConfig:
    """
    Replace selected settings for the rest of the process.

    Returns the previous configuration so callers (tests, mostly) can restore it
    with ``configure(**dataclasses.asdict(previous))``.

    Raises
    ------
    ValueError
        If an unknown setting is given or a block dimension is not positive.
    """
    global _config
    known = {f.name for f in fields(KernelConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown kernel config keys: {sorted(unknown)}")
    new = replace(_config, **overrides)
    if new.block_dim < 1 or new.cuda_block_dim < 1 or new.workers < 1:
        raise ValueError(f"Block dims and workers must be positive, got {new}")
    if new.cuda_block_dim > 1024:
        raise ValueError(f"cuda_block_dim must be <= 1024, got {new.cuda_block_dim}")

    previous, _config = _config, new
    if new.log_level != previous.log_level:
        from kernelgrad.log import set_level
        set_level(new.log_level)
    return previous
