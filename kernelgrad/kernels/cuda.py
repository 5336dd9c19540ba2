"""
CUDA implementations of the max reduction kernels, compiled at runtime by CuPy.

Every kernel is a C++ template instantiated for ``float`` and ``double``; the
Python entry points pick the instantiation from the buffer dtype. Argument
order matches the CPU kernels in :mod:`kernelgrad.kernels.max_to`.
"""
import functools
from typing import Any, Sequence

import numpy as np

from kernelgrad.backend import check_dtype, cp, has_cupy
from kernelgrad.config import get_config
from kernelgrad.log import get_logger

logger = get_logger(__name__)

_CTYPES = {np.dtype(np.float32): "float", np.dtype(np.float64): "double"}

MAX_TO_SOURCE = r"""
__device__ __forceinline__ size_t umin(size_t a, size_t b) { return a < b ? a : b; }
__device__ __forceinline__ size_t umax(size_t a, size_t b) { return a > b ? a : b; }

__device__ __forceinline__ size_t to_physical(
    size_t idx, size_t num_dims, const size_t *dims, const size_t *strides
) {
    size_t offset = 0;
    for (size_t d = num_dims; d-- > 0;) {
        offset += (idx % dims[d]) * strides[d];
        idx /= dims[d];
    }
    return offset;
}

__device__ __forceinline__ size_t to_logical(
    size_t offset, size_t num_dims, const size_t *dims, const size_t *strides
) {
    size_t idx = 0;
    for (size_t d = 0; d < num_dims; d++) {
        size_t coord = strides[d] == 0 ? 0 : (offset / strides[d]) % dims[d];
        idx = idx * dims[d] + coord;
    }
    return idx;
}

template <typename T>
__device__ __forceinline__ T max_op(T current, T candidate) {
    if (isnan(candidate) || candidate > current) return candidate;
    if (candidate == current && signbit(current) && !signbit(candidate)) return candidate;
    return current;
}

// Integer max on the bit pattern is monotonic only for non-negative floats;
// negative floats order the other way round as unsigned integers.
__device__ __forceinline__ float atomic_max(float *addr, float value) {
    if (signbit(value)) {
        return __uint_as_float(atomicMin((unsigned int *)addr, __float_as_uint(value)));
    }
    return __int_as_float(atomicMax((int *)addr, __float_as_int(value)));
}

__device__ __forceinline__ double atomic_max(double *addr, double value) {
    unsigned long long *bits = (unsigned long long *)addr;
    unsigned long long old = *bits, assumed;
    do {
        assumed = old;
        unsigned long long next = (unsigned long long)__double_as_longlong(
            max_op(__longlong_as_double((long long)assumed), value));
        if (next == assumed) break;
        old = atomicCAS(bits, assumed, next);
    } while (assumed != old);
    return __longlong_as_double((long long)old);
}

// Callers must have returned from out-of-range threads already.
template <typename T>
__device__ void chunk_max(size_t numel, size_t chunk_len, T value, T *out) {
    extern __shared__ unsigned char smem[];
    T *buf = reinterpret_cast<T *>(smem);

    size_t i = threadIdx.x;
    size_t block_start = (size_t)blockIdx.x * blockDim.x;
    size_t active = umin((size_t)blockDim.x, numel - block_start);
    size_t chunk = (block_start + i) / chunk_len;
    size_t start = umax(chunk * chunk_len, block_start) - block_start;
    size_t end = umin((chunk + 1) * chunk_len, block_start + active) - block_start;
    size_t span = umin(chunk_len, active);

    buf[i] = value;
    __syncthreads();

    size_t j = i - start;
    size_t n = end - start;
    size_t p = 1;
    while (p < span) p <<= 1;
    for (size_t stride = p / 2; stride > 0; stride /= 2) {
        if (j < stride && j + stride < n) {
            buf[i] = max_op(buf[i], buf[i + stride]);
        }
        __syncthreads();
    }

    if (j == 0) {
        atomic_max(out + chunk, buf[i]);
    }
}

template <typename T>
__global__ void max_to_fwd(
    size_t numel, size_t num_dims, size_t chunk_len,
    const T *inp, const size_t *dims, const size_t *strides, T *out
) {
    size_t i = (size_t)blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= numel) {
        return;
    }
    chunk_max(numel, chunk_len, inp[to_physical(i, num_dims, dims, strides)], out);
}

template <typename T>
__global__ void max_to_bwd(
    size_t numel, size_t num_dims, T elems_per_thread, const size_t *dims,
    const T *inp, T *grad_inp, const size_t *inp_strides,
    const T *out, const T *grad_out, const size_t *out_strides
) {
    size_t inp_i = (size_t)blockIdx.x * blockDim.x + threadIdx.x;
    if (inp_i >= numel) {
        return;
    }
    size_t i = to_logical(inp_i, num_dims, dims, inp_strides);
    size_t out_i = to_physical(i, num_dims, dims, out_strides);
    T d = inp[inp_i] == out[out_i] ? grad_out[out_i] : (T)0;
    grad_inp[inp_i] += d * elems_per_thread;
}
"""


def _name_expressions():
    return [
        f"{kernel}<{ctype}>"
        for kernel in ("max_to_fwd", "max_to_bwd")
        for ctype in _CTYPES.values()
    ]


@functools.lru_cache(maxsize=None)
def _module() -> Any:
    if not has_cupy():
        raise RuntimeError("CUDA requested but CuPy is not installed/available.")
    logger.info("compiling max_to CUDA module")
    module = cp.RawModule(
        code=MAX_TO_SOURCE,
        options=("-std=c++14",),
        name_expressions=_name_expressions(),
    )
    module.compile()
    return module


def get_kernel(name: str, dtype: Any) -> Any:
    """Compiled ``name<float|double>`` for ``dtype``."""
    return _module().get_function(f"{name}<{_CTYPES[check_dtype(dtype)]}>")


def _device_index_array(values: Sequence[int]) -> Any:
    return cp.asarray(np.asarray(values, dtype=np.uint64))


def _launch(kernel: Any, numel: int, dtype: Any, args: tuple) -> None:
    block = get_config().cuda_block_dim
    grid = -(-numel // block)
    if grid == 0:
        return
    logger.debug(f"cuda launch numel={numel} grid={grid} block={block}")
    kernel((grid,), (block,), args, shared_mem=block * np.dtype(dtype).itemsize)


def max_to_forward(
    count: int,
    axis_count: int,
    chunk_len: int,
    inp: Any,
    dims: Sequence[int],
    strides: Sequence[int],
    out: Any,
) -> None:
    kernel = get_kernel("max_to_fwd", out.dtype)
    args = (
        np.uint64(count),
        np.uint64(axis_count),
        np.uint64(chunk_len),
        inp,
        _device_index_array(dims),
        _device_index_array(strides),
        out,
    )
    _launch(kernel, count, out.dtype, args)


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
) -> None:
    dtype = inp.dtype
    kernel = get_kernel("max_to_bwd", dtype)
    args = (
        np.uint64(count),
        np.uint64(axis_count),
        dtype.type(elems_per_thread),
        _device_index_array(dims),
        inp,
        grad_inp,
        _device_index_array(inp_strides),
        out,
        grad_out,
        _device_index_array(out_strides),
    )
    _launch(kernel, count, dtype, args)
