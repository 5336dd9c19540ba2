import numpy as np
import torch

from kernelgrad.backend import module_for_device
from kernelgrad.tensor import Tensor

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def xp_for(device):
    return module_for_device(device)

def buf(values, device="cpu", dtype=np.float32):
    """Flat kernel buffer on ``device``."""
    return xp_for(device).asarray(np.asarray(values, dtype=dtype).reshape(-1))

def neg_inf(n, device="cpu", dtype=np.float32):
    return xp_for(device).full(n, -np.inf, dtype=dtype)

def tdata(t: Tensor):
    return to_numpy(t.data)

def tgrad(t: Tensor):
    return None if t.grad is None else to_numpy(t.grad)

def make_tensor(x_np: np.ndarray, requires_grad: bool = True, device: str = "cpu", dtype=np.float32) -> Tensor:
    return Tensor(np.asarray(x_np, dtype=dtype), requires_grad=requires_grad, device=device, dtype=dtype)

def make_torch(x_np: np.ndarray, requires_grad: bool = True, dtype=np.float32) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=dtype), requires_grad=requires_grad)

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def assert_grad_close(t: Tensor, tt: torch.Tensor, atol=ATOL, rtol=RTOL):
    assert t.grad is not None, "Tensor.grad is None"
    assert tt.grad is not None, "Torch grad is None"
    assert_close(tgrad(t), tt.grad.detach().cpu().numpy(), atol=atol, rtol=rtol)
