import numpy as np
import pytest

from kernelgrad import functional as F
from kernelgrad.elementwise import binary_kernels, unary_kernels
from kernelgrad.ops.leaky_relu import LeakyReLUKernelOp
from kernelgrad.ops.prelu import PReLUKernelOp
from tests.utils import assert_close, buf, to_numpy, xp_for


def test_leaky_relu_forward_backward(device, dtype):
    x = buf([-2.0, 3.0], device, dtype)
    out = xp_for(device).zeros(2, dtype=dtype)
    grad = buf([10.0, 10.0], device, dtype)
    k = unary_kernels(LeakyReLUKernelOp, dtype)
    op = LeakyReLUKernelOp(alpha=0.1)

    k.forward(2, x, out, op)
    assert_close(out, np.array([-0.2, 3.0]))

    # accumulates on top of what is already there
    k.backward(2, x, grad, buf([1.0, 1.0], device, dtype), op)
    assert_close(grad, np.array([10.1, 11.0]))


def test_leaky_relu_half_slope(device):
    x = buf([-2, -1, 1, 2], device)
    out = F.leaky_relu(x, 0.5)
    assert to_numpy(out).tolist() == [-1.0, -0.5, 1.0, 2.0]

    grad_x = xp_for(device).zeros(4, dtype=np.float32)
    F.leaky_relu_backward(x, grad_x, buf([1, 1, 1, 1], device), 0.5)
    assert to_numpy(grad_x).tolist() == [0.5, 0.5, 1.0, 1.0]


def test_leaky_relu_zero_is_not_negative():
    out = F.leaky_relu(buf([0.0, -0.0]), 0.3)
    assert out.tolist() == [0.0, 0.0]
    g = np.zeros(2, dtype=np.float32)
    F.leaky_relu_backward(buf([0.0, -0.0]), g, buf([1.0, 1.0]), 0.3)
    assert g.tolist() == [1.0, 1.0]


def test_prelu_forward_backward(device, dtype):
    x = buf([-2, -1, 1, 2], device, dtype)
    alpha = buf([0.25, 0.5, 0, 0], device, dtype)

    out = F.prelu(x, alpha)
    assert_close(out, np.array([-0.5, -0.5, 1.0, 2.0]))

    xp = xp_for(device)
    grad_x = xp.zeros(4, dtype=dtype)
    grad_alpha = xp.zeros(4, dtype=dtype)
    F.prelu_backward(x, alpha, buf([1, 1, 1, 1], device, dtype), grad_x, grad_alpha)
    assert_close(grad_x, np.array([0.25, 0.5, 1.0, 1.0]))
    assert_close(grad_alpha, np.array([-2.0, -1.0, 0.0, 0.0]))


def test_prelu_partial_backward_only_touches_requested():
    x = buf([-3.0, 4.0])
    alpha = buf([0.5, 0.5])
    grad_alpha = np.ones(2, dtype=np.float32)
    F.prelu_backward(x, alpha, buf([2.0, 2.0]), grad_alpha=grad_alpha)
    assert grad_alpha.tolist() == [-5.0, 1.0]


def test_prelu_rejects_shape_mismatch():
    with pytest.raises(ValueError):
        F.prelu(buf([1.0, 2.0]), buf([1.0]))


def test_kernel_names():
    assert unary_kernels(LeakyReLUKernelOp, np.float32).forward.__name__ == "leaky_relu_fwd_f32"
    assert unary_kernels(LeakyReLUKernelOp, np.float64).backward.__name__ == "leaky_relu_bwd_f64"
    k = binary_kernels(PReLUKernelOp, np.float32)
    assert (k.forward.__name__, k.backward_lhs.__name__, k.backward_rhs.__name__) == (
        "prelu_fwd_f32", "prelu_bwd_lhs_f32", "prelu_bwd_rhs_f32",
    )
    assert binary_kernels(PReLUKernelOp, np.float64).backward_rhs.__name__ == "prelu_bwd_rhs_f64"


def test_families_are_cached_per_precision():
    assert unary_kernels(LeakyReLUKernelOp, np.float32) is unary_kernels(LeakyReLUKernelOp, "float32")
    assert unary_kernels(LeakyReLUKernelOp, np.float32) is not unary_kernels(LeakyReLUKernelOp, np.float64)


def test_specialized_kernel_rejects_other_precision():
    k = unary_kernels(LeakyReLUKernelOp, np.float32)
    x = np.zeros(2, dtype=np.float64)
    with pytest.raises(TypeError):
        k.forward(2, x, np.zeros(2, dtype=np.float64), LeakyReLUKernelOp(0.1))


def test_specialized_kernel_rejects_other_op():
    k = binary_kernels(PReLUKernelOp, np.float32)
    x = np.zeros(2, dtype=np.float32)
    with pytest.raises(TypeError):
        k.forward(2, x, x, np.zeros(2, dtype=np.float32), LeakyReLUKernelOp(0.1))


def test_unsupported_dtype_and_op_type():
    with pytest.raises(TypeError):
        unary_kernels(LeakyReLUKernelOp, np.float16)
    with pytest.raises(TypeError):
        unary_kernels(PReLUKernelOp, np.float32)
    with pytest.raises(TypeError):
        binary_kernels(LeakyReLUKernelOp, np.float32)


def test_count_limits_the_touched_prefix():
    x = buf([-1.0, -1.0, -1.0])
    out = np.full(3, 7.0, dtype=np.float32)
    unary_kernels(LeakyReLUKernelOp, np.float32).forward(2, x, out, LeakyReLUKernelOp(0.5))
    assert out.tolist() == [-0.5, -0.5, 7.0]


def test_ops_are_value_types():
    assert LeakyReLUKernelOp(0.2) == LeakyReLUKernelOp(0.2)
    assert hash(PReLUKernelOp()) == hash(PReLUKernelOp())
