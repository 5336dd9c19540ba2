from typing import Any, Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from kernelgrad import functional as F
from kernelgrad.backend import (
    check_dtype,
    cp,
    has_cupy,
    is_cupy_array,
    module_for_device,
    normalize_device,
    to_numpy,
)
from kernelgrad.indexing import ShapeDescriptor, physical_offsets

_grad_enabled = True
"""bool: Global flag indicating whether automatic differentiation is enabled.

Toggled by the :class:``no_grad`` context manager.
"""

class no_grad:
    """
    Context manager that temporarily disables gradient tracking.

    Nested contexts restore the previous state on exit.

    Examples
    --------
    >>> with no_grad():
    ...     y = x.leaky_relu(0.1)   # y.requires_grad is False
    """
    def __enter__(self):
        global _grad_enabled
        self.prev = _grad_enabled
        _grad_enabled = False

    def __exit__(self, *args):
        global _grad_enabled
        _grad_enabled = self.prev


def _scatter_add(target: Any, offsets: Any, values: Any) -> None:
    """``target[offsets] += values`` with repeated offsets summed (flat arrays)."""
    if is_cupy_array(target):
        import cupyx
        cupyx.scatter_add(target, offsets, values)
    else:
        np.add.at(target, offsets, values)


class Tensor:
    """
    A strided view over a flat buffer, with a minimal autograd tape.

    This is the host side of the kernels: it owns buffers, derives ``dims`` and
    ``strides`` for every launch and records backward closures. It supports
    only what the kernels need: ``max``, ``leaky_relu``, ``prelu``,
    ``broadcast_to`` and ``contiguous``.

    Notes
    -----
    - ``buffer`` is a C-contiguous numpy (CPU) or cupy (CUDA) array. ``view``
      addresses ``buffer.reshape(-1)``; several tensors may share one buffer
      with different views (``broadcast_to``).
    - ``grad`` is laid out like ``buffer``, not like the logical shape: a
      gradient reaching a broadcast view is summed into the slots it aliases.
    - Supported dtypes are float32 (default) and float64.
    """
    def __init__(
        self,
        data: Any,
        _prev: Iterable["Tensor"] = (),
        requires_grad: bool = False,
        device: Optional[str] = None,
        dtype: Any = np.float32,
    ) -> None:
        """
        Construct a contiguous tensor from array-like data.

        Parameters
        ----------
        data : Any
            Array-like input (Python list, ``numpy.ndarray`` or ``cupy.ndarray``).
            If ``device`` is None, the device is inferred from ``data``.
        _prev : Iterable[Tensor], optional
            Internal: parents in the computation graph.
        requires_grad : bool, default False
            Track operations and accumulate gradients into ``.grad``
            (ignored inside :class:`no_grad`).
        device : {'cpu', 'cuda', 'cuda:0', ...} or None, optional
            Target device.
        dtype : float32 or float64, default float32

        Raises
        ------
        RuntimeError
            If ``device`` requests CUDA but CuPy is not installed/available.
        TypeError
            If ``dtype`` is not float32 or float64.
        """
        dt = check_dtype(dtype)
        dev = normalize_device(device)
        if dev is None:
            dev = "cuda" if is_cupy_array(data) else "cpu"
        xp = module_for_device(dev)

        data = xp.ascontiguousarray(xp.asarray(data, dtype=dt))
        self._init(data, ShapeDescriptor.contiguous(data.shape), _prev, requires_grad)

    def _init(
        self,
        buffer: Any,
        view: ShapeDescriptor,
        _prev: Iterable["Tensor"],
        requires_grad: bool,
    ) -> None:
        self.backend = cp if is_cupy_array(buffer) else np
        self.buffer = buffer
        self.view = view
        self.requires_grad = bool(requires_grad) and _grad_enabled
        self.grad = self.backend.zeros_like(self.buffer) if self.requires_grad else None

        self._backward = lambda: None
        self._prev = set(_prev)

    @staticmethod
    def _from_view(
        buffer: Any,
        view: ShapeDescriptor,
        _prev: Iterable["Tensor"] = (),
        requires_grad: bool = False,
    ) -> "Tensor":
        t = Tensor.__new__(Tensor)
        t._init(buffer, view, _prev, requires_grad)
        return t

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: Logical shape."""
        return self.view.dims

    @property
    def ndim(self) -> int:
        return self.view.num_dims

    @property
    def size(self) -> int:
        """int: Number of logical elements."""
        return self.view.numel

    @property
    def dtype(self) -> np.dtype:
        return self.buffer.dtype

    @property
    def device(self) -> str:
        return "cuda" if self.backend is not np else "cpu"

    @property
    def flat(self) -> Any:
        """The buffer as the 1-d array the kernels address (a view, not a copy)."""
        return self.buffer.reshape(-1)

    def is_compact(self) -> bool:
        """True when the view is plain row-major over the whole buffer."""
        return self.view.is_contiguous() and self.buffer.size == self.view.numel

    @property
    def data(self) -> Any:
        """Logical array (materialized when the view is not compact)."""
        if self.is_compact():
            return self.buffer.reshape(self.shape)
        offsets = physical_offsets(self.view.dims, self.view.strides, self.backend)
        return self.flat[offsets].reshape(self.shape)

    def numpy(self) -> np.ndarray:
        return np.array(to_numpy(self.data))

    def max(
        self,
        dim: Optional[Union[int, Tuple[int, ...]]] = None,
        keepdim: bool = False,
    ) -> "Tensor":
        """
        Maximum over ``dim`` (all axes when None).

        Parameters
        ----------
        dim : int or tuple of int, optional
            Axes to reduce.
        keepdim : bool, default False
            Keep reduced axes with length 1.

        Returns
        -------
        Tensor
            A new contiguous tensor.

        Notes
        -----
        **Gradient behavior:** every element equal to the maximum of its group
        receives the *full* upstream gradient. Ties are not divided by their
        count, so the gradient of ``[1, 5, 5, 2].max()`` is ``[0, 1, 1, 0]``.
        This differs from ``torch.amax``, which splits ties evenly.

        Examples
        --------
        >>> x = Tensor([[1, 2], [7, 3]], requires_grad=True)
        >>> y = x.max(dim=1)
        >>> y.data
        array([2., 7.], dtype=float32)
        >>> y.backward()
        >>> x.grad
        array([[0., 1.],
               [1., 0.]], dtype=float32)
        """
        axes = F.normalize_axes(dim, self.ndim)
        # a broadcast kept axis sends different upstream grads to one slot
        x = self._compact() if F.broadcasts_kept_axis(self.view, axes) else self

        out_flat = F.max_forward(x.flat, x.view, axes)
        if keepdim:
            out_shape = tuple(1 if d in axes else n for d, n in enumerate(self.shape))
        else:
            out_shape = tuple(n for d, n in enumerate(self.shape) if d not in axes)

        out = Tensor._from_view(
            out_flat.reshape(out_shape),
            ShapeDescriptor.contiguous(out_shape),
            _prev=(x,),
            requires_grad=x.requires_grad,
        )

        def _backward():
            F.max_backward(x.flat, x.view, axes, out.flat, out.grad.reshape(-1), x.grad.reshape(-1))
        out._backward = _backward

        return out

    def leaky_relu(self, alpha: float) -> "Tensor":
        """
        Element-wise leaky ReLU, ``x if x >= 0 else alpha * x``.

        **Gradient:** ``1`` for ``x >= 0``, ``alpha`` otherwise.

        Examples
        --------
        >>> Tensor([-2.0, 3.0]).leaky_relu(0.1).data
        array([-0.2,  3. ], dtype=float32)
        """
        x = self._compact()
        out_data = F.leaky_relu(x.flat, alpha)
        out = Tensor._from_view(
            out_data.reshape(x.buffer.shape), x.view, _prev=(x,), requires_grad=x.requires_grad
        )

        def _backward():
            F.leaky_relu_backward(x.flat, x.grad.reshape(-1), out.grad.reshape(-1), alpha)
        out._backward = _backward

        return out

    def prelu(self, alpha: Union["Tensor", Any]) -> "Tensor":
        """
        Element-wise parametric ReLU with a learnable slope tensor.

        Parameters
        ----------
        alpha : Tensor or array-like
            Slopes; broadcast to ``self.shape`` (numpy rules) if needed.

        Notes
        -----
        **Gradients:** ``d/dx = alpha`` and ``d/dalpha = x`` where ``x < 0``,
        ``1`` and ``0`` elsewhere. When ``alpha`` is broadcast, its gradient is
        summed over the broadcast positions.
        """
        alpha = Tensor._ensure_tensor(alpha, self.backend, self.dtype)
        if alpha.shape != self.shape:
            alpha = alpha.broadcast_to(self.shape)
        x = self._compact()
        a = alpha._compact()

        out_data = F.prelu(x.flat, a.flat)
        out = Tensor._from_view(
            out_data.reshape(x.buffer.shape),
            x.view,
            _prev=(x, a),
            requires_grad=x.requires_grad or a.requires_grad,
        )

        def _backward():
            F.prelu_backward(
                x.flat,
                a.flat,
                out.grad.reshape(-1),
                grad_x=x.grad.reshape(-1) if x.requires_grad else None,
                grad_alpha=a.grad.reshape(-1) if a.requires_grad else None,
            )
        out._backward = _backward

        return out

    def broadcast_to(self, shape: Sequence[int]) -> "Tensor":
        """
        Broadcast to ``shape`` without copying: the result shares ``buffer``.

        Raises
        ------
        ValueError
            If the shapes are not broadcast-compatible.
        """
        out = Tensor._from_view(
            self.buffer,
            self.view.broadcast_to(shape),
            _prev=(self,),
            requires_grad=self.requires_grad,
        )

        def _backward():
            Tensor._accumulate_grad(self, out.grad)
        out._backward = _backward

        return out

    def contiguous(self) -> "Tensor":
        """
        Materialize the view into a fresh compact buffer.

        During backpropagation the gradient is scatter-added back through the
        view, so every aliased slot collects the sum of its copies.
        """
        offsets = physical_offsets(self.view.dims, self.view.strides, self.backend)
        out = Tensor._from_view(
            self.flat[offsets].reshape(self.shape),
            ShapeDescriptor.contiguous(self.shape),
            _prev=(self,),
            requires_grad=self.requires_grad,
        )

        def _backward():
            if self.requires_grad:
                _scatter_add(self.grad.reshape(-1), offsets, out.grad.reshape(-1))
        out._backward = _backward

        return out

    def _compact(self) -> "Tensor":
        return self if self.is_compact() else self.contiguous()

    def backward(
        self,
        gradient: Optional[Any] = None,
    ) -> None:
        """
        Backpropagate from this tensor through the recorded graph.

        Parameters
        ----------
        gradient : array-like, optional
            Gradient with respect to this tensor, in its logical shape. Defaults
            to ones, which also allows non-scalar roots.

        Raises
        ------
        RuntimeError
            If the tensor does not require gradient.
        """
        if not self.requires_grad:
            raise RuntimeError("Tensor does not require gradient")
        if gradient is None:
            seed = self.backend.ones(self.shape, dtype=self.dtype)
        else:
            seed = self.backend.asarray(gradient, dtype=self.dtype).reshape(self.shape)

        if self.is_compact():
            self.grad = self.backend.ascontiguousarray(seed.reshape(self.buffer.shape))
        else:
            self.grad = self.backend.zeros_like(self.buffer)
            offsets = physical_offsets(self.view.dims, self.view.strides, self.backend)
            _scatter_add(self.grad.reshape(-1), offsets, seed.reshape(-1))

        visited = set()
        topo = []

        def build_topo(t):
            if t not in visited:
                visited.add(t)
                for child in t._prev:
                    build_topo(child)
                topo.append(t)

        build_topo(self)

        for t in reversed(topo):
            if t.requires_grad:
                t._backward()

    def zero_grad(self) -> None:
        """Reset ``.grad`` to zeros in place (no-op without ``requires_grad``)."""
        if self.requires_grad:
            self.grad = self.backend.zeros_like(self.buffer)

    def to(self, device: str) -> "Tensor":
        """
        Move buffer and gradient to ``device`` in place and return ``self``.

        Raises
        ------
        RuntimeError
            If ``"cuda"`` is requested but CuPy is not installed/available.
        """
        dev = normalize_device(device)
        if dev == "cpu" and self.backend is not np:
            self.buffer = cp.asnumpy(self.buffer)
            self.grad = cp.asnumpy(self.grad) if self.grad is not None else None
            self.backend = np
        elif dev == "cuda" and self.backend is np:
            if not has_cupy():
                raise RuntimeError("CUDA requested but CuPy is not installed/available.")
            self.buffer = cp.asarray(self.buffer)
            self.grad = cp.asarray(self.grad) if self.grad is not None else None
            self.backend = cp
        return self

    def __repr__(self) -> str:
        data_str = np.array2string(self.numpy(), separator=', ', prefix='tensor(')
        return (
            f"tensor({data_str}, dtype={self.dtype}, requires_grad={self.requires_grad}, "
            f"device='{self.device}')"
        )

    @staticmethod
    def _ensure_tensor(
        x: Union["Tensor", Any],
        backend: Any,
        dtype: Any,
    ) -> "Tensor":
        """Wrap scalars and array-likes as a tensor on ``backend`` with ``dtype``."""
        if isinstance(x, Tensor):
            return x
        return Tensor(x, device="cuda" if backend is not np else "cpu", dtype=dtype)

    @staticmethod
    def _accumulate_grad(
        tensor: "Tensor",
        grad: Any,
    ) -> None:
        """
        Add ``grad`` (laid out like ``tensor.buffer``) into ``tensor.grad``.

        Gradients accumulate because a tensor may reach the output through
        several paths. No-op when ``tensor.requires_grad`` is False.
        """
        if tensor.requires_grad:
            if tensor.grad is None:
                tensor.grad = grad.copy()
            else:
                tensor.grad += grad
