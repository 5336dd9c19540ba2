from dataclasses import dataclass
from typing import Any, ClassVar

from kernelgrad.backend import get_array_module
from kernelgrad.elementwise import UnaryDerivative


@dataclass(frozen=True)
class LeakyReLUKernelOp(UnaryDerivative):
    """
    Leaky ReLU with negative slope ``alpha``.

    ``f(x) = alpha * x`` for ``x < 0``, else ``x``;
    ``f'(x) = alpha`` for ``x < 0``, else ``1``.
    """
    name: ClassVar[str] = "leaky_relu"

    alpha: float

    def f(self, x: Any) -> Any:
        xp = get_array_module(x)
        return xp.where(x < 0, x * x.dtype.type(self.alpha), x)

    def df(self, x: Any) -> Any:
        xp = get_array_module(x)
        return xp.where(x < 0, x.dtype.type(self.alpha), x.dtype.type(1))
