from dataclasses import dataclass
from typing import Any, ClassVar

from kernelgrad.backend import get_array_module
from kernelgrad.elementwise import BinaryDerivative


@dataclass(frozen=True)
class PReLUKernelOp(BinaryDerivative):
    """
    Parametric ReLU: leaky ReLU whose slope is a second input ``y``.

    Gradients: ``df/dx = y`` and ``df/dy = x`` where ``x < 0``; ``1`` and ``0``
    elsewhere.
    """
    name: ClassVar[str] = "prelu"

    def f(self, x: Any, y: Any) -> Any:
        xp = get_array_module(x, y)
        return xp.where(x < 0, x * y, x)

    def dfdx(self, x: Any, y: Any) -> Any:
        xp = get_array_module(x, y)
        return xp.where(x < 0, y, x.dtype.type(1))

    def dfdy(self, x: Any, y: Any) -> Any:
        xp = get_array_module(x, y)
        return xp.where(x < 0, x, x.dtype.type(0))
