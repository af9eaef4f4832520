"""Bundled differentiable operations.

Importing this package registers every operation below.
"""

from .linear import LinearFunction, MaskedLinearFunction
from .elementwise import MulConstant, MulConstantInplace, Exp, Cube
from .sort import Sort
from .quantize import FakeQuantize

__all__ = [
    'LinearFunction',
    'MaskedLinearFunction',
    'MulConstant',
    'MulConstantInplace',
    'Exp',
    'Cube',
    'Sort',
    'FakeQuantize',
]
