"""Neural network components for GradPlug."""

from .module import OperationModule
from .layers import (
    Linear,
    MaskedLinear,
    MulConstant,
    FakeQuantize,
)

__all__ = [
    # Base
    'OperationModule',
    # Layers
    'Linear',
    'MaskedLinear',
    'MulConstant',
    'FakeQuantize',
]
