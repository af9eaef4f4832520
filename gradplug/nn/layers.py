"""
GradPlug Neural Network Layers
==============================

Layers built on bundled operations:
- Linear: affine map with optional bias
- MaskedLinear: affine map with an optional fixed connectivity mask
- MulConstant: multiplication by a fixed constant
- FakeQuantize: straight-through fake quantization with a scale buffer
"""

import math
from typing import Optional

import torch
import torch.nn as nn
from torch import Tensor

from ..ops import FakeQuantize as FakeQuantizeOp
from ..ops import LinearFunction, MaskedLinearFunction
from ..ops import MulConstant as MulConstantOp
from .module import OperationModule


# =============================================================================
# LINEAR
# =============================================================================

class Linear(OperationModule):
    """
    Linear layer delegating to ``LinearFunction``.

    Computes: x @ W^T + b

    Args:
        in_features: Size of input features
        out_features: Size of output features
        bias: Include bias term (default: True). When False the ``bias``
            name is still registered, holding None.

    Example:
        >>> layer = Linear(20, 30)
        >>> y = layer(torch.randn(128, 20))  # shape (128, 30)
    """

    def __init__(self, in_features: int, out_features: int, bias: bool = True):
        super().__init__()

        self.in_features = in_features
        self.out_features = out_features
        self.operation = LinearFunction()

        self.declare_parameter('weight', torch.empty(out_features, in_features))
        self.declare_parameter('bias', torch.empty(out_features) if bias else None)

        self.reset_parameters()

    def reset_parameters(self):
        """Kaiming uniform weights, fan-in scaled uniform bias."""
        nn.init.kaiming_uniform_(self.weight, a=math.sqrt(5))
        if self.bias is not None:
            bound = 1 / math.sqrt(self.in_features) if self.in_features > 0 else 0
            nn.init.uniform_(self.bias, -bound, bound)

    def extra_repr(self) -> str:
        return (f'in_features={self.in_features}, out_features={self.out_features}, '
                f'bias={self.bias is not None}')


class MaskedLinear(Linear):
    """
    Linear layer whose weight is multiplied by a fixed 0/1 mask.

    The mask is a buffer: it follows the module across devices and into
    ``state_dict`` but never receives gradients.

    Args:
        in_features: Size of input features
        out_features: Size of output features
        bias: Include bias term (default: True)
        mask: Tensor of shape (out_features, in_features), or None for a
            dense layer. The ``mask`` name is registered either way.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        mask: Optional[Tensor] = None,
    ):
        super().__init__(in_features, out_features, bias=bias)
        self.operation = MaskedLinearFunction()

        if mask is not None:
            if mask.shape != (out_features, in_features):
                raise ValueError(
                    f"mask must have shape {(out_features, in_features)}, "
                    f"got {tuple(mask.shape)}"
                )
            mask = mask.to(self.weight.dtype)
        self.declare_buffer('mask', mask)

    def operation_arguments(self, x):
        if self.mask is None:
            mask = torch.ones_like(self.weight, requires_grad=False)
        else:
            mask = self.mask
        return x, self.weight, mask, self.bias

    def extra_repr(self) -> str:
        density = 1.0 if self.mask is None else float(self.mask.mean())
        return f'{super().extra_repr()}, density={density:.3f}'


# =============================================================================
# ELEMENT-WISE
# =============================================================================

class MulConstant(OperationModule):
    """
    Multiply inputs by a fixed constant.

    Args:
        constant: The multiplier; not trainable
    """

    def __init__(self, constant: float):
        super().__init__()
        self.constant = constant
        self.operation = MulConstantOp()

    def operation_arguments(self, x):
        return x, self.constant

    def extra_repr(self) -> str:
        return f'constant={self.constant}'


class FakeQuantize(OperationModule):
    """
    Simulate integer quantization during training.

    Forward rounds to the grid ``scale * [qmin, qmax]``; backward passes
    gradients straight through where the input was not clipped.

    Args:
        scale: Grid spacing; stored as a buffer (default: 0.02)
        qmin: Lowest integer level (default: -128)
        qmax: Highest integer level (default: 127)
    """

    def __init__(self, scale: float = 0.02, qmin: int = -128, qmax: int = 127):
        super().__init__()
        if scale <= 0:
            raise ValueError(f"scale must be positive, got {scale}")
        if qmin >= qmax:
            raise ValueError(f"qmin must be below qmax, got {qmin} >= {qmax}")
        self.operation = FakeQuantizeOp(qmin=qmin, qmax=qmax)
        self.declare_buffer('scale', torch.tensor(float(scale)))

    def extra_repr(self) -> str:
        return (f'scale={float(self.scale):g}, qmin={self.operation.qmin}, '
                f'qmax={self.operation.qmax}')
