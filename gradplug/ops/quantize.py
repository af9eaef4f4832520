"""Fake quantization with a straight-through gradient estimator."""

from dataclasses import dataclass

import torch

from ..operation import register_operation


@register_operation(
    once_differentiable=True,
    skip_gradcheck=True,
    skip_reason="straight-through estimator returns a surrogate gradient",
)
@dataclass(frozen=True)
class FakeQuantize:
    """
    Round to a uniform integer grid and dequantize.

    Forward computes ``clamp(round(x / scale), qmin, qmax) * scale``. Backward
    passes the gradient straight through wherever the value was not clipped.

    Args:
        qmin: Lowest integer level (default: -128)
        qmax: Highest integer level (default: 127)

    Inputs:
        x: tensor to quantize
        scale: positive tensor broadcastable to ``x``; never differentiated
    """

    qmin: int = -128
    qmax: int = 127

    def forward(self, ctx, x, scale):
        levels = torch.round(x / scale)
        in_range = (levels >= self.qmin) & (levels <= self.qmax)
        ctx.save_for_backward(in_range)
        return torch.clamp(levels, self.qmin, self.qmax) * scale

    def backward(self, ctx, grad_output):
        (in_range,) = ctx.saved_tensors
        return grad_output * in_range, None
