"""Element-wise differentiable operations."""

from dataclasses import dataclass

import torch

from ..operation import register_operation


def _unary_samples():
    gen = torch.Generator().manual_seed(0)
    x = torch.randn(3, 4, dtype=torch.float64, generator=gen, requires_grad=True)
    return {}, (x,)


def _mul_constant_samples():
    _, (x,) = _unary_samples()
    return {}, (x, 2.5)


def _mul_constant_inplace_samples():
    # The in-place op cannot run on a leaf that requires grad; the check
    # clones it first.
    _, (x,) = _unary_samples()
    return {}, (x, -1.5)


@register_operation(schema=("constant",), sample_inputs=_mul_constant_samples)
@dataclass(frozen=True)
class MulConstant:
    """
    Multiply a tensor by a non-differentiable constant.

    Inputs:
        tensor: any shape
        constant: Python number

    Backward returns ``grad_output * constant`` for the tensor and None for
    the constant.
    """

    def forward(self, ctx, tensor, constant):
        ctx["constant"] = constant
        return tensor * constant

    def backward(self, ctx, grad_output):
        return grad_output * ctx["constant"], None


@register_operation("mul_constant_", schema=("constant",), sample_inputs=_mul_constant_inplace_samples)
@dataclass(frozen=True)
class MulConstantInplace:
    """
    In-place variant of ``MulConstant``.

    Mutates its tensor input and marks it dirty. The input must not be a
    leaf that requires grad.
    """

    def forward(self, ctx, tensor, constant):
        ctx["constant"] = constant
        tensor.mul_(constant)
        ctx.mark_dirty(tensor)
        return tensor

    def backward(self, ctx, grad_output):
        return grad_output * ctx["constant"], None


@register_operation(sample_inputs=_unary_samples)
@dataclass(frozen=True)
class Exp:
    """Exponential; saves its output, which doubles as the derivative."""

    def forward(self, ctx, x):
        result = x.exp()
        ctx.save_for_backward(result)
        return result

    def backward(self, ctx, grad_output):
        (result,) = ctx.saved_tensors
        return grad_output * result


@register_operation(sample_inputs=_unary_samples)
@dataclass(frozen=True)
class Cube:
    """``x ** 3``. Backward uses differentiable ops only."""

    def forward(self, ctx, x):
        ctx.save_for_backward(x)
        return x ** 3

    def backward(self, ctx, grad_output):
        (x,) = ctx.saved_tensors
        return grad_output * 3 * x ** 2
