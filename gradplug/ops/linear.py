"""Linear maps as differentiable operations."""

from dataclasses import dataclass

import torch

from ..operation import register_operation


def _flatten_batch(t):
    """Collapse leading batch dims: (..., features) -> (N, features)."""
    return t.reshape(-1, t.shape[-1])


def _linear_samples():
    gen = torch.Generator().manual_seed(0)
    x = torch.randn(4, 3, dtype=torch.float64, generator=gen, requires_grad=True)
    w = torch.randn(5, 3, dtype=torch.float64, generator=gen, requires_grad=True)
    b = torch.randn(5, dtype=torch.float64, generator=gen, requires_grad=True)
    return {}, (x, w, b)


def _masked_linear_samples():
    gen = torch.Generator().manual_seed(0)
    x = torch.randn(2, 4, 3, dtype=torch.float64, generator=gen, requires_grad=True)
    w = torch.randn(5, 3, dtype=torch.float64, generator=gen, requires_grad=True)
    mask = (torch.rand(5, 3, generator=gen) > 0.5).to(torch.float64)
    b = torch.randn(5, dtype=torch.float64, generator=gen, requires_grad=True)
    return {}, (x, w, mask, b)


@register_operation("linear", sample_inputs=_linear_samples)
@dataclass(frozen=True)
class LinearFunction:
    """
    Affine map ``input @ weight.T + bias``.

    Inputs:
        input: shape (..., in_features)
        weight: shape (out_features, in_features)
        bias: shape (out_features,) or None

    Backward is written with differentiable ops, so the operation supports
    higher-order gradients.
    """

    def forward(self, ctx, input, weight, bias=None):
        ctx.save_for_backward(input, weight, bias)
        output = input.matmul(weight.t())
        if bias is not None:
            output = output + bias
        return output

    def backward(self, ctx, grad_output):
        input, weight, bias = ctx.saved_tensors
        grad_input = grad_weight = grad_bias = None

        if ctx.needs_input_grad[0]:
            grad_input = grad_output.matmul(weight)
        if ctx.needs_input_grad[1]:
            grad_weight = _flatten_batch(grad_output).t().mm(_flatten_batch(input))
        if bias is not None and ctx.needs_input_grad[2]:
            grad_bias = _flatten_batch(grad_output).sum(0)

        return grad_input, grad_weight, grad_bias


@register_operation("masked_linear", sample_inputs=_masked_linear_samples)
@dataclass(frozen=True)
class MaskedLinearFunction:
    """
    Linear map with a fixed connectivity mask: ``input @ (weight * mask).T + bias``.

    The mask is a non-differentiable buffer; backward always returns None
    at its position.
    """

    def forward(self, ctx, input, weight, mask, bias=None):
        ctx.save_for_backward(input, weight, mask, bias)
        output = input.matmul((weight * mask).t())
        if bias is not None:
            output = output + bias
        return output

    def backward(self, ctx, grad_output):
        input, weight, mask, bias = ctx.saved_tensors
        grad_input = grad_weight = grad_bias = None

        if ctx.needs_input_grad[0]:
            grad_input = grad_output.matmul(weight * mask)
        if ctx.needs_input_grad[1]:
            grad_weight = _flatten_batch(grad_output).t().mm(_flatten_batch(input)) * mask
        if bias is not None and ctx.needs_input_grad[3]:
            grad_bias = _flatten_batch(grad_output).sum(0)

        return grad_input, grad_weight, None, grad_bias
