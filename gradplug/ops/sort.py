"""Sorting with a non-differentiable index output."""

from dataclasses import dataclass

import torch

from ..operation import register_operation


def _sort_samples():
    gen = torch.Generator().manual_seed(0)
    x = torch.randn(3, 5, dtype=torch.float64, generator=gen, requires_grad=True)
    return {"dim": -1}, (x,)


@register_operation(sample_inputs=_sort_samples)
@dataclass(frozen=True)
class Sort:
    """
    Sort along ``dim``.

    Returns ``(values, indices)``. The indices are marked non-differentiable;
    backward scatters the value gradients back to their source positions.

    Args:
        dim: Dimension to sort along (default: -1)
        descending: Sort in descending order (default: False)
    """

    dim: int = -1
    descending: bool = False

    def forward(self, ctx, x):
        values, indices = torch.sort(x, dim=self.dim, descending=self.descending)
        ctx.mark_non_differentiable(indices)
        ctx.save_for_backward(indices)
        return values, indices

    def backward(self, ctx, grad_values, grad_indices):
        (indices,) = ctx.saved_tensors
        return torch.zeros_like(grad_values).scatter(self.dim, indices, grad_values)
