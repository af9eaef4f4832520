#!/usr/bin/env python
"""Demo: Writing and Training with Custom Operations

This script defines a new differentiable operation, verifies its gradients
numerically, and trains a small regression model built from GradPlug layers.

Example:
    python examples/custom_operation.py
"""

import logging
from dataclasses import dataclass

import torch
import torch.nn as nn
from gradplug import gradcheck, gradgradcheck, register_operation
from gradplug.nn import FakeQuantize, Linear, OperationModule


@register_operation("scaled_tanh", schema=("scale",))
@dataclass(frozen=True)
class ScaledTanh:
    """``tanh(x) * scale``, with the scale stashed in the context."""

    def forward(self, ctx, x, scale):
        ctx["scale"] = scale
        y = torch.tanh(x)
        ctx.save_for_backward(y)
        return y * scale

    def backward(self, ctx, grad_output):
        (y,) = ctx.saved_tensors
        return grad_output * ctx["scale"] * (1 - y * y), None


class ScaledTanhLayer(OperationModule):
    def __init__(self, scale=1.7159):
        super().__init__()
        self.scale = scale
        self.operation = ScaledTanh()

    def operation_arguments(self, x):
        return x, self.scale


def demo_gradcheck():
    """Check the new operation's first and second derivatives."""
    print("=" * 80)
    print("Demo 1: Gradient Check")
    print("=" * 80)

    x = torch.randn(4, 3, dtype=torch.double, requires_grad=True)
    print(f"gradcheck:     {gradcheck(ScaledTanh().apply, (x, 1.7159))}")
    print(f"gradgradcheck: {gradgradcheck(ScaledTanh().apply, (x, 1.7159))}")
    print()


def demo_training():
    """Fit y = sin(x) with a model built from operation layers."""
    print("=" * 80)
    print("Demo 2: Training")
    print("=" * 80)

    torch.manual_seed(0)
    x = torch.linspace(-3, 3, 256).unsqueeze(-1)
    target = torch.sin(x)

    model = nn.Sequential(
        Linear(1, 32),
        ScaledTanhLayer(),
        Linear(32, 32),
        FakeQuantize(scale=0.01),
        ScaledTanhLayer(),
        Linear(32, 1, bias=False),
    )
    print(model)
    print()

    optimizer = torch.optim.Adam(model.parameters(), lr=0.01)
    for step in range(300):
        optimizer.zero_grad()
        loss = ((model(x) - target) ** 2).mean()
        loss.backward()
        optimizer.step()

        if step % 50 == 0:
            print(f"Step {step:3d}: loss = {loss.item():.6f}")

    print(f"Final loss: {loss.item():.6f}")
    print()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    print()
    print("GradPlug Custom Operation Demo")
    print()

    demo_gradcheck()
    demo_training()

    print("=" * 80)
