"""Tests for the bundled differentiable operations."""

import pytest
import torch
import torch.nn.functional as F
from gradplug import OpContext, get_operation_spec, gradcheck, gradgradcheck, list_operations
from gradplug.ops import (
    Exp,
    FakeQuantize,
    LinearFunction,
    MaskedLinearFunction,
    MulConstant,
    Sort,
)


def _bundled():
    return [
        name for name in list_operations()
        if get_operation_spec(name).cls.__module__.startswith('gradplug.')
    ]


def _cloning(op):
    # In-place operations may not run on leaves that require grad.
    def fn(*args):
        return op.apply(*(a.clone() if isinstance(a, torch.Tensor) else a for a in args))
    return fn


# =============================================================================
# REGISTRY-WIDE CHECKS
# =============================================================================

@pytest.mark.parametrize('name', _bundled())
class TestRegisteredOperations:
    """Every bundled operation with sample inputs passes the gradient checks."""

    def test_gradcheck(self, name):
        """Analytical first derivatives match finite differences."""
        spec = get_operation_spec(name)
        if spec.skip_gradcheck:
            pytest.skip(spec.skip_reason)
        if spec.sample_inputs is None:
            pytest.skip('no sample inputs')

        config, inputs = spec.sample_inputs()
        op = spec.create(**config)
        assert gradcheck(_cloning(op), inputs, eps=1e-6, atol=1e-4, raise_exception=True)

    def test_gradgradcheck(self, name):
        """Analytical second derivatives match finite differences."""
        spec = get_operation_spec(name)
        if spec.skip_gradcheck:
            pytest.skip(spec.skip_reason)
        if spec.once_differentiable:
            pytest.skip('once differentiable')
        if spec.sample_inputs is None:
            pytest.skip('no sample inputs')

        config, inputs = spec.sample_inputs()
        op = spec.create(**config)
        assert gradgradcheck(_cloning(op), inputs, eps=1e-6, atol=1e-4, raise_exception=True)


# =============================================================================
# LINEAR
# =============================================================================

class TestLinearFunction:
    """Tests for the affine map."""

    def test_matches_functional(self, linear_inputs):
        """Output equals torch's functional linear."""
        x, w, b = linear_inputs
        y = LinearFunction().apply(x, w, b)

        assert y.shape == (20, 30)
        assert torch.allclose(y, F.linear(x, w, b))

    def test_gradcheck(self, linear_inputs):
        """Gradients pass the check at eps=1e-6, atol=1e-4."""
        assert gradcheck(LinearFunction().apply, linear_inputs, eps=1e-6, atol=1e-4)

    def test_gradcheck_without_bias(self, linear_inputs):
        """A None bias is accepted and gets no gradient."""
        x, w, _ = linear_inputs
        assert gradcheck(LinearFunction().apply, (x, w), eps=1e-6, atol=1e-4)

    def test_gradients_match_functional(self, linear_inputs):
        """Gradients agree with torch's own linear."""
        x, w, b = linear_inputs
        ours = torch.autograd.grad(LinearFunction().apply(x, w, b).sum(), (x, w, b))
        ref = torch.autograd.grad(F.linear(x, w, b).sum(), (x, w, b))

        for g, r in zip(ours, ref):
            assert torch.allclose(g, r)

    def test_skips_unneeded_gradients(self, random_seed):
        """Only inputs that need a gradient receive one."""
        x = torch.randn(4, 3, dtype=torch.double)
        w = torch.randn(5, 3, dtype=torch.double, requires_grad=True)
        LinearFunction().apply(x, w).sum().backward()

        assert x.grad is None
        assert w.grad.shape == (5, 3)

    def test_batched_input(self, random_seed):
        """Leading batch dimensions are supported."""
        x = torch.randn(2, 4, 3, dtype=torch.double, requires_grad=True)
        w = torch.randn(5, 3, dtype=torch.double, requires_grad=True)
        b = torch.randn(5, dtype=torch.double, requires_grad=True)

        assert LinearFunction().apply(x, w, b).shape == (2, 4, 5)
        assert gradcheck(LinearFunction().apply, (x, w, b), atol=1e-4)


class TestMaskedLinearFunction:
    """Tests for the masked affine map."""

    def test_masked_weights_get_no_gradient(self, random_seed):
        """Weight gradients vanish where the mask is zero."""
        x = torch.randn(4, 3, dtype=torch.double)
        w = torch.randn(5, 3, dtype=torch.double, requires_grad=True)
        mask = torch.zeros(5, 3, dtype=torch.double)
        mask[:, 0] = 1

        MaskedLinearFunction().apply(x, w, mask).sum().backward()

        assert torch.all(w.grad[:, 1:] == 0)
        assert torch.all(w.grad[:, 0] != 0)

    def test_output(self, random_seed):
        """Output equals a linear map with the masked weight."""
        x = torch.randn(4, 3)
        w = torch.randn(5, 3)
        mask = (torch.rand(5, 3) > 0.5).float()
        b = torch.randn(5)

        y = MaskedLinearFunction().apply(x, w, mask, b)
        assert torch.allclose(y, F.linear(x, w * mask, b))


# =============================================================================
# ELEMENT-WISE
# =============================================================================

class TestMulConstant:
    """Tests for multiplication by a constant."""

    def test_gradient_positions(self):
        """The tensor gets grad * constant; the constant gets nothing."""
        x = torch.randn(3, 4, dtype=torch.double, requires_grad=True)
        y = MulConstant().apply(x, 2.5)
        g = torch.randn(3, 4, dtype=torch.double)

        (gx,) = torch.autograd.grad(y, x, g)
        assert torch.allclose(gx, g * 2.5)

    def test_backward_returns_none_for_constant(self):
        """Backward leaves the constant's slot empty."""
        ctx = OpContext('mul_constant', schema=('constant',))
        ctx['constant'] = 2.5
        g = torch.ones(3)

        grad_tensor, grad_constant = MulConstant().backward(ctx, g)
        assert torch.allclose(grad_tensor, torch.full((3,), 2.5))
        assert grad_constant is None

    def test_gradcheck(self):
        """Passes with the constant given as a plain number."""
        x = torch.randn(3, 4, dtype=torch.double, requires_grad=True)
        assert gradcheck(MulConstant().apply, (x, -0.75))


class TestExp:
    """Tests for the exponential."""

    def test_output_and_gradient(self):
        """Derivative of exp is exp."""
        x = torch.randn(6, dtype=torch.double, requires_grad=True)
        y = Exp().apply(x)
        y.sum().backward()

        assert torch.allclose(y, x.exp())
        assert torch.allclose(x.grad, x.exp())


class TestSort:
    """Tests for sorting."""

    def test_descending(self):
        """Descending sort matches torch.sort."""
        x = torch.randn(3, 5, dtype=torch.double, requires_grad=True)
        values, indices = Sort(dim=1, descending=True).apply(x)
        ref = torch.sort(x, dim=1, descending=True)

        assert torch.equal(values, ref.values)
        assert torch.equal(indices, ref.indices)

    def test_gradcheck_along_first_dim(self):
        """Gradients pass along a non-default dimension."""
        x = torch.randn(4, 3, dtype=torch.double, requires_grad=True)
        assert gradcheck(Sort(dim=0).apply, (x,))


class TestFakeQuantize:
    """Tests for straight-through fake quantization."""

    def test_forward_rounds_to_grid(self):
        """Values are rounded to multiples of the scale."""
        x = torch.tensor([0.04, 0.11, -0.26])
        y = FakeQuantize().apply(x, torch.tensor(0.1))

        assert torch.allclose(y, torch.tensor([0.0, 0.1, -0.3]))

    def test_clipping(self):
        """Values beyond the range saturate."""
        x = torch.tensor([10.0, -10.0])
        y = FakeQuantize(qmin=-2, qmax=2).apply(x, torch.tensor(1.0))

        assert torch.allclose(y, torch.tensor([2.0, -2.0]))

    def test_straight_through_gradient(self):
        """Gradients pass through in range and stop where clipped."""
        x = torch.tensor([0.5, 1.0, 3.0, -4.0], requires_grad=True)
        FakeQuantize(qmin=-2, qmax=2).apply(x, torch.tensor(1.0)).sum().backward()

        assert torch.allclose(x.grad, torch.tensor([1.0, 1.0, 0.0, 0.0]))
