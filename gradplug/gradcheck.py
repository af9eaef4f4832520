"""
GradPlug - Gradient Checking
============================

Numerical verification of analytical gradients with symmetric finite
differences. Meant for tests, not for the training path.

Step size and tolerances are tunable: round-off error grows as the step
shrinks and truncation error grows as it widens, so no single setting suits
every operation. Use float64 inputs.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import torch
from torch import Tensor

from .config import get_settings
from .errors import GradcheckError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradientMismatch:
    """
    Disagreement between analytical and numerical Jacobian blocks.

    Both Jacobians have shape (input.numel(), output.numel()).
    """

    input_index: int
    output_index: int
    max_abs_error: float
    analytical: Tensor = field(repr=False)
    numerical: Tensor = field(repr=False)


@dataclass
class GradcheckReport:
    """Outcome of a gradient check. Truthy iff the check passed."""

    passed: bool
    eps: float
    atol: float
    rtol: float
    mismatches: List[GradientMismatch] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.passed

    def summary(self) -> str:
        if self.passed:
            return f"gradcheck passed (eps={self.eps:g}, atol={self.atol:g}, rtol={self.rtol:g})"
        lines = [
            f"gradcheck failed (eps={self.eps:g}, atol={self.atol:g}, rtol={self.rtol:g}):"
        ]
        for m in self.mismatches:
            lines.append(
                f"  input {m.input_index} -> output {m.output_index}: "
                f"max abs error {m.max_abs_error:.3e}"
            )
        return "\n".join(lines)


def _as_tuple(x) -> tuple:
    if isinstance(x, (tuple, list)):
        return tuple(x)
    return (x,)


def _differentiable_input_indices(inputs: Sequence[Any]) -> List[int]:
    indices = []
    for i, x in enumerate(inputs):
        if not (isinstance(x, Tensor) and x.requires_grad):
            continue
        if not x.is_floating_point():
            raise ValueError(f"gradcheck: input {i} requires grad but is not floating point")
        if x.dtype != torch.float64:
            logger.warning(
                "gradcheck: input %d has dtype %s; finite differences are only "
                "reliable in float64", i, x.dtype
            )
        indices.append(i)
    if not indices:
        raise ValueError("gradcheck: at least one input must require grad")
    return indices


def _differentiable_output_indices(outputs: tuple) -> List[int]:
    indices = [
        k for k, out in enumerate(outputs)
        if isinstance(out, Tensor) and out.is_floating_point() and out.requires_grad
    ]
    if not indices:
        raise ValueError("gradcheck: no output requires grad")
    return indices


def _perturbed(inputs: Sequence[Any], index: int, element: int, delta: float, track: bool):
    """Clone every tensor input, shifting one element of input ``index`` by ``delta``."""
    args = []
    for i, x in enumerate(inputs):
        if not isinstance(x, Tensor):
            args.append(x)
            continue
        clone = x.detach().clone(memory_format=torch.contiguous_format)
        if i == index:
            clone.view(-1)[element] += delta
        if track and x.requires_grad:
            clone.requires_grad_()
        args.append(clone)
    return args


def _numerical_jacobians(fn, inputs, input_indices, outputs, output_indices, eps, track):
    jacobians = [
        [
            torch.zeros(inputs[i].numel(), outputs[k].numel(), dtype=torch.float64)
            for k in output_indices
        ]
        for i in input_indices
    ]
    for pos, i in enumerate(input_indices):
        for j in range(inputs[i].numel()):
            with torch.set_grad_enabled(track):
                f_plus = _as_tuple(fn(*_perturbed(inputs, i, j, eps, track)))
                f_minus = _as_tuple(fn(*_perturbed(inputs, i, j, -eps, track)))
            for kpos, k in enumerate(output_indices):
                diff = (f_plus[k].detach() - f_minus[k].detach()) / (2 * eps)
                jacobians[pos][kpos][j] = diff.reshape(-1).to(torch.float64).cpu()
    return jacobians


def _analytical_jacobians(inputs, input_indices, outputs, output_indices):
    targets = [inputs[i] for i in input_indices]
    jacobians = [
        [
            torch.zeros(inputs[i].numel(), outputs[k].numel(), dtype=torch.float64)
            for k in output_indices
        ]
        for i in input_indices
    ]
    for kpos, k in enumerate(output_indices):
        out = outputs[k]
        for r in range(out.numel()):
            grad_out = torch.zeros_like(out, memory_format=torch.contiguous_format)
            grad_out.view(-1)[r] = 1
            grads = torch.autograd.grad(
                out, targets, grad_out, retain_graph=True, allow_unused=True
            )
            for pos, g in enumerate(grads):
                if g is not None:
                    jacobians[pos][kpos][:, r] = g.detach().reshape(-1).to(torch.float64).cpu()
    return jacobians


def _check(fn, inputs, eps, atol, rtol, track_numerical=False) -> GradcheckReport:
    inputs = tuple(inputs)
    input_indices = _differentiable_input_indices(inputs)
    outputs = _as_tuple(fn(*inputs))
    output_indices = _differentiable_output_indices(outputs)

    numerical = _numerical_jacobians(
        fn, inputs, input_indices, outputs, output_indices, eps, track_numerical
    )
    analytical = _analytical_jacobians(inputs, input_indices, outputs, output_indices)

    report = GradcheckReport(passed=True, eps=eps, atol=atol, rtol=rtol)
    for pos, i in enumerate(input_indices):
        for kpos, k in enumerate(output_indices):
            a, n = analytical[pos][kpos], numerical[pos][kpos]
            if torch.allclose(a, n, rtol=rtol, atol=atol):
                continue
            report.passed = False
            report.mismatches.append(
                GradientMismatch(
                    input_index=i,
                    output_index=k,
                    max_abs_error=float((a - n).abs().max()),
                    analytical=a,
                    numerical=n,
                )
            )
    logger.debug(report.summary())
    return report


def _resolve(eps, atol, rtol) -> Tuple[float, float, float]:
    settings = get_settings()
    return (
        settings.gradcheck_eps if eps is None else eps,
        settings.gradcheck_atol if atol is None else atol,
        settings.gradcheck_rtol if rtol is None else rtol,
    )


def gradcheck_report(
    fn: Callable,
    inputs: Sequence[Any],
    *,
    eps: Optional[float] = None,
    atol: Optional[float] = None,
    rtol: Optional[float] = None,
) -> GradcheckReport:
    """
    Compare analytical and finite-difference Jacobians of ``fn``.

    Every floating input that requires grad is checked against every output
    that requires grad. A pair passes when
    ``|analytical - numerical| <= atol + rtol * |numerical|`` element-wise.

    ``fn`` must not mutate its inputs; wrap in-place operations as
    ``lambda x: op.apply(x.clone())``. Numerical evaluations run on clones,
    with history tracking disabled.

    Args:
        fn: Callable taking ``*inputs``, e.g. an operation's ``apply``
        inputs: Tensors (float64, ``requires_grad=True``) and other arguments
        eps: Finite-difference step (default: settings)
        atol: Absolute tolerance (default: settings)
        rtol: Relative tolerance (default: settings)

    Returns:
        GradcheckReport with every mismatching Jacobian block
    """
    eps, atol, rtol = _resolve(eps, atol, rtol)
    return _check(fn, inputs, eps, atol, rtol)


def gradcheck(
    fn: Callable,
    inputs: Sequence[Any],
    *,
    eps: Optional[float] = None,
    atol: Optional[float] = None,
    rtol: Optional[float] = None,
    raise_exception: bool = False,
) -> bool:
    """
    Check first-order gradients of ``fn`` numerically.

    Example:
        >>> x = torch.randn(20, 20, dtype=torch.double, requires_grad=True)
        >>> w = torch.randn(30, 20, dtype=torch.double, requires_grad=True)
        >>> gradcheck(LinearFunction().apply, (x, w), eps=1e-6, atol=1e-4)
        True

    Returns:
        True if all gradients match within tolerance

    Raises:
        GradcheckError: On mismatch, if ``raise_exception`` is set
    """
    report = gradcheck_report(fn, inputs, eps=eps, atol=atol, rtol=rtol)
    if not report.passed and raise_exception:
        raise GradcheckError(report)
    return report.passed


def gradgradcheck(
    fn: Callable,
    inputs: Sequence[Any],
    grad_outputs: Optional[Sequence[Tensor]] = None,
    *,
    eps: Optional[float] = None,
    atol: Optional[float] = None,
    rtol: Optional[float] = None,
    raise_exception: bool = False,
) -> bool:
    """
    Check second-order gradients of ``fn`` numerically.

    Gradchecks ``(x, v) -> grad(fn(x), x, v, create_graph=True)``. When
    ``grad_outputs`` is omitted, ``v`` is drawn from a generator seeded with
    ``settings.gradcheck_seed``, so repeated calls agree.
    Numerical evaluations run on clones with history tracked, since the
    checked function differentiates ``fn`` itself.

    Args:
        fn: Callable taking ``*inputs``
        inputs: As for ``gradcheck``
        grad_outputs: One tensor per output that requires grad
        eps, atol, rtol: As for ``gradcheck``
        raise_exception: Raise ``GradcheckError`` on mismatch

    Returns:
        True if all second-order gradients match within tolerance
    """
    eps, atol, rtol = _resolve(eps, atol, rtol)
    inputs = tuple(inputs)
    input_indices = _differentiable_input_indices(inputs)
    outputs = _as_tuple(fn(*inputs))
    output_indices = _differentiable_output_indices(outputs)

    if grad_outputs is None:
        gen = torch.Generator().manual_seed(get_settings().gradcheck_seed)
        grad_outputs = tuple(
            torch.randn(outputs[k].shape, generator=gen, dtype=outputs[k].dtype)
            .to(outputs[k].device)
            .requires_grad_()
            for k in output_indices
        )
    grad_outputs = tuple(grad_outputs)
    if len(grad_outputs) != len(output_indices):
        raise ValueError(
            f"gradgradcheck: expected {len(output_indices)} grad_outputs, "
            f"got {len(grad_outputs)}"
        )

    n_inputs = len(inputs)

    def first_order(*args):
        xs, vs = args[:n_inputs], args[n_inputs:]
        outs = _as_tuple(fn(*xs))
        grads = torch.autograd.grad(
            [outs[k] for k in output_indices],
            [xs[i] for i in input_indices],
            vs,
            create_graph=True,
            allow_unused=True,
        )
        return tuple(
            g if g is not None else torch.zeros_like(xs[i])
            for g, i in zip(grads, input_indices)
        )

    report = _check(first_order, inputs + grad_outputs, eps, atol, rtol, track_numerical=True)
    if not report.passed and raise_exception:
        raise GradcheckError(report)
    return report.passed
