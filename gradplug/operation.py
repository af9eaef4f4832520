"""
GradPlug - Operation Descriptors
================================

Contract for plugging a differentiable operation into torch.autograd.

An operation is any value-type object with two entry points:

- ``forward(ctx, *inputs)`` computes the outputs
- ``backward(ctx, *grad_outputs)`` returns one gradient per forward input

``register_operation`` validates the pair, derives ``apply`` from it and
records the operation in the registry. ``apply`` is the only way to invoke
an operation: it builds the context, runs forward inside the graph engine
and wires backward into reverse traversal.

Example:
    >>> @register_operation(schema=("constant",))
    ... @dataclass(frozen=True)
    ... class MulConstant:
    ...     def forward(self, ctx, tensor, constant):
    ...         ctx["constant"] = constant
    ...         return tensor * constant
    ...
    ...     def backward(self, ctx, grad_output):
    ...         return grad_output * ctx["constant"], None
    >>> y = MulConstant().apply(x, 2.0)
"""

import logging
import re
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import torch
from torch import Tensor
from torch.autograd.function import once_differentiable as _once_differentiable

from .config import get_settings
from .context import OpContext, needs_input_grad
from .errors import GradientCountError, InvalidGradientError

logger = logging.getLogger(__name__)


@runtime_checkable
class DifferentiableOperation(Protocol):
    """Structural type of an operation descriptor."""

    def forward(self, ctx: OpContext, *inputs: Any) -> Any:
        ...

    def backward(self, ctx: OpContext, *grad_outputs: Any) -> Any:
        ...


@dataclass(frozen=True)
class OperationSpec:
    """
    Registry entry for an operation.

    Attributes:
        cls: The descriptor class
        name: Registry name
        schema: Keys the operation may stash on its context
        sample_inputs: Zero-argument factory returning ``(config, args)``, a
            dict of descriptor fields and a tuple of float64 inputs for
            gradient checking
        once_differentiable: Whether backward itself may not be differentiated
        skip_gradcheck: Whether to skip automated finite-difference checks
        skip_reason: Why the check is skipped; required if ``skip_gradcheck``
    """

    cls: type
    name: str
    schema: Tuple[str, ...] = ()
    sample_inputs: Optional[Callable[[], Tuple[Dict[str, Any], tuple]]] = None
    once_differentiable: bool = False
    skip_gradcheck: bool = False
    skip_reason: Optional[str] = None

    def create(self, **config: Any):
        """Build a descriptor instance with the given fields."""
        return self.cls(**config)


_OPERATION_REGISTRY: Dict[str, OperationSpec] = {}


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def register_operation(
    name: Optional[str] = None,
    *,
    schema: Sequence[str] = (),
    sample_inputs: Optional[Callable[[], Tuple[Dict[str, Any], tuple]]] = None,
    once_differentiable: bool = False,
    skip_gradcheck: bool = False,
    skip_reason: Optional[str] = None,
) -> Callable[[type], type]:
    """
    Class decorator registering a differentiable operation.

    Attaches ``apply`` and ``__call__`` to the class and records an
    ``OperationSpec`` under ``name``.

    Args:
        name: Registry name (default: snake_case class name)
        schema: Keys forward may stash on its context
        sample_inputs: Factory of gradcheck inputs, see ``OperationSpec``
        once_differentiable: Run backward without history; differentiating
            it again raises inside the graph engine
        skip_gradcheck: Exclude from registry-wide gradient checks
        skip_reason: Why the check is skipped

    Returns:
        The decorator

    Raises:
        ValueError: If ``skip_gradcheck`` is set without ``skip_reason``,
            or if the name is already registered
        TypeError: If the class lacks ``forward`` or ``backward``
    """
    if skip_gradcheck and not skip_reason:
        raise ValueError("skip_reason is required when skip_gradcheck=True")

    def decorator(cls: type) -> type:
        for method in ("forward", "backward"):
            if not callable(getattr(cls, method, None)):
                raise TypeError(f"{cls.__name__} must define a callable {method}()")

        op_name = name or _snake_case(cls.__name__)
        if op_name in _OPERATION_REGISTRY:
            raise ValueError(f"Operation {op_name!r} is already registered")

        spec = OperationSpec(
            cls=cls,
            name=op_name,
            schema=tuple(schema),
            sample_inputs=sample_inputs,
            once_differentiable=once_differentiable,
            skip_gradcheck=skip_gradcheck,
            skip_reason=skip_reason,
        )
        cls.op_spec = spec
        cls.apply = _bound_apply
        if "__call__" not in cls.__dict__:
            cls.__call__ = _bound_apply

        _OPERATION_REGISTRY[op_name] = spec
        logger.debug("Registered operation %r (%s)", op_name, cls.__qualname__)
        return cls

    return decorator


def _bound_apply(self, *args):
    return apply(self, *args)


def get_operation_spec(name: str) -> OperationSpec:
    """
    Look up a registered operation.

    Raises:
        KeyError: If no operation is registered under ``name``
    """
    try:
        return _OPERATION_REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown operation {name!r}") from None


def list_operations() -> List[str]:
    """Names of all registered operations, sorted."""
    return sorted(_OPERATION_REGISTRY)


def _spec_of(op) -> OperationSpec:
    spec = getattr(op, "op_spec", None)
    if spec is not None:
        return spec
    # Unregistered descriptor: satisfies the protocol but has no metadata
    if not isinstance(op, DifferentiableOperation):
        raise TypeError(
            f"{type(op).__name__} is not a differentiable operation: "
            "forward() and backward() are required"
        )
    return OperationSpec(
        cls=type(op),
        name=_snake_case(type(op).__name__),
        schema=tuple(getattr(op, "context_schema", ())),
    )


# =============================================================================
# GRADIENT NORMALIZATION
# =============================================================================

def normalize_gradients(
    op_name: str,
    grads: Any,
    input_is_tensor: Tuple[bool, ...],
    input_needs_grad: Tuple[bool, ...],
) -> Tuple[Optional[Tensor], ...]:
    """
    Validate what backward returned and align it with forward's inputs.

    Args:
        op_name: Operation name, for error messages
        grads: Raw backward return value
        input_is_tensor: Whether each forward input was a tensor
        input_needs_grad: Whether each forward input needed a gradient

    Returns:
        Exactly one gradient or None per forward input

    Raises:
        GradientCountError: If the count does not match, after dropping
            trailing None values
        InvalidGradientError: If a gradient is returned for a non-tensor
            input, or for an input that does not need one while
            ``strict_gradients`` is set
    """
    if not isinstance(grads, (tuple, list)):
        grads = (grads,)
    grads = list(grads)

    expected = len(input_is_tensor)
    if len(grads) > expected and all(g is None for g in grads[expected:]):
        grads = grads[:expected]
    if len(grads) != expected:
        raise GradientCountError(
            f"{op_name}: backward returned {len(grads)} gradients, "
            f"expected {expected} (one per forward input)"
        )

    strict = get_settings().strict_gradients
    for i, grad in enumerate(grads):
        if grad is None:
            continue
        if not input_is_tensor[i]:
            raise InvalidGradientError(
                f"{op_name}: backward returned a gradient for input {i}, "
                "which is not a tensor; return None at that position"
            )
        if not input_needs_grad[i]:
            if strict:
                raise InvalidGradientError(
                    f"{op_name}: backward returned a gradient for input {i}, "
                    "which does not need one"
                )
            logger.debug("%s: discarding unneeded gradient for input %d", op_name, i)
            grads[i] = None
    return tuple(grads)


# =============================================================================
# GRAPH ENGINE BRIDGE
# =============================================================================

def _run_forward(fctx, op, spec: OperationSpec, needs_grad, args):
    ctx = OpContext(spec.name, spec.schema, needs_grad)
    outputs = op.forward(ctx, *args)
    ctx._seal()

    if ctx._to_save is not None:
        fctx.save_for_backward(*ctx._to_save)
    if ctx._dirty:
        fctx.mark_dirty(*ctx._dirty)
    if ctx._non_differentiable:
        fctx.mark_non_differentiable(*ctx._non_differentiable)
    fctx.set_materialize_grads(ctx.materialize_grads)
    ctx._release()

    fctx.gp_op = op
    fctx.gp_spec = spec
    fctx.gp_ctx = ctx
    fctx.gp_input_is_tensor = tuple(isinstance(a, Tensor) for a in args)
    return outputs


def _run_backward(fctx, grad_outputs):
    spec: OperationSpec = fctx.gp_spec
    ctx: OpContext = fctx.gp_ctx
    if ctx._to_save is not None:
        ctx._load_saved(fctx.saved_tensors)

    logger.debug("Calling backward of %r", spec.name)
    try:
        grads = fctx.gp_op.backward(ctx, *grad_outputs)
    finally:
        ctx._load_saved(None)
    grads = normalize_gradients(
        spec.name, grads, fctx.gp_input_is_tensor, ctx.needs_input_grad
    )
    # Leading slots belong to the (op, spec, needs_grad) arguments
    return (None, None, None) + grads


class _OperationFunction(torch.autograd.Function):
    @staticmethod
    def forward(fctx, op, spec, needs_grad, *args):
        return _run_forward(fctx, op, spec, needs_grad, args)

    @staticmethod
    def backward(fctx, *grad_outputs):
        return _run_backward(fctx, grad_outputs)


class _OnceDifferentiableFunction(torch.autograd.Function):
    @staticmethod
    def forward(fctx, op, spec, needs_grad, *args):
        return _run_forward(fctx, op, spec, needs_grad, args)

    @staticmethod
    @_once_differentiable
    def backward(fctx, *grad_outputs):
        return _run_backward(fctx, grad_outputs)


def apply(op, *args):
    """
    Invoke an operation descriptor.

    Builds a fresh context, runs ``op.forward`` with history tracking
    disabled, and registers the outputs with torch.autograd so that
    ``op.backward`` runs during reverse traversal.

    Args:
        op: Operation descriptor
        *args: Forward inputs; tensors and auxiliary non-tensor values

    Returns:
        Whatever forward returned: one tensor or a tuple of outputs
    """
    spec = _spec_of(op)
    needs_grad = needs_input_grad(args)
    logger.debug(
        "apply %r: %d inputs, needs_input_grad=%s", spec.name, len(args), needs_grad
    )
    function = _OnceDifferentiableFunction if spec.once_differentiable else _OperationFunction
    return function.apply(op, spec, needs_grad, *args)
