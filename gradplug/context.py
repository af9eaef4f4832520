"""
GradPlug - Operation Context
============================

Per-invocation record bridging one forward call to its matching backward call.
"""

from typing import Any, Dict, Iterable, Optional, Tuple

import torch
from torch import Tensor

from .errors import ContextError

_MISSING = object()


class OpContext:
    """
    Scratch record for a single operation invocation.

    Forward uses it to save tensors, flag in-place mutations and
    non-differentiable outputs, and stash non-tensor metadata under the keys
    the operation declared in its schema. Backward reads it back. A context
    is sealed once forward returns and is never shared between invocations.

    Args:
        op_name: Name of the owning operation, used in error messages
        schema: Keys accepted by the key-value store
        needs_input_grad: One flag per forward input telling whether that
            input needs a gradient

    Example:
        >>> def forward(self, ctx, tensor, constant):
        ...     ctx["constant"] = constant
        ...     return tensor * constant
        >>> def backward(self, ctx, grad_output):
        ...     return grad_output * ctx["constant"], None
    """

    __slots__ = (
        "op_name",
        "schema",
        "needs_input_grad",
        "materialize_grads",
        "_values",
        "_to_save",
        "_saved",
        "_dirty",
        "_non_differentiable",
        "_sealed",
    )

    def __init__(
        self,
        op_name: str,
        schema: Iterable[str] = (),
        needs_input_grad: Tuple[bool, ...] = (),
    ):
        self.op_name = op_name
        self.schema = frozenset(schema)
        self.needs_input_grad = tuple(needs_input_grad)
        self.materialize_grads = True
        self._values: Dict[str, Any] = {}
        self._to_save: Optional[Tuple[Optional[Tensor], ...]] = None
        self._saved: Optional[Tuple[Optional[Tensor], ...]] = None
        self._dirty: Tuple[Tensor, ...] = ()
        self._non_differentiable: Tuple[Tensor, ...] = ()
        self._sealed = False

    def _check_mutable(self, what: str):
        if self._sealed:
            raise ContextError(
                f"{self.op_name}: {what} is only allowed inside forward"
            )

    # ------------------------------------------------------------------
    # Forward-side API
    # ------------------------------------------------------------------

    def save_for_backward(self, *tensors: Optional[Tensor]):
        """
        Save tensors needed by backward.

        Only forward inputs and outputs should be saved here, so the graph
        engine can detect in-place modification and keep higher-order graphs
        connected.

        Args:
            *tensors: Tensors or None
        """
        self._check_mutable("save_for_backward")
        if self._to_save is not None:
            raise ContextError(f"{self.op_name}: save_for_backward called twice")
        for t in tensors:
            if t is not None and not isinstance(t, Tensor):
                raise TypeError(
                    f"{self.op_name}: save_for_backward expects tensors or None, "
                    f"got {type(t).__name__}"
                )
        self._to_save = tensors

    def mark_dirty(self, *tensors: Tensor):
        """Flag inputs that forward modified in place."""
        self._check_mutable("mark_dirty")
        self._dirty = self._dirty + _tensors_only(self.op_name, "mark_dirty", tensors)

    def mark_non_differentiable(self, *tensors: Tensor):
        """Flag outputs that carry no gradient."""
        self._check_mutable("mark_non_differentiable")
        self._non_differentiable = self._non_differentiable + _tensors_only(
            self.op_name, "mark_non_differentiable", tensors
        )

    def set_materialize_grads(self, value: bool):
        """
        Control how undefined output gradients reach backward.

        Args:
            value: If True (default), undefined gradients arrive as zero
                tensors. If False, they arrive as None.
        """
        self._check_mutable("set_materialize_grads")
        self.materialize_grads = bool(value)

    def __setitem__(self, key: str, value: Any):
        self._check_mutable("storing values")
        if key not in self.schema:
            raise ContextError(
                f"{self.op_name}: key {key!r} is not in the context schema "
                f"{sorted(self.schema)}"
            )
        if isinstance(value, Tensor):
            raise ContextError(
                f"{self.op_name}: {key!r} is a tensor; pass tensors needed by "
                "backward to save_for_backward"
            )
        self._values[key] = value

    def update(self, **values: Any):
        """Stash several schema values at once."""
        for key, value in values.items():
            self[key] = value

    # ------------------------------------------------------------------
    # Backward-side API
    # ------------------------------------------------------------------

    def __getitem__(self, key: str) -> Any:
        if key not in self.schema:
            raise ContextError(
                f"{self.op_name}: key {key!r} is not in the context schema "
                f"{sorted(self.schema)}"
            )
        try:
            return self._values[key]
        except KeyError:
            raise ContextError(f"{self.op_name}: {key!r} was never stored by forward") from None

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: Any = None) -> Any:
        """Return a stashed value, or ``default`` if it was never stored."""
        value = self._values.get(key, _MISSING)
        return default if value is _MISSING else value

    @property
    def saved_tensors(self) -> Tuple[Optional[Tensor], ...]:
        """
        Tensors saved by forward, as handed back by the graph engine.

        Raises:
            ContextError: If forward never called ``save_for_backward``
        """
        if self._to_save is None:
            raise ContextError(
                f"{self.op_name}: backward reads saved tensors but forward "
                "never called save_for_backward"
            )
        if self._saved is None:
            # Outside an engine-driven backward (e.g. a direct call)
            return self._to_save
        return self._saved

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _seal(self):
        self._sealed = True

    def _release(self):
        # The engine owns saved and marked tensors from here on
        if self._to_save is not None:
            self._to_save = (None,) * len(self._to_save)
        self._dirty = ()
        self._non_differentiable = ()

    def _load_saved(self, tensors: Optional[Tuple[Optional[Tensor], ...]]):
        self._saved = tensors

    def __repr__(self) -> str:
        return (
            f"OpContext(op={self.op_name!r}, keys={sorted(self._values)}, "
            f"saved={0 if self._to_save is None else len(self._to_save)}, "
            f"sealed={self._sealed})"
        )


def _tensors_only(op_name: str, what: str, tensors) -> Tuple[Tensor, ...]:
    for t in tensors:
        if not isinstance(t, Tensor):
            raise TypeError(f"{op_name}: {what} expects tensors, got {type(t).__name__}")
    return tuple(tensors)


def needs_input_grad(args) -> Tuple[bool, ...]:
    """Per-argument flags telling whether each argument needs a gradient."""
    enabled = torch.is_grad_enabled()
    return tuple(
        enabled and isinstance(a, Tensor) and a.requires_grad
        for a in args
    )
