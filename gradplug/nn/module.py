"""
GradPlug NN - Operation Modules
===============================

Base class for layers that own parameters and buffers and delegate their
computation to a single differentiable operation.
"""

import logging
from collections import OrderedDict
from typing import Any, Optional, Tuple

import torch.nn as nn
from torch import Tensor

from ..operation import apply

logger = logging.getLogger(__name__)


class OperationModule(nn.Module):
    """
    Layer wrapper around one differentiable operation.

    Subclasses set ``self.operation`` and declare every parameter and buffer
    they own with ``declare_parameter`` / ``declare_buffer``. Optional parts
    that are configured off are declared as ``None``, so the set of names is
    the same for every configuration.

    ``forward`` passes the external inputs plus the owned tensors to
    ``apply(self.operation, ...)``. It never computes gradients itself.

    Example:
        >>> class Linear(OperationModule):
        ...     def __init__(self, in_features, out_features, bias=True):
        ...         super().__init__()
        ...         self.operation = LinearFunction()
        ...         self.declare_parameter('weight', torch.empty(out_features, in_features))
        ...         self.declare_parameter('bias', torch.empty(out_features) if bias else None)
    """

    operation: Any = None

    def declare_parameter(self, name: str, value: Optional[Tensor]):
        """
        Register a parameter, or an explicit absent placeholder.

        Args:
            name: Parameter name, unique within the module
            value: Tensor (wrapped in ``nn.Parameter`` if needed) or None
        """
        if value is not None and not isinstance(value, nn.Parameter):
            value = nn.Parameter(value)
        self.register_parameter(name, value)
        if value is None:
            logger.debug("%s: parameter %r declared absent", type(self).__name__, name)

    def declare_buffer(self, name: str, value: Optional[Tensor], persistent: bool = True):
        """
        Register a buffer, or an explicit absent placeholder.

        Args:
            name: Buffer name, unique within the module
            value: Tensor or None
            persistent: Whether the buffer is part of ``state_dict``
        """
        self.register_buffer(name, value, persistent=persistent)
        if value is None:
            logger.debug("%s: buffer %r declared absent", type(self).__name__, name)

    def declared_parameters(self) -> "OrderedDict[str, Optional[nn.Parameter]]":
        """Parameters owned directly by this module, absent ones included."""
        return OrderedDict(self._parameters)

    def declared_buffers(self) -> "OrderedDict[str, Optional[Tensor]]":
        """Buffers owned directly by this module, absent ones included."""
        return OrderedDict(self._buffers)

    def operation_arguments(self, *inputs: Any) -> Tuple[Any, ...]:
        """
        Arrange the arguments passed to the operation.

        Default order: external inputs, then declared parameters, then
        declared buffers, each in declaration order. Absent entries are
        passed as None. Override when the operation expects another order.
        """
        return (
            *inputs,
            *self.declared_parameters().values(),
            *self.declared_buffers().values(),
        )

    def forward(self, *inputs: Any):
        if self.operation is None:
            raise NotImplementedError(f"{type(self).__name__} has no operation")
        return apply(self.operation, *self.operation_arguments(*inputs))
