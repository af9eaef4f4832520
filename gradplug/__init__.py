"""GradPlug: pluggable differentiable operations for PyTorch."""

from .errors import (
    GradPlugError,
    ContextError,
    GradientCountError,
    InvalidGradientError,
    GradcheckError,
    ConfigError,
)
from .config import Settings, get_settings, set_settings, settings_override
from .context import OpContext
from .operation import (
    DifferentiableOperation,
    OperationSpec,
    apply,
    register_operation,
    get_operation_spec,
    list_operations,
)
from .gradcheck import (
    GradcheckReport,
    GradientMismatch,
    gradcheck,
    gradcheck_report,
    gradgradcheck,
)

# Bundled operations and layers
from . import ops
from . import nn

__version__ = "0.1.0"

__all__ = [
    # Errors
    'GradPlugError',
    'ContextError',
    'GradientCountError',
    'InvalidGradientError',
    'GradcheckError',
    'ConfigError',
    # Config
    'Settings',
    'get_settings',
    'set_settings',
    'settings_override',
    # Core
    'OpContext',
    'DifferentiableOperation',
    'OperationSpec',
    'apply',
    'register_operation',
    'get_operation_spec',
    'list_operations',
    # Gradient checking
    'GradcheckReport',
    'GradientMismatch',
    'gradcheck',
    'gradcheck_report',
    'gradgradcheck',
    # Subpackages
    'ops',
    'nn',
]
