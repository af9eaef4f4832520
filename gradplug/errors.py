"""Exceptions raised by GradPlug."""


class GradPlugError(Exception):
    """Base class for all GradPlug errors."""


class ContextError(GradPlugError, RuntimeError):
    """Invalid use of an operation context.

    Raised when a context is mutated after its forward pass returned, when a
    key outside the operation's schema is stashed or read, or when backward
    reads saved tensors that forward never saved.
    """


class GradientCountError(GradPlugError, ValueError):
    """Backward returned a different number of gradients than forward had inputs."""


class InvalidGradientError(GradPlugError, ValueError):
    """Backward returned a gradient for an input that cannot receive one."""


class ConfigError(GradPlugError, ValueError):
    """Malformed configuration value."""


class GradcheckError(GradPlugError, AssertionError):
    """Analytical and numerical gradients disagree.

    Args:
        report: The ``GradcheckReport`` describing every mismatch.
    """

    def __init__(self, report):
        super().__init__(report.summary())
        self.report = report
