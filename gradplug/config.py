"""Runtime settings for GradPlug.

Defaults can be overridden through environment variables:

- ``GRADPLUG_GRADCHECK_EPS``: finite-difference step size
- ``GRADPLUG_GRADCHECK_ATOL``: absolute tolerance
- ``GRADPLUG_GRADCHECK_RTOL``: relative tolerance
- ``GRADPLUG_GRADCHECK_SEED``: seed for random grad outputs in gradgradcheck
- ``GRADPLUG_STRICT_GRADIENTS``: raise instead of discarding gradients
  returned for inputs that do not need them
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from typing import Iterator, Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "GRADPLUG_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """
    Library-wide settings.

    Args:
        gradcheck_eps: Step size for symmetric finite differences (default: 1e-6)
        gradcheck_atol: Absolute tolerance for gradient comparison (default: 1e-5)
        gradcheck_rtol: Relative tolerance for gradient comparison (default: 1e-3)
        gradcheck_seed: Seed for the random grad outputs used by gradgradcheck (default: 0)
        strict_gradients: If True, a gradient returned for an input that does not
            need one raises instead of being discarded (default: False)
    """

    gradcheck_eps: float = 1e-6
    gradcheck_atol: float = 1e-5
    gradcheck_rtol: float = 1e-3
    gradcheck_seed: int = 0
    strict_gradients: bool = False

    def __post_init__(self):
        if self.gradcheck_eps <= 0:
            raise ConfigError(f"gradcheck_eps must be positive, got {self.gradcheck_eps}")
        if self.gradcheck_atol < 0:
            raise ConfigError(f"gradcheck_atol must be non-negative, got {self.gradcheck_atol}")
        if self.gradcheck_rtol < 0:
            raise ConfigError(f"gradcheck_rtol must be non-negative, got {self.gradcheck_rtol}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables, falling back to defaults.

        Args:
            environ: Mapping to read from (default: ``os.environ``)

        Returns:
            Settings with every ``GRADPLUG_*`` override applied

        Raises:
            ConfigError: If a variable cannot be parsed
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            name = ENV_PREFIX + f.name.upper()
            if name not in environ:
                continue
            raw = environ[name]
            if f.type is bool:
                overrides[f.name] = _parse_bool(name, raw)
                continue
            caster = int if f.type is int else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError:
                raise ConfigError(f"{name} must be a {caster.__name__}, got {raw!r}") from None
        if overrides:
            logger.debug("Settings overridden from environment: %s", overrides)
        return cls(**overrides)


_SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    """Return the active settings."""
    return _SETTINGS


def set_settings(**overrides) -> Settings:
    """
    Replace fields of the active settings.

    Returns:
        The settings that were active before the call
    """
    global _SETTINGS
    previous = _SETTINGS
    try:
        _SETTINGS = replace(previous, **overrides)
    except TypeError as exc:
        raise ConfigError(str(exc)) from None
    return previous


@contextmanager
def settings_override(**overrides) -> Iterator[Settings]:
    """Temporarily override settings inside a ``with`` block."""
    global _SETTINGS
    previous = set_settings(**overrides)
    try:
        yield _SETTINGS
    finally:
        _SETTINGS = previous
