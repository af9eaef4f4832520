"""Pytest configuration and fixtures."""

import pytest
import torch
from gradplug import get_settings, set_settings


@pytest.fixture
def random_seed():
    """Set random seed for reproducibility."""
    torch.manual_seed(42)
    return 42


@pytest.fixture
def linear_inputs(random_seed):
    """Double-precision (input, weight, bias) for a 20 -> 30 linear map."""
    x = torch.randn(20, 20, dtype=torch.double, requires_grad=True)
    w = torch.randn(30, 20, dtype=torch.double, requires_grad=True)
    b = torch.randn(30, dtype=torch.double, requires_grad=True)
    return x, w, b


@pytest.fixture
def restore_settings():
    """Restore library settings after the test."""
    previous = get_settings()
    yield previous
    set_settings(**{f: getattr(previous, f) for f in previous.__dataclass_fields__})
