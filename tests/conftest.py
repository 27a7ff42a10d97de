"""
Shared fixtures for the transfer function and margin tests.

Margin searches use reduced grids; the default 1e6-point grid is exercised
explicitly where it matters.
"""

import pytest
from StabilityMargins import MarginSearchConfig
from TransferFunction import TransferFunction


@pytest.fixture
def first_order():
    """H(s) = 1 / (s + 1)"""
    return TransferFunction([1], [1, 1])


@pytest.fixture
def integrator():
    """H(s) = 1 / s"""
    return TransferFunction([1], [1, 0])


@pytest.fixture
def third_order():
    """H(s) = 8 / ((s + 1)(s + 2)(s + 3)), GM = 20*log10(7.5) dB."""
    return TransferFunction([8], [1, 6, 11, 6])


@pytest.fixture
def fast_config():
    """A one-decade-either-side grid around 1 rad/s."""
    return MarginSearchConfig(freq_start=0.1, freq_end=10, num_points=100_001)
