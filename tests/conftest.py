"""
perp-keeper test configuration.

Shared fixtures:
- slab_builder: writes real slab bytes (header, config, risk params, engine,
  used bitmap, position records) so decoding is exercised end to end
- keypair / clock: keeper identity and a controllable time source
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from solders.keypair import Keypair

from tests.helpers import NOW, SlabBuilder


@pytest.fixture
def slab_builder():
    """Factory for SlabBuilder instances."""
    return SlabBuilder


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def clock():
    """Mutable fake clock; set clock.now to move time."""
    class FakeClock:
        def __init__(self):
            self.now = NOW

        def __call__(self) -> float:
            return self.now

        def advance(self, secs: float) -> None:
            self.now += secs

    return FakeClock()


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
