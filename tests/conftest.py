"""
Bundle Forge Test Configuration
===============================
Shared fixtures and pytest markers for the test suite.
"""

import os
import random
import sys

import pytest
from solders.keypair import Keypair

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bundle_forge.shared.system.logging import Logger  # noqa: E402
from tests.mocks import FakeLedgerGateway, FakeRelay  # noqa: E402


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: pure logic tests with no I/O"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )
    config.addinivalue_line(
        "markers", "integration: marks integration tests"
    )


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def quiet_logger():
    """Keep console output out of test runs."""
    Logger.set_silent(True)
    yield
    Logger.set_silent(False)


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def wallets():
    """Ten funded-looking source identities."""
    return [Keypair() for _ in range(10)]


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def ledger():
    return FakeLedgerGateway()


@pytest.fixture
def relay():
    return FakeRelay()
