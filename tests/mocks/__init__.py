"""
Bundle Forge Test Mocks
=======================
Reusable fakes for the ledger gateway and the block engine.
"""

from tests.mocks.mock_ledger import FakeCoordinator, FakeLedgerGateway
from tests.mocks.mock_relay import FakeRelay, FakeResultStream

__all__ = [
    "FakeLedgerGateway",
    "FakeCoordinator",
    "FakeRelay",
    "FakeResultStream",
]
