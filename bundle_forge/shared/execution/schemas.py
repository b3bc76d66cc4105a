"""
Ledger & Relay Schemas
======================
Typed views of what the node and the block engine hand back.

These types form the boundary language:
- ValidityToken: recent blockhash plus its expiry height
- LookupTableSnapshot: decoded Address Lookup Table account
- SimulationReport: diagnostic simulation result
- BundleStatusReport: relay status for one bundle id
- BundleResultEvent: one message from the relay result stream
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDITY TOKEN
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ValidityToken:
    """A recent blockhash and the last block height at which it is accepted."""

    blockhash: Hash
    last_valid_block_height: int

    def __str__(self) -> str:
        return str(self.blockhash)


# ═══════════════════════════════════════════════════════════════════════════════
# LOOKUP TABLE ACCOUNT
# ═══════════════════════════════════════════════════════════════════════════════

LOOKUP_TABLE_META_SIZE = 56
_META_HEAD = struct.Struct("<IQQB")  # discriminator, deactivation, last_extended, start_index
_ACTIVE_DEACTIVATION_SLOT = 2**64 - 1


class LookupTableDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class LookupTableSnapshot:
    """Immutable view of an on-chain lookup table at one point in time."""

    key: Pubkey
    addresses: Tuple[Pubkey, ...]
    last_extended_slot: int = 0
    last_extended_slot_start_index: int = 0
    deactivation_slot: int = _ACTIVE_DEACTIVATION_SLOT
    authority: Optional[Pubkey] = None

    @classmethod
    def decode(cls, key: Pubkey, data: bytes) -> "LookupTableSnapshot":
        """Decode raw account data (56-byte meta followed by 32-byte addresses)."""
        if len(data) < LOOKUP_TABLE_META_SIZE:
            raise LookupTableDecodeError(f"Lookup table data too short: {len(data)} bytes")

        discriminator, deactivation, last_extended, start_index = _META_HEAD.unpack_from(data, 0)
        if discriminator != 1:
            raise LookupTableDecodeError(f"Not a lookup table account (discriminator={discriminator})")

        offset = _META_HEAD.size
        authority = None
        if data[offset] == 1:
            authority = Pubkey.from_bytes(bytes(data[offset + 1:offset + 33]))

        body = data[LOOKUP_TABLE_META_SIZE:]
        if len(body) % 32:
            raise LookupTableDecodeError(f"Trailing bytes in address list: {len(body) % 32}")
        addresses = tuple(
            Pubkey.from_bytes(bytes(body[i:i + 32])) for i in range(0, len(body), 32)
        )
        return cls(
            key=key,
            addresses=addresses,
            last_extended_slot=last_extended,
            last_extended_slot_start_index=start_index,
            deactivation_slot=deactivation,
            authority=authority,
        )

    @property
    def is_deactivated(self) -> bool:
        return self.deactivation_slot != _ACTIVE_DEACTIVATION_SLOT

    def contains_all(self, expected) -> bool:
        present = set(self.addresses)
        return all(address in present for address in expected)

    def index_of(self, address: Pubkey) -> Optional[int]:
        try:
            return self.addresses.index(address)
        except ValueError:
            return None

    def to_account(self) -> AddressLookupTableAccount:
        """solders form consumed by MessageV0.try_compile."""
        return AddressLookupTableAccount(key=self.key, addresses=list(self.addresses))

    def __len__(self) -> int:
        return len(self.addresses)


# ═══════════════════════════════════════════════════════════════════════════════
# SIMULATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SimulationReport:
    err: Optional[str] = None
    logs: list = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.err is None


# ═══════════════════════════════════════════════════════════════════════════════
# RELAY STATUS
# ═══════════════════════════════════════════════════════════════════════════════

class RelayBundleStatus(Enum):
    PENDING = "pending"
    LANDED = "landed"
    FAILED = "failed"


@dataclass(frozen=True)
class BundleStatusReport:
    bundle_id: str
    status: RelayBundleStatus
    detail: str = ""
    slot: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RelayBundleStatus.PENDING


@dataclass(frozen=True)
class BundleResultEvent:
    """
    Asynchronous accept/reject message keyed by bundle id.

    accepted=True carries the landing slot; accepted=False carries the relay's
    rejection reason verbatim. Informational events (neither) are ignored.
    """

    bundle_id: str
    accepted: Optional[bool] = None
    reason: str = ""
    slot: Optional[int] = None
