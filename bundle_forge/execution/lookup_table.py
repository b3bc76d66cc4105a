"""
Lookup Table Manager
====================
Owns the Address Lookup Table lifecycle:

    PENDING ──confirm──► CONFIRMED_EMPTY ──extend──► EXTENDING ──visible──► ACTIVE

Creation and extension are separate instructions. The creating instruction
derives the table address from (authority, recent slot), so a stale slot is
retried with a freshly fetched one. Extensions for one table are issued
strictly one after another; the table is only handed to the packer once the
node resolves it with every submitted address present.
"""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from bundle_forge.config.settings import Settings
from bundle_forge.execution.batch_packer import BatchPacker, KeyringResolver, PackerConfig
from bundle_forge.execution.types import LookupTableHandle, Operation, TableState
from bundle_forge.shared.execution.errors import (
    CapacityExceededError,
    PropagationTimeoutError,
    StaleSlotError,
    TransportError,
)
from bundle_forge.shared.execution.schemas import LookupTableSnapshot
from bundle_forge.shared.system.logging import Logger
from bundle_forge.shared.system.retry import RetryPolicy


ADDRESS_LOOKUP_TABLE_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")

# Program instruction discriminators (bincode u32 enum tags)
_CREATE_LOOKUP_TABLE = 0
_EXTEND_LOOKUP_TABLE = 2

TableRef = Union[Pubkey, LookupTableHandle, LookupTableSnapshot]


@dataclass(frozen=True)
class TableConfig:
    extend_limit: int = Settings.LOOKUP_EXTEND_LIMIT
    table_capacity: int = Settings.LOOKUP_TABLE_CAPACITY
    extend_chunk: int = Settings.LOOKUP_EXTEND_CHUNK
    poll_retries: int = Settings.TABLE_POLL_RETRIES
    poll_interval: float = Settings.TABLE_POLL_INTERVAL_S
    creation_attempts: int = Settings.TABLE_CREATION_ATTEMPTS
    slot_attempts: int = Settings.RETRY_MAX_ATTEMPTS
    slot_retry_delay: float = Settings.RETRY_BASE_DELAY_S
    slot_commitment: str = "finalized"
    fuse_first_extension: bool = True


def derive_table_address(authority: Pubkey, recent_slot: int) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [bytes(authority), recent_slot.to_bytes(8, "little")],
        ADDRESS_LOOKUP_TABLE_PROGRAM_ID,
    )


def _address_of(table: TableRef) -> Pubkey:
    if isinstance(table, LookupTableHandle):
        return table.address
    if isinstance(table, LookupTableSnapshot):
        return table.key
    return table


def _existing_count(table: TableRef) -> Optional[int]:
    if isinstance(table, LookupTableHandle):
        return len(table.addresses)
    if isinstance(table, LookupTableSnapshot):
        return len(table.addresses)
    return None


def split_extension(addresses: Sequence[Pubkey], limit: int = Settings.LOOKUP_EXTEND_LIMIT) -> List[List[Pubkey]]:
    """Ordered extension chunks of at most `limit` addresses each."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    return [list(addresses[i:i + limit]) for i in range(0, len(addresses), limit)]


def unique_addresses(addresses: Sequence[Pubkey]) -> List[Pubkey]:
    """First-seen order, duplicates dropped. Extension itself never de-duplicates."""
    seen = set()
    ordered = []
    for address in addresses:
        if address not in seen:
            seen.add(address)
            ordered.append(address)
    return ordered


class AccountTableManager:
    """
    Usage:
        manager = AccountTableManager(gateway, coordinator)
        handle = await manager.ensure_table(authority, payer, addresses)
        batches = packer.pack(ops, payer, resolver, table=handle)
    """

    def __init__(
        self,
        gateway: Any,
        coordinator: Any = None,
        config: Optional[TableConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.coordinator = coordinator
        self.config = config or TableConfig()
        self._sleep = sleep

    # =========================================================================
    # INSTRUCTIONS
    # =========================================================================

    def create_table(self, authority: Pubkey, payer: Pubkey, current_slot: int) -> Tuple[Pubkey, Operation]:
        """Derive the table address for the slot and build its creation instruction."""
        address, bump = derive_table_address(authority, current_slot)
        data = struct.pack("<IQB", _CREATE_LOOKUP_TABLE, current_slot, bump)
        ix = Instruction(
            ADDRESS_LOOKUP_TABLE_PROGRAM_ID,
            data,
            [
                AccountMeta(address, is_signer=False, is_writable=True),
                AccountMeta(authority, is_signer=True, is_writable=False),
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        return address, Operation(ix, label="create_lookup_table")

    def extend_table(
        self,
        table: TableRef,
        authority: Pubkey,
        payer: Pubkey,
        addresses: Sequence[Pubkey],
    ) -> Operation:
        """Append addresses in the given order. Duplicates are kept."""
        if not addresses:
            raise ValueError("extend_table needs at least one address")
        if len(addresses) > self.config.extend_limit:
            raise CapacityExceededError(
                f"{len(addresses)} addresses exceed the per-call extension limit of {self.config.extend_limit}",
                requested=len(addresses),
                limit=self.config.extend_limit,
            )
        existing = _existing_count(table)
        if existing is not None and existing + len(addresses) > self.config.table_capacity:
            raise CapacityExceededError(
                f"{existing} existing + {len(addresses)} new exceed table capacity {self.config.table_capacity}",
                requested=existing + len(addresses),
                limit=self.config.table_capacity,
                account=str(_address_of(table)),
            )

        data = struct.pack("<IQ", _EXTEND_LOOKUP_TABLE, len(addresses)) + b"".join(bytes(a) for a in addresses)
        ix = Instruction(
            ADDRESS_LOOKUP_TABLE_PROGRAM_ID,
            data,
            [
                AccountMeta(_address_of(table), is_signer=False, is_writable=True),
                AccountMeta(authority, is_signer=True, is_writable=False),
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        return Operation(ix, label="extend_lookup_table")

    # =========================================================================
    # ON-CHAIN FLOWS
    # =========================================================================

    def _single_batch(self, ops: List[Operation], authority: Keypair, payer: Keypair):
        packer = BatchPacker(PackerConfig(max_ops_per_batch=len(ops)))
        result = packer.pack(ops, payer, KeyringResolver([authority, payer]), strict=True)
        return result.batches[0]

    async def _read_slot(self, commitment: str) -> int:
        policy = RetryPolicy(
            max_attempts=self.config.slot_attempts,
            base_delay=self.config.slot_retry_delay,
            is_recoverable=lambda e: isinstance(e, TransportError),
            label="getSlot",
            sleep=self._sleep,
        )
        return await policy.run(lambda: self.gateway.get_slot(commitment))

    async def _submit(self, ops: List[Operation], authority: Keypair, payer: Keypair):
        if self.coordinator is None:
            raise RuntimeError("AccountTableManager needs a SubmissionCoordinator for on-chain calls")
        batch = self._single_batch(ops, authority, payer)
        outcome = await self.coordinator.submit(batch)
        outcome.raise_for_outcome()
        return outcome

    async def create_table_on_chain(
        self,
        authority: Keypair,
        payer: Keypair,
        addresses: Sequence[Pubkey] = (),
    ) -> LookupTableHandle:
        """
        Create the table, optionally fused with the first extension chunk.

        A stale slot is retried with a re-fetched slot; the caller only sees it
        once every attempt is exhausted.
        """
        first_chunk = list(addresses[:self.config.extend_chunk]) if self.config.fuse_first_extension else []

        async def attempt() -> LookupTableHandle:
            slot = await self._read_slot(self.config.slot_commitment)
            address, create_op = self.create_table(authority.pubkey(), payer.pubkey(), slot)
            handle = LookupTableHandle(
                address=address,
                authority=authority.pubkey(),
                payer=payer.pubkey(),
                creation_slot=slot,
            )
            ops = [create_op]
            if first_chunk:
                ops.append(self.extend_table(handle, authority.pubkey(), payer.pubkey(), first_chunk))

            Logger.info(f"[TABLE] Creating lookup table {address} at slot {slot}")
            await self._submit(ops, authority, payer)

            if first_chunk:
                handle.addresses.extend(first_chunk)
                handle.state = TableState.EXTENDING
            else:
                handle.state = TableState.CONFIRMED_EMPTY
            Logger.success(f"[TABLE] Created {address} ({len(handle.addresses)} addresses)")
            return handle

        policy = RetryPolicy(
            max_attempts=self.config.slot_attempts,
            base_delay=self.config.slot_retry_delay,
            is_recoverable=lambda e: isinstance(e, StaleSlotError),
            label="create lookup table",
            sleep=self._sleep,
        )
        return await policy.run(attempt)

    async def extend_table_on_chain(
        self,
        handle: LookupTableHandle,
        authority: Keypair,
        payer: Keypair,
        addresses: Sequence[Pubkey],
        chunk_size: Optional[int] = None,
    ) -> LookupTableHandle:
        """Submit extensions one chunk at a time, each confirmed before the next."""
        chunks = split_extension(addresses, chunk_size or self.config.extend_chunk)
        for i, chunk in enumerate(chunks, start=1):
            op = self.extend_table(handle, authority.pubkey(), payer.pubkey(), chunk)
            handle.state = TableState.EXTENDING
            Logger.info(f"[TABLE] Extending {str(handle.address)[:8]}... chunk {i}/{len(chunks)} (+{len(chunk)})")
            await self._submit([op], authority, payer)
            handle.addresses.extend(chunk)
        return handle

    async def await_active(
        self,
        table: TableRef,
        max_retries: Optional[int] = None,
        interval: Optional[float] = None,
        expected: Optional[Sequence[Pubkey]] = None,
    ) -> LookupTableSnapshot:
        """
        Poll until the node resolves the table with every expected address and
        the slot has moved past the last extension.
        """
        max_retries = self.config.poll_retries if max_retries is None else max_retries
        interval = self.config.poll_interval if interval is None else interval
        address = _address_of(table)
        if expected is None and isinstance(table, LookupTableHandle):
            expected = list(table.addresses)
        expected = expected or []

        for i in range(1, max_retries + 1):
            try:
                snapshot = await self.gateway.get_lookup_table(address)
                if snapshot is not None and snapshot.contains_all(expected):
                    current_slot = await self.gateway.get_slot("confirmed") if expected else None
                    if current_slot is None or current_slot > snapshot.last_extended_slot:
                        if isinstance(table, LookupTableHandle):
                            table.snapshot = snapshot
                            table.state = TableState.ACTIVE
                        Logger.success(f"[TABLE] {address} active after {i} polls ({len(snapshot)} entries)")
                        return snapshot
            except TransportError as e:
                Logger.warning(f"[TABLE] Error fetching {str(address)[:8]}... on poll {i}: {e}")

            if i < max_retries:
                Logger.debug(f"[TABLE] Waiting for {str(address)[:8]}... ({i}/{max_retries})")
                await self._sleep(interval)

        raise PropagationTimeoutError(
            f"Lookup table not resolvable after {max_retries} polls", account=str(address)
        )

    async def ensure_table(
        self,
        authority: Keypair,
        payer: Keypair,
        addresses: Sequence[Pubkey],
    ) -> LookupTableHandle:
        """Create, extend and await a table holding `addresses`; retried whole on propagation timeout."""
        addresses = unique_addresses(addresses)
        if not addresses:
            raise ValueError("ensure_table needs at least one address")
        if len(addresses) > self.config.table_capacity:
            raise CapacityExceededError(
                f"{len(addresses)} addresses exceed table capacity {self.config.table_capacity}",
                requested=len(addresses),
                limit=self.config.table_capacity,
            )

        async def flow() -> LookupTableHandle:
            handle = await self.create_table_on_chain(authority, payer, addresses)
            remaining = addresses[len(handle.addresses):]
            if remaining:
                await self.extend_table_on_chain(handle, authority, payer, remaining)
            await self.await_active(handle)
            return handle

        Logger.section("Preparing Lookup Table")
        policy = RetryPolicy(
            max_attempts=self.config.creation_attempts,
            base_delay=0.0,
            is_recoverable=lambda e: isinstance(e, PropagationTimeoutError),
            label="lookup table creation flow",
            sleep=self._sleep,
        )
        return await policy.run(flow)
