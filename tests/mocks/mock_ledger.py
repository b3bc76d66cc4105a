"""
Mock Ledger Gateway
===================
In-memory stand-in for LedgerGateway, plus a coordinator fake that applies
lookup-table instructions to it.
"""

import struct
from typing import Dict, List, Optional, Union

from solders.hash import Hash
from solders.pubkey import Pubkey

from bundle_forge.execution.lookup_table import ADDRESS_LOOKUP_TABLE_PROGRAM_ID
from bundle_forge.shared.execution.execution_result import SubmissionOutcome, accepted
from bundle_forge.shared.execution.schemas import LookupTableSnapshot, SimulationReport, ValidityToken


class FakeLedgerGateway:
    """
    Mock ledger.

    Every get_slot() advances the slot by one so "slot past last extension"
    becomes true on the next poll.

    Usage:
        ledger = FakeLedgerGateway()
        ledger.send_errors.append(TransportError("connection reset"))
        ledger.confirm_results.append(ConfirmationTimeoutError("slow"))
    """

    def __init__(self, slot: int = 100_000, block_height: int = 200_000):
        self.slot = slot
        self.block_height = block_height
        self.balances: Dict[Pubkey, int] = {}
        self.tables: Dict[Pubkey, LookupTableSnapshot] = {}
        self.hidden_polls = 0  # get_lookup_table returns None this many times

        self.sent: list = []
        self.send_errors: List[Exception] = []
        self.blockhash_errors: List[Exception] = []
        self.slot_errors: List[Exception] = []
        self.confirm_results: List[Union[int, Exception]] = []
        self.simulation = SimulationReport(err="InstructionError", logs=["Program log: simulated"])

        self.blockhash_calls = 0
        self.simulate_calls = 0
        self.table_polls = 0

    async def get_latest_blockhash(self, commitment: str = "finalized") -> ValidityToken:
        self.blockhash_calls += 1
        if self.blockhash_errors:
            raise self.blockhash_errors.pop(0)
        return ValidityToken(Hash.new_unique(), self.block_height + 150)

    async def get_slot(self, commitment: str = "finalized") -> int:
        if self.slot_errors:
            raise self.slot_errors.pop(0)
        self.slot += 1
        return self.slot

    async def get_block_height(self, commitment: str = "confirmed") -> int:
        return self.block_height

    async def get_balance(self, account: Pubkey, commitment: str = "confirmed") -> int:
        return self.balances.get(account, 0)

    async def get_lookup_table(self, address: Pubkey, commitment: str = "confirmed") -> Optional[LookupTableSnapshot]:
        self.table_polls += 1
        if self.hidden_polls > 0:
            self.hidden_polls -= 1
            return None
        return self.tables.get(address)

    async def send_transaction(self, tx, skip_preflight: bool = False, preflight_commitment: str = "confirmed") -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(tx)
        return str(tx.signatures[0])

    async def confirm_transaction(self, signature, token, commitment="confirmed", timeout=30, poll_interval=0.5) -> int:
        if self.confirm_results:
            result = self.confirm_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self.slot

    async def simulate_transaction(self, tx) -> SimulationReport:
        self.simulate_calls += 1
        return self.simulation

    async def close(self) -> None:
        pass

    # =========================================================================
    # LOOKUP TABLE PROGRAM
    # =========================================================================

    def apply_table_instruction(self, instruction) -> None:
        """Execute a create/extend instruction against the in-memory tables."""
        if instruction.program_id != ADDRESS_LOOKUP_TABLE_PROGRAM_ID:
            return
        table = instruction.accounts[0].pubkey
        discriminator = struct.unpack_from("<I", bytes(instruction.data), 0)[0]
        if discriminator == 0:
            self.tables[table] = LookupTableSnapshot(key=table, addresses=())
        elif discriminator == 2:
            data = bytes(instruction.data)
            count = struct.unpack_from("<Q", data, 4)[0]
            new = tuple(Pubkey.from_bytes(data[12 + 32 * i:44 + 32 * i]) for i in range(count))
            current = self.tables[table]
            self.tables[table] = LookupTableSnapshot(
                key=table,
                addresses=current.addresses + new,
                last_extended_slot=self.slot,
                last_extended_slot_start_index=len(current.addresses),
            )


class FakeCoordinator:
    """
    Mock SubmissionCoordinator.

    Scripted outcomes are returned in order; once exhausted every batch is
    accepted. Accepted batches run their lookup-table instructions on the
    ledger fake.
    """

    def __init__(self, ledger: FakeLedgerGateway, outcomes: Optional[List[SubmissionOutcome]] = None):
        self.ledger = ledger
        self.outcomes = list(outcomes or [])
        self.batches: list = []

    async def submit(self, batch, commitment=None, timeout=None) -> SubmissionOutcome:
        self.batches.append(batch)
        outcome = self.outcomes.pop(0) if self.outcomes else accepted(f"sig-{len(self.batches)}", slot=self.ledger.slot)
        if outcome.definitely_succeeded:
            for op in batch.operations:
                self.ledger.apply_table_instruction(op.instruction)
        return outcome

    async def submit_all(self, batches, commitment=None, stop_on_failure=False):
        outcomes = []
        for batch in batches:
            outcome = await self.submit(batch, commitment=commitment)
            outcomes.append(outcome)
            if stop_on_failure and not outcome.definitely_succeeded:
                break
        return outcomes
