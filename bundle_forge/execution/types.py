"""
Execution Type Definitions
==========================
Dataclasses the packer, the table manager and the submitters pass around.

- Operation: one instruction plus its label
- TransactionBatch: an ordered chunk of operations with its signers
- LookupTableHandle: lifecycle state of a table this process created
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from bundle_forge.shared.execution.schemas import LookupTableSnapshot, ValidityToken


@dataclass(frozen=True)
class Operation:
    """One atomic instruction against the ledger."""

    instruction: Instruction
    label: str = ""

    @property
    def program_id(self) -> Pubkey:
        return self.instruction.program_id

    @property
    def accounts(self) -> Tuple[Pubkey, ...]:
        return tuple(meta.pubkey for meta in self.instruction.accounts)

    @property
    def required_signers(self) -> Tuple[Pubkey, ...]:
        seen = []
        for meta in self.instruction.accounts:
            if meta.is_signer and meta.pubkey not in seen:
                seen.append(meta.pubkey)
        return tuple(seen)

    @property
    def encoded_cost(self) -> int:
        """Rough compiled cost: program index, account indices, data, length prefixes."""
        return 1 + 1 + len(self.instruction.accounts) + 2 + len(self.instruction.data)

    def __repr__(self) -> str:
        name = self.label or str(self.program_id)[:8]
        return f"Operation({name}, accounts={len(self.instruction.accounts)})"


@dataclass
class TransactionBatch:
    """
    An ordered chunk of operations ready to be signed.

    signers always starts with the fee payer and holds each identity once.
    The message is compiled against a placeholder blockhash at pack time;
    sign() recompiles against a fresh token.
    """

    operations: List[Operation]
    fee_payer: Keypair
    signers: List[Keypair]
    lookup_table: Optional[LookupTableSnapshot] = None
    message: Optional[MessageV0] = None
    serialized_size: int = 0
    index: int = 0
    token: Optional[ValidityToken] = None

    @property
    def instructions(self) -> List[Instruction]:
        return [op.instruction for op in self.operations]

    @property
    def signer_keys(self) -> List[Pubkey]:
        return [kp.pubkey() for kp in self.signers]

    def compile(self, blockhash: Hash) -> MessageV0:
        tables = [self.lookup_table.to_account()] if self.lookup_table is not None else []
        return MessageV0.try_compile(
            payer=self.fee_payer.pubkey(),
            instructions=self.instructions,
            address_lookup_table_accounts=tables,
            recent_blockhash=blockhash,
        )

    def sign(self, token: ValidityToken) -> VersionedTransaction:
        """Compile against the token and sign with every required identity."""
        message = self.compile(token.blockhash)
        self.token = token
        return VersionedTransaction(message, self.signers)

    def __len__(self) -> int:
        return len(self.operations)

    def __repr__(self) -> str:
        table = " +ALT" if self.lookup_table is not None else ""
        return (
            f"TransactionBatch(#{self.index}: {len(self.operations)} ops, "
            f"{len(self.signers)} signers, {self.serialized_size}B{table})"
        )


class TableState(Enum):
    """Lookup table lifecycle. Tables are never closed by this system."""

    PENDING = "PENDING"                  # creation sent, not confirmed
    CONFIRMED_EMPTY = "CONFIRMED_EMPTY"  # creation confirmed, no addresses
    EXTENDING = "EXTENDING"              # extension in flight
    ACTIVE = "ACTIVE"                    # extension confirmed and resolvable


@dataclass
class LookupTableHandle:
    address: Pubkey
    authority: Pubkey
    payer: Pubkey
    creation_slot: int
    state: TableState = TableState.PENDING
    addresses: List[Pubkey] = field(default_factory=list)
    snapshot: Optional[LookupTableSnapshot] = None

    @property
    def is_active(self) -> bool:
        return self.state == TableState.ACTIVE and self.snapshot is not None

    def __repr__(self) -> str:
        return (
            f"LookupTableHandle({str(self.address)[:8]}..., {self.state.value}, "
            f"{len(self.addresses)} addresses)"
        )
