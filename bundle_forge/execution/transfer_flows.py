"""
Transfer Flows
==============
Operation builders for the two lamport flows:

- sweep: many source wallets -> one destination, each keeping a rent
  reserve and a fee margin
- distribute: one source -> many recipients, fixed lamports each

Builders only produce Operations; packing and submission happen downstream.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from bundle_forge.config.settings import Settings
from bundle_forge.execution.types import Operation
from bundle_forge.shared.system.logging import Logger


def transfer_operation(source: Pubkey, destination: Pubkey, lamports: int, label: str = "") -> Operation:
    if lamports <= 0:
        raise ValueError(f"Transfer amount must be positive, got {lamports}")
    ix = transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=lamports))
    return Operation(ix, label=label or f"transfer {str(source)[:6]}->{str(destination)[:6]}")


def sweep_amount(
    balance: int,
    fixed_amount: Optional[int] = None,
    reserve: int = Settings.RENT_RESERVE_LAMPORTS,
    fee: int = Settings.TX_FEE_LAMPORTS,
) -> Optional[int]:
    """
    Lamports a wallet can send while keeping reserve + fee.

    None when the balance is at or below the margin. A fixed amount is used
    only when the balance covers it plus the margin; otherwise everything
    above the margin is sent.
    """
    margin = reserve + fee
    if balance <= margin:
        return None
    if fixed_amount and balance >= fixed_amount + margin:
        return fixed_amount
    return balance - margin


@dataclass(frozen=True)
class SweepPlan:
    """Operations plus the source identities that must sign them."""

    operations: List[Operation]
    signers: List[Keypair]
    skipped: List[Pubkey]

    @property
    def total_lamports(self) -> int:
        return sum(int.from_bytes(op.instruction.data[4:12], "little") for op in self.operations)


async def build_sweep_operations(
    gateway: Any,
    sources: Sequence[Keypair],
    destination: Pubkey,
    fixed_amount: Optional[int] = None,
    reserve: int = Settings.RENT_RESERVE_LAMPORTS,
    fee: int = Settings.TX_FEE_LAMPORTS,
) -> SweepPlan:
    """One transfer per funded source, in source order."""
    operations, signers, skipped = [], [], []
    for source in sources:
        balance = await gateway.get_balance(source.pubkey())
        amount = sweep_amount(balance, fixed_amount, reserve, fee)
        if amount is None:
            Logger.info(f"[FLOW] {source.pubkey()} has {balance} lamports, skipping")
            skipped.append(source.pubkey())
            continue
        Logger.debug(f"[FLOW] {source.pubkey()} sends {amount} of {balance} lamports")
        operations.append(transfer_operation(source.pubkey(), destination, amount, label=f"sweep {len(operations)}"))
        signers.append(source)

    Logger.info(f"[FLOW] Sweep: {len(operations)} transfers to {destination}, {len(skipped)} skipped")
    return SweepPlan(operations=operations, signers=signers, skipped=skipped)


def build_distribute_operations(source: Pubkey, recipients: Sequence[Pubkey], lamports: int) -> List[Operation]:
    """One transfer per recipient, in recipient order. Duplicate recipients are kept."""
    operations = [
        transfer_operation(source, recipient, lamports, label=f"distribute {i}")
        for i, recipient in enumerate(recipients)
    ]
    Logger.info(f"[FLOW] Distribute: {len(operations)} x {lamports} lamports from {source}")
    return operations
