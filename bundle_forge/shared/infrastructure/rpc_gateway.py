"""
Ledger RPC Gateway (Async)
==========================
The only module that talks to a Solana node.

Wraps solana-py's AsyncClient behind the small set of primitives the
submission core needs, and maps node failures onto the submission error
taxonomy so callers never see library exception types.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from bundle_forge.config.settings import Settings
from bundle_forge.shared.execution.errors import (
    ConfirmationTimeoutError,
    ProgramError,
    StaleTokenError,
    TransportError,
    classify_rpc_error,
    to_error,
)
from bundle_forge.shared.execution.schemas import (
    LookupTableDecodeError,
    LookupTableSnapshot,
    SimulationReport,
    ValidityToken,
)
from bundle_forge.shared.system.logging import Logger


_COMMITMENT_RANK = (
    ("processed", TransactionConfirmationStatus.Processed),
    ("confirmed", TransactionConfirmationStatus.Confirmed),
    ("finalized", TransactionConfirmationStatus.Finalized),
)


def _rank_of_commitment(commitment: str) -> int:
    for rank, (name, _) in enumerate(_COMMITMENT_RANK):
        if name == commitment:
            return rank
    raise ValueError(f"Unknown commitment level: {commitment}")


def _rank_of_status(status: Optional[TransactionConfirmationStatus]) -> int:
    for rank, (_, member) in enumerate(_COMMITMENT_RANK):
        if status == member:
            return rank
    return -1


def _rpc_exception_details(e: RPCException) -> tuple:
    """Pull message and simulation logs out of an RPCException payload."""
    payload = e.args[0] if e.args else e
    message = getattr(payload, "message", None) or str(payload)
    data = getattr(payload, "data", None)
    logs = list(getattr(data, "logs", None) or [])
    err = getattr(data, "err", None)
    if err is not None:
        message = f"{message} {err}"
    return message, logs


class LedgerGateway:
    """
    Ledger boundary used by every component.

    Shared read-only: safe to use from independent flows concurrently.

    Usage:
        gateway = LedgerGateway(Settings.RPC_URL)
        token = await gateway.get_latest_blockhash("finalized")
        sig = await gateway.send_transaction(tx)
        slot = await gateway.confirm_transaction(sig, token, "confirmed")
    """

    def __init__(self, url: str = Settings.RPC_URL, client: Optional[AsyncClient] = None):
        self.url = url
        self.client = client or AsyncClient(url)

    async def close(self) -> None:
        await self.client.close()

    async def _call(self, label: str, coro):
        try:
            return await coro
        except RPCException as e:
            message, logs = _rpc_exception_details(e)
            raise to_error(f"{label}: {message}", logs=logs) from e
        except (SolanaRpcException, httpx.HTTPError, OSError) as e:
            raise TransportError(f"{label}: {e}") from e

    # =========================================================================
    # READS
    # =========================================================================

    async def get_latest_blockhash(self, commitment: str = Settings.BLOCKHASH_COMMITMENT) -> ValidityToken:
        resp = await self._call("getLatestBlockhash", self.client.get_latest_blockhash(Commitment(commitment)))
        return ValidityToken(
            blockhash=resp.value.blockhash,
            last_valid_block_height=resp.value.last_valid_block_height,
        )

    async def get_slot(self, commitment: str = "finalized") -> int:
        resp = await self._call("getSlot", self.client.get_slot(Commitment(commitment)))
        return resp.value

    async def get_block_height(self, commitment: str = Settings.COMMITMENT_LEVEL) -> int:
        resp = await self._call("getBlockHeight", self.client.get_block_height(Commitment(commitment)))
        return resp.value

    async def get_balance(self, account: Pubkey, commitment: str = Settings.COMMITMENT_LEVEL) -> int:
        resp = await self._call("getBalance", self.client.get_balance(account, Commitment(commitment)))
        return resp.value

    async def get_lookup_table(
        self,
        address: Pubkey,
        commitment: str = Settings.COMMITMENT_LEVEL,
    ) -> Optional[LookupTableSnapshot]:
        """Decoded table, or None while the account is not visible to the node."""
        resp = await self._call("getAccountInfo", self.client.get_account_info(address, Commitment(commitment)))
        if resp.value is None:
            return None
        try:
            return LookupTableSnapshot.decode(address, bytes(resp.value.data))
        except LookupTableDecodeError as e:
            Logger.warning(f"[RPC] {address} is not a lookup table yet: {e}")
            return None

    # =========================================================================
    # WRITES
    # =========================================================================

    async def send_transaction(
        self,
        tx: VersionedTransaction,
        skip_preflight: bool = Settings.SKIP_PREFLIGHT,
        preflight_commitment: str = Settings.COMMITMENT_LEVEL,
    ) -> str:
        opts = TxOpts(
            skip_confirmation=True,
            skip_preflight=skip_preflight,
            preflight_commitment=Commitment(preflight_commitment),
        )
        resp = await self._call("sendTransaction", self.client.send_raw_transaction(bytes(tx), opts=opts))
        return str(resp.value)

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationReport:
        resp = await self._call("simulateTransaction", self.client.simulate_transaction(tx, sig_verify=False))
        value = resp.value
        return SimulationReport(
            err=str(value.err) if value.err is not None else None,
            logs=list(value.logs or []),
            units_consumed=value.units_consumed,
        )

    async def confirm_transaction(
        self,
        signature: str,
        token: ValidityToken,
        commitment: str = Settings.COMMITMENT_LEVEL,
        timeout: float = Settings.CONFIRM_TIMEOUT_S,
        poll_interval: float = Settings.CONFIRM_POLL_S,
    ) -> int:
        """
        Wait until the signature reaches the commitment level.

        Returns the slot. Raises ProgramError subclasses when the transaction
        failed on-chain, StaleTokenError once the blockhash expired unconfirmed,
        and ConfirmationTimeoutError when the deadline passes first.
        """
        wanted = _rank_of_commitment(commitment)
        sig = Signature.from_string(signature)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            resp = await self._call("getSignatureStatuses", self.client.get_signature_statuses([sig]))
            status = resp.value[0] if resp.value else None

            if status is not None:
                if status.err is not None:
                    message = str(status.err)
                    error_cls = classify_rpc_error(message)
                    if error_cls is TransportError:
                        error_cls = ProgramError
                    raise error_cls(f"Transaction {signature[:16]}... failed: {message}")
                if _rank_of_status(status.confirmation_status) >= wanted:
                    return status.slot
            else:
                height = await self.get_block_height(commitment)
                if height > token.last_valid_block_height:
                    raise StaleTokenError(
                        f"Blockhash {str(token)[:16]}... expired before {signature[:16]}... confirmed"
                    )

            await asyncio.sleep(poll_interval)

        raise ConfirmationTimeoutError(f"{signature[:16]}... not {commitment} after {timeout:.0f}s")
