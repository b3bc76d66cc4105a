"""
Bundle Submitter
================
Jito bundle submission and confirmation handling.

State machine per bundle:

    BUILDING ──tip signed──► TIP_SIGNED ──sendBundle──► SUBMITTED ──► ACCEPTED
                                  │                         ├──────► REJECTED
                                  └──relay refuses──► REJECTED └─────► TIMED_OUT

Wire order is always [tip, batch₁, batch₂, …], all signed against one
blockhash. The bundle id returned by the relay is only a correlation key:
acceptance comes from the result stream or from status polling, whichever
reports first. TIMED_OUT is reported apart from REJECTED because a bundle
with no terminal status may still land. A sendBundle that never answers
leaves the ticket at TIP_SIGNED and is reported TIMED_OUT under the tip
signature.
"""

from __future__ import annotations

import asyncio
import base64
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import base58
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from bundle_forge.config.settings import Settings
from bundle_forge.execution.types import TransactionBatch
from bundle_forge.shared.execution.errors import (
    BundleForgeError,
    BundleRejectedError,
    BundleTimeoutError,
    TransportError,
)
from bundle_forge.shared.execution.execution_result import (
    OutcomeStatus,
    SubmissionOutcome,
    accepted,
    errored,
    rejected,
    timed_out,
)
from bundle_forge.shared.execution.schemas import (
    BundleResultEvent,
    RelayBundleStatus,
    ValidityToken,
)
from bundle_forge.shared.system.logging import Logger
from bundle_forge.shared.system.retry import RetryPolicy


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

class RejectionPolicy(Enum):
    """What a multi-bundle submission does after a sub-bundle is not accepted."""

    ABORT = "abort"
    CONTINUE = "continue"


@dataclass(frozen=True)
class BundleConfig:
    tip_lamports: int = Settings.JITO_FEE
    max_bundle_size: int = Settings.MAX_BUNDLE_SIZE  # transactions, tip included
    timeout_sec: float = Settings.BUNDLE_TIMEOUT_S
    poll_interval_sec: float = Settings.BUNDLE_POLL_S
    encoding: str = Settings.BUNDLE_ENCODING
    rejection_policy: RejectionPolicy = RejectionPolicy(Settings.BUNDLE_REJECTION_POLICY)
    blockhash_commitment: str = Settings.BLOCKHASH_COMMITMENT
    tip_accounts: tuple = tuple(Settings.JITO_TIP_ACCOUNTS)
    refresh_tip_accounts: bool = False
    max_retries: int = Settings.RETRY_MAX_ATTEMPTS
    retry_delay_sec: float = Settings.RETRY_BASE_DELAY_S

    @property
    def batches_per_bundle(self) -> int:
        return self.max_bundle_size - 1


class BundleState(Enum):
    BUILDING = "BUILDING"
    TIP_SIGNED = "TIP_SIGNED"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"


TERMINAL_STATES = (BundleState.ACCEPTED, BundleState.REJECTED, BundleState.TIMED_OUT)

_TRANSITIONS = {
    BundleState.BUILDING: (BundleState.TIP_SIGNED,),
    BundleState.TIP_SIGNED: (BundleState.SUBMITTED, BundleState.REJECTED),
    BundleState.SUBMITTED: TERMINAL_STATES,
}


class BundleResultSource(Protocol):
    """Optional relay result stream. subscribe() returns an unsubscribe callable."""

    def subscribe(self, callback: Callable[[BundleResultEvent], None]) -> Callable[[], None]:
        ...


@dataclass
class BundleTicket:
    """Tracks one bundle through the state machine. Terminal state is written once."""

    index: int
    batches: List[TransactionBatch]
    state: BundleState = BundleState.BUILDING
    bundle_id: Optional[str] = None
    tip_account: Optional[Pubkey] = None
    tip_signature: Optional[str] = None
    reason: Optional[str] = None
    slot: Optional[int] = None
    history: List[BundleState] = field(default_factory=lambda: [BundleState.BUILDING])

    def advance(self, new_state: BundleState) -> None:
        allowed = _TRANSITIONS.get(self.state, ())
        if new_state not in allowed:
            raise RuntimeError(f"Bundle {self.index}: illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class MultiBundleOutcome:
    """Aggregate of sequential sub-bundle submissions."""

    outcomes: List[SubmissionOutcome] = field(default_factory=list)
    tickets: List[BundleTicket] = field(default_factory=list)
    skipped: int = 0

    @property
    def all_accepted(self) -> bool:
        return (
            self.skipped == 0
            and bool(self.outcomes)
            and all(o.definitely_succeeded for o in self.outcomes)
        )

    @property
    def bundle_ids(self) -> List[str]:
        return [t.bundle_id for t in self.tickets if t.bundle_id]

    @property
    def status(self) -> OutcomeStatus:
        if self.all_accepted:
            return OutcomeStatus.ACCEPTED
        if any(o.unknown for o in self.outcomes):
            return OutcomeStatus.TIMED_OUT
        if any(o.status == OutcomeStatus.ERROR for o in self.outcomes):
            return OutcomeStatus.ERROR
        return OutcomeStatus.REJECTED


def encode_transaction(tx: VersionedTransaction, encoding: str) -> str:
    raw = bytes(tx)
    if encoding == "base64":
        return base64.b64encode(raw).decode("utf-8")
    if encoding == "base58":
        return base58.b58encode(raw).decode("utf-8")
    raise ValueError(f"Unsupported bundle encoding: {encoding}")


# ═══════════════════════════════════════════════════════════════════════════════
# BUNDLE SUBMITTER
# ═══════════════════════════════════════════════════════════════════════════════

class BundleSubmitter:
    """
    Usage:
        submitter = BundleSubmitter(gateway, JitoAdapter(), rng=random.Random(7))
        result = await submitter.submit(batches, fee_payer)
        if result.all_accepted: ...
    """

    def __init__(
        self,
        gateway: Any,
        relay: Any,
        config: Optional[BundleConfig] = None,
        result_source: Optional[BundleResultSource] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.relay = relay
        self.config = config or BundleConfig()
        self.result_source = result_source
        self.rng = rng or random.Random()
        self._sleep = sleep

        if self.config.batches_per_bundle < 1:
            raise ValueError("max_bundle_size must leave room for the tip transaction")

        # Statistics
        self._submissions = 0
        self._accepted = 0
        self._rejected = 0
        self._timeouts = 0

    # =========================================================================
    # BUILDING
    # =========================================================================

    async def choose_tip_account(self) -> Pubkey:
        """Uniform pick from the relay-published candidates."""
        candidates = list(self.config.tip_accounts)
        if self.config.refresh_tip_accounts:
            candidates = await self.relay.get_tip_accounts() or candidates
        if not candidates:
            raise BundleForgeError("No tip accounts available")
        return Pubkey.from_string(self.rng.choice(candidates))

    def build_tip_transaction(self, fee_payer: Keypair, tip_account: Pubkey, token: ValidityToken) -> VersionedTransaction:
        """Single transfer to the tip account, signed by the fee payer alone."""
        tip_ix = transfer(TransferParams(
            from_pubkey=fee_payer.pubkey(),
            to_pubkey=tip_account,
            lamports=self.config.tip_lamports,
        ))
        message = MessageV0.try_compile(
            payer=fee_payer.pubkey(),
            instructions=[tip_ix],
            address_lookup_table_accounts=[],
            recent_blockhash=token.blockhash,
        )
        return VersionedTransaction(message, [fee_payer])

    def split(self, batches: List[TransactionBatch]) -> List[List[TransactionBatch]]:
        size = self.config.batches_per_bundle
        return [batches[i:i + size] for i in range(0, len(batches), size)]

    # =========================================================================
    # SINGLE BUNDLE
    # =========================================================================

    async def submit_bundle(
        self,
        batches: List[TransactionBatch],
        fee_payer: Optional[Keypair] = None,
        index: int = 0,
    ) -> SubmissionOutcome:
        outcome, _ = await self._run_bundle(batches, fee_payer, index)
        return outcome

    async def _run_bundle(self, batches, fee_payer, index):
        if not batches:
            raise ValueError("A bundle needs at least one batch")
        if len(batches) > self.config.batches_per_bundle:
            raise ValueError(
                f"{len(batches)} batches exceed {self.config.batches_per_bundle} per bundle; use submit()"
            )

        start_time = time.time()
        self._submissions += 1
        fee_payer = fee_payer or batches[0].fee_payer
        ticket = BundleTicket(index=index, batches=list(batches))

        def elapsed_ms() -> float:
            return (time.time() - start_time) * 1000

        try:
            # BUILDING
            token = await self._transport_policy(f"blockhash for bundle #{index}").run(
                lambda: self.gateway.get_latest_blockhash(self.config.blockhash_commitment)
            )
            ticket.tip_account = await self.choose_tip_account()
            tip_tx = self.build_tip_transaction(fee_payer, ticket.tip_account, token)
            ticket.tip_signature = str(tip_tx.signatures[0])
            ticket.advance(BundleState.TIP_SIGNED)
            Logger.debug(f"[BUNDLE] #{index} tip {self.config.tip_lamports} lamports -> {ticket.tip_account}")

            # TIP_SIGNED
            wire = [encode_transaction(tip_tx, self.config.encoding)]
            wire += [encode_transaction(batch.sign(token), self.config.encoding) for batch in batches]
        except BundleForgeError as e:
            Logger.error(f"[BUNDLE] #{index} could not be built: {e}")
            return errored(e, latency_ms=elapsed_ms()), ticket

        queue: Optional[asyncio.Queue] = None
        unsubscribe = None
        if self.result_source is not None:
            loop = asyncio.get_running_loop()
            queue = asyncio.Queue()
            unsubscribe = self.result_source.subscribe(
                lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
            )

        try:
            try:
                ticket.bundle_id = await self._send(wire, index)
            except BundleRejectedError as e:
                return self._finish_rejected(ticket, e.reason, e, elapsed_ms()), ticket
            except TransportError as e:
                return self._finish_unacknowledged(ticket, e, elapsed_ms()), ticket
            except BundleForgeError as e:
                Logger.error(f"[BUNDLE] #{index} submission failed: {e}")
                return errored(e, latency_ms=elapsed_ms()), ticket

            ticket.advance(BundleState.SUBMITTED)
            Logger.info(f"[BUNDLE] #{index} submitted ({len(wire)} txs): {ticket.bundle_id}")
            return await self._await_terminal(ticket, queue, start_time), ticket
        finally:
            if unsubscribe is not None:
                unsubscribe()

    def _transport_policy(self, label: str) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_delay_sec,
            is_recoverable=lambda e: isinstance(e, TransportError),
            label=label,
            sleep=self._sleep,
        )

    async def _send(self, wire: List[str], index: int) -> str:
        policy = self._transport_policy(f"sendBundle #{index}")
        return await policy.run(lambda: self.relay.send_bundle(wire, encoding=self.config.encoding))

    async def _await_terminal(
        self,
        ticket: BundleTicket,
        queue: Optional[asyncio.Queue],
        start_time: float,
    ) -> SubmissionOutcome:
        """First of: stream event for our id, or a terminal poll status. Bounded by the timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout_sec

        def elapsed_ms() -> float:
            return (time.time() - start_time) * 1000

        while True:
            event = self._drain(queue, ticket.bundle_id)
            if event is not None:
                if event.accepted:
                    return self._finish_accepted(ticket, event.slot, elapsed_ms())
                return self._finish_rejected(ticket, event.reason, None, elapsed_ms())

            try:
                report = await self.relay.get_bundle_status(ticket.bundle_id)
            except TransportError as e:
                Logger.debug(f"[BUNDLE] Status check error: {e}")
                report = None
            if report is not None and report.status == RelayBundleStatus.LANDED:
                return self._finish_accepted(ticket, report.slot, elapsed_ms())
            if report is not None and report.status == RelayBundleStatus.FAILED:
                return self._finish_rejected(ticket, report.detail, None, elapsed_ms())

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            wait = min(self.config.poll_interval_sec, remaining)
            if queue is None:
                await self._sleep(wait)
            else:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=wait)
                    queue.put_nowait(event)
                except asyncio.TimeoutError:
                    pass

        ticket.advance(BundleState.TIMED_OUT)
        self._timeouts += 1
        Logger.warning(
            f"[BUNDLE] #{ticket.index} {ticket.bundle_id}: no terminal status after "
            f"{self.config.timeout_sec:.0f}s (may still land)"
        )
        error = BundleTimeoutError("Bundle status unknown after timeout", bundle_id=ticket.bundle_id)
        return timed_out(ticket.bundle_id, error=error, latency_ms=elapsed_ms())

    @staticmethod
    def _drain(queue: Optional[asyncio.Queue], bundle_id: str) -> Optional[BundleResultEvent]:
        """First decisive event for bundle_id; everything else is discarded."""
        if queue is None:
            return None
        while not queue.empty():
            event = queue.get_nowait()
            if event.bundle_id == bundle_id and event.accepted is not None:
                return event
        return None

    def _finish_accepted(self, ticket: BundleTicket, slot: Optional[int], latency_ms: float) -> SubmissionOutcome:
        ticket.advance(BundleState.ACCEPTED)
        ticket.slot = slot
        self._accepted += 1
        Logger.success(f"[BUNDLE] #{ticket.index} LANDED: {ticket.bundle_id}" + (f" at slot {slot}" if slot else ""))
        return accepted(ticket.bundle_id, slot=slot, latency_ms=latency_ms)

    def _finish_rejected(
        self,
        ticket: BundleTicket,
        reason: str,
        error: Optional[BaseException],
        latency_ms: float,
    ) -> SubmissionOutcome:
        ticket.advance(BundleState.REJECTED)
        ticket.reason = reason
        self._rejected += 1
        Logger.error(f"[BUNDLE] #{ticket.index} REJECTED: {reason}")
        error = error or BundleRejectedError(reason, bundle_id=ticket.bundle_id)
        outcome = rejected(reason, error=error, latency_ms=latency_ms)
        outcome.confirmation_id = ticket.bundle_id
        return outcome

    def _finish_unacknowledged(self, ticket: BundleTicket, error: TransportError, latency_ms: float) -> SubmissionOutcome:
        """
        sendBundle never answered. The relay may still have the bundle, so the
        outcome is unknown and keyed by the tip signature, which lands if and
        only if the bundle does.
        """
        ticket.reason = f"sendBundle unacknowledged: {error}"
        self._timeouts += 1
        Logger.warning(
            f"[BUNDLE] #{ticket.index} {ticket.reason}; check tip {ticket.tip_signature[:16]}... later"
        )
        outcome = timed_out(ticket.tip_signature, error=error, latency_ms=latency_ms)
        outcome.reason = ticket.reason
        return outcome

    # =========================================================================
    # MULTI BUNDLE
    # =========================================================================

    async def submit(
        self,
        batches: List[TransactionBatch],
        fee_payer: Optional[Keypair] = None,
        policy: Optional[RejectionPolicy] = None,
    ) -> MultiBundleOutcome:
        """
        Split into sub-bundles that fit the relay ceiling and submit them in order.

        Success means every sub-bundle reached ACCEPTED. Under ABORT the first
        sub-bundle that is not accepted stops the remaining ones.
        """
        policy = policy or self.config.rejection_policy
        groups = self.split(list(batches))
        result = MultiBundleOutcome()
        Logger.info(
            f"[BUNDLE] {len(batches)} batches -> {len(groups)} bundles "
            f"(max {self.config.max_bundle_size} txs each, tip included)"
        )

        for i, group in enumerate(groups):
            outcome, ticket = await self._run_bundle(group, fee_payer, index=i)
            result.outcomes.append(outcome)
            result.tickets.append(ticket)
            if not outcome.definitely_succeeded and policy == RejectionPolicy.ABORT:
                result.skipped = len(groups) - i - 1
                if result.skipped:
                    Logger.warning(f"[BUNDLE] Aborting: {result.skipped} bundles not submitted")
                break

        accepted_count = sum(1 for o in result.outcomes if o.definitely_succeeded)
        Logger.info(f"[BUNDLE] {accepted_count}/{len(groups)} bundles accepted")
        return result

    def get_stats(self) -> dict:
        return {
            "submissions": self._submissions,
            "accepted": self._accepted,
            "rejected": self._rejected,
            "timeouts": self._timeouts,
        }
