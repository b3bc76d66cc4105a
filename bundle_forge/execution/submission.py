"""
Submission Coordinator (direct RPC path)
========================================
fresh blockhash → sign → send → confirm(commitment, timeout) → classify

Each signing round fetches its own blockhash immediately before signing:
reusing one fetched earlier is the dominant cause of expired-token failures.
Once a signature has been handed to the node it is only ever polled, never
re-signed, unless its blockhash is proven expired.

Classification:
- TransportError before the send         → blockhash+sign+send retried
- TransportError while polling           → same signature polled again
- StaleTokenError                        → re-signed with a fresh blockhash
- ProgramError / InsufficientFundsError  → REJECTED at once, never retried
- ConfirmationTimeoutError, unreadable   → TIMED_OUT (may still land)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from bundle_forge.config.settings import Settings
from bundle_forge.execution.types import TransactionBatch
from bundle_forge.shared.execution.errors import (
    BundleForgeError,
    ConfirmationTimeoutError,
    ProgramError,
    StaleTokenError,
    TransportError,
)
from bundle_forge.shared.execution.execution_result import (
    SubmissionOutcome,
    accepted,
    errored,
    rejected,
    timed_out,
)
from bundle_forge.shared.execution.schemas import ValidityToken
from bundle_forge.shared.system.logging import Logger
from bundle_forge.shared.system.retry import RetryPolicy


def is_transient(error: BaseException) -> bool:
    """Recoverable before anything reached the node."""
    return isinstance(error, (TransportError, StaleTokenError))


@dataclass(frozen=True)
class SubmitterConfig:
    commitment: str = Settings.COMMITMENT_LEVEL
    blockhash_commitment: str = Settings.BLOCKHASH_COMMITMENT
    confirmation_timeout_sec: float = Settings.CONFIRM_TIMEOUT_S
    poll_interval_sec: float = Settings.CONFIRM_POLL_S
    skip_preflight: bool = Settings.SKIP_PREFLIGHT
    max_retries: int = Settings.RETRY_MAX_ATTEMPTS
    retry_delay_sec: float = Settings.RETRY_BASE_DELAY_S
    simulate_on_failure: bool = True


class SubmissionCoordinator:
    """
    Usage:
        coordinator = SubmissionCoordinator(gateway)
        outcome = await coordinator.submit(batch, commitment="finalized")
    """

    def __init__(self, gateway: Any, config: Optional[SubmitterConfig] = None, sleep=None):
        self.gateway = gateway
        self.config = config or SubmitterConfig()
        self._sleep = sleep

        # Statistics
        self._submissions = 0
        self._confirmations = 0
        self._rejections = 0
        self._timeouts = 0

    def _policy(self, label: str, is_recoverable, base_delay: float) -> RetryPolicy:
        retry_kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return RetryPolicy(
            max_attempts=self.config.max_retries,
            base_delay=base_delay,
            is_recoverable=is_recoverable,
            label=label,
            **retry_kwargs,
        )

    async def _sign_and_send(self, batch: TransactionBatch, commitment: str, state: dict) -> Tuple[ValidityToken, str]:
        state["attempts"] += 1
        token = await self.gateway.get_latest_blockhash(self.config.blockhash_commitment)
        tx = batch.sign(token)
        state["tx"] = tx

        signature = await self.gateway.send_transaction(
            tx,
            skip_preflight=self.config.skip_preflight,
            preflight_commitment=commitment,
        )
        state["signature"] = signature
        Logger.info(f"[SUBMIT] Batch {batch.index} sent: {signature[:16]}... ({batch.serialized_size}B)")
        return token, signature

    async def _await_confirmation(
        self,
        batch: TransactionBatch,
        signature: str,
        token: ValidityToken,
        commitment: str,
        timeout: float,
    ) -> int:
        """
        Poll one signature until it reaches the commitment level.

        Status-read failures re-poll the same signature within the deadline.
        If the status stays unreadable the result is unknown, never failed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async def poll() -> int:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConfirmationTimeoutError(f"{signature[:16]}... not {commitment} after {timeout:.0f}s")
            return await self.gateway.confirm_transaction(
                signature,
                token,
                commitment=commitment,
                timeout=remaining,
                poll_interval=self.config.poll_interval_sec,
            )

        policy = self._policy(
            f"batch {batch.index} status",
            lambda e: isinstance(e, TransportError),
            self.config.poll_interval_sec,
        )
        try:
            return await policy.run(poll)
        except TransportError as e:
            raise ConfirmationTimeoutError(f"{signature[:16]}... status unreadable: {e}") from e

    async def _send_and_confirm(self, batch: TransactionBatch, commitment: str, timeout: float, state: dict) -> int:
        send_policy = self._policy(f"batch {batch.index}", is_transient, self.config.retry_delay_sec)
        sleep = self._sleep or asyncio.sleep

        for round_no in range(1, self.config.max_retries + 1):
            token, signature = await send_policy.run(lambda: self._sign_and_send(batch, commitment, state))
            try:
                return await self._await_confirmation(batch, signature, token, commitment, timeout)
            except StaleTokenError:
                if round_no == self.config.max_retries:
                    raise
                Logger.info(f"[SUBMIT] Batch {batch.index} blockhash expired unconfirmed, re-signing")
                if self.config.retry_delay_sec > 0:
                    await sleep(self.config.retry_delay_sec)

        raise RuntimeError("unreachable")  # pragma: no cover

    async def submit(
        self,
        batch: TransactionBatch,
        commitment: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> SubmissionOutcome:
        commitment = commitment or self.config.commitment
        timeout = self.config.confirmation_timeout_sec if timeout is None else timeout
        start_time = time.time()
        self._submissions += 1
        state = {"attempts": 0, "signature": None, "tx": None}

        def elapsed_ms() -> float:
            return (time.time() - start_time) * 1000

        try:
            slot = await self._send_and_confirm(batch, commitment, timeout, state)
        except ConfirmationTimeoutError as e:
            self._timeouts += 1
            Logger.warning(f"[SUBMIT] Batch {batch.index} unconfirmed: status unknown ({e})")
            return timed_out(state["signature"], error=e, attempts=state["attempts"], latency_ms=elapsed_ms())
        except ProgramError as e:
            self._rejections += 1
            Logger.error(f"[SUBMIT] Batch {batch.index} rejected: {e}")
            outcome = rejected(str(e), error=e, attempts=state["attempts"], latency_ms=elapsed_ms())
            outcome.confirmation_id = state["signature"]
            await self._attach_diagnostics(outcome, state)
            return outcome
        except BundleForgeError as e:
            self._rejections += 1
            Logger.error(f"[SUBMIT] Batch {batch.index} failed: {e}")
            outcome = errored(e, attempts=state["attempts"], latency_ms=elapsed_ms())
            outcome.confirmation_id = state["signature"]
            await self._attach_diagnostics(outcome, state)
            return outcome

        self._confirmations += 1
        Logger.success(f"[SUBMIT] Batch {batch.index} {commitment} at slot {slot}")
        return accepted(state["signature"], slot=slot, attempts=state["attempts"], latency_ms=elapsed_ms())

    async def _attach_diagnostics(self, outcome: SubmissionOutcome, state: dict) -> None:
        """Re-simulate to capture execution logs. Never changes the outcome."""
        error_logs = getattr(outcome.error, "logs", None)
        if error_logs:
            outcome.logs = list(error_logs)
            return
        if not self.config.simulate_on_failure or state["tx"] is None:
            return
        try:
            report = await self.gateway.simulate_transaction(state["tx"])
        except BundleForgeError as e:
            Logger.debug(f"[SUBMIT] Diagnostic simulation failed: {e}")
            return
        outcome.logs = list(report.logs)
        for line in report.logs:
            Logger.debug(f"[SUBMIT]   {line}")

    async def submit_all(
        self,
        batches: List[TransactionBatch],
        commitment: Optional[str] = None,
        stop_on_failure: bool = False,
    ) -> List[SubmissionOutcome]:
        """Submit batches one after another, in order."""
        outcomes = []
        for i, batch in enumerate(batches, start=1):
            outcome = await self.submit(batch, commitment=commitment)
            outcomes.append(outcome)
            Logger.info(f"[SUBMIT] Batch {i}/{len(batches)}: {outcome.status.value}")
            if stop_on_failure and not outcome.definitely_succeeded:
                Logger.warning(f"[SUBMIT] Stopping after batch {i}: {outcome.reason}")
                break
        return outcomes

    def get_stats(self) -> dict:
        success_rate = (
            self._confirmations / self._submissions * 100
            if self._submissions > 0
            else 0
        )
        return {
            "submissions": self._submissions,
            "confirmations": self._confirmations,
            "rejections": self._rejections,
            "timeouts": self._timeouts,
            "success_rate_pct": round(success_rate, 2),
        }
