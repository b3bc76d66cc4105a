"""
Bundle Submitter Unit Tests
===========================
Relay path: tip construction, wire order, stream/poll correlation,
timeouts and multi-bundle rejection policy.
"""

import base64
import random

import base58
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from bundle_forge.config.settings import Settings
from bundle_forge.execution.batch_packer import BatchPacker, KeyringResolver
from bundle_forge.execution.bundle_submitter import (
    BundleConfig,
    BundleState,
    BundleSubmitter,
    BundleTicket,
    RejectionPolicy,
    encode_transaction,
)
from bundle_forge.execution.transfer_flows import build_distribute_operations
from bundle_forge.shared.execution.errors import BundleRejectedError, TransportError
from bundle_forge.shared.execution.execution_result import OutcomeStatus
from bundle_forge.shared.execution.schemas import BundleResultEvent, RelayBundleStatus, ValidityToken
from tests.mocks import FakeRelay, FakeResultStream


async def no_sleep(_):
    return None


def make_batches(payer, n_batches, per_batch=2):
    targets = [Keypair().pubkey() for _ in range(n_batches * per_batch)]
    ops = build_distribute_operations(payer.pubkey(), targets, 1_000)
    return BatchPacker().pack(ops, payer, KeyringResolver([payer]), max_ops_per_batch=per_batch).batches


def decode(wire):
    return VersionedTransaction.from_bytes(base64.b64decode(wire))


def fast_config(**overrides):
    values = dict(timeout_sec=1.0, poll_interval_sec=0.01, retry_delay_sec=0.0)
    values.update(overrides)
    return BundleConfig(**values)


# =============================================================================
# TEST: BUILDING
# =============================================================================


@pytest.mark.unit
class TestBundleBuilding:
    """Tip transaction, wire order and shared blockhash."""

    @pytest.mark.asyncio
    async def test_wire_order_tip_first_same_blockhash(self, ledger, relay, payer, rng):
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)
        batches = make_batches(payer, 3)

        outcome = await submitter.submit_bundle(batches, payer)

        assert outcome.definitely_succeeded
        wire = relay.bundles[0]
        assert len(wire) == 4
        txs = [decode(w) for w in wire]
        tip = txs[0]
        assert len(tip.message.instructions) == 1
        assert tip.message.account_keys[0] == payer.pubkey()
        tip_account = tip.message.account_keys[1]
        assert str(tip_account) in Settings.JITO_TIP_ACCOUNTS
        assert len({tx.message.recent_blockhash for tx in txs}) == 1
        assert ledger.blockhash_calls == 1

    @pytest.mark.asyncio
    async def test_tip_choice_is_seeded(self, ledger, payer):
        picks = []
        for _ in range(2):
            submitter = BundleSubmitter(ledger, FakeRelay(), fast_config(), rng=random.Random(3))
            picks.append(await submitter.choose_tip_account())
        assert picks[0] == picks[1]

    @pytest.mark.asyncio
    async def test_refreshed_tip_accounts(self, ledger, relay, rng):
        only = str(Pubkey.new_unique())
        relay.tip_accounts = [only]
        submitter = BundleSubmitter(ledger, relay, fast_config(refresh_tip_accounts=True), rng=rng)

        assert str(await submitter.choose_tip_account()) == only

    def test_tip_transaction_signed_by_fee_payer_alone(self, ledger, relay, payer, rng):
        submitter = BundleSubmitter(ledger, relay, fast_config(tip_lamports=12_345), rng=rng)
        tip_account = Pubkey.from_string(Settings.JITO_TIP_ACCOUNTS[0])

        tx = submitter.build_tip_transaction(payer, tip_account, ValidityToken(Hash.new_unique(), 1))

        assert len(tx.signatures) == 1
        assert tx.message.header.num_required_signatures == 1
        data = bytes(tx.message.instructions[0].data)
        assert int.from_bytes(data[4:12], "little") == 12_345

    def test_base58_encoding(self, payer):
        ops = build_distribute_operations(payer.pubkey(), [Keypair().pubkey()], 1)
        batch = BatchPacker().pack(ops, payer, KeyringResolver([payer]))[0]

        tx = batch.sign(ValidityToken(Hash.new_unique(), 1))

        assert base58.b58decode(encode_transaction(tx, "base58")) == bytes(tx)
        with pytest.raises(ValueError):
            encode_transaction(tx, "hex")

    @pytest.mark.asyncio
    async def test_too_many_batches_for_one_bundle(self, ledger, relay, payer, rng):
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng)
        with pytest.raises(ValueError):
            await submitter.submit_bundle(make_batches(payer, 5), payer)

    def test_bundle_needs_room_for_tip(self, ledger, relay):
        with pytest.raises(ValueError):
            BundleSubmitter(ledger, relay, BundleConfig(max_bundle_size=1))


# =============================================================================
# TEST: CONFIRMATION
# =============================================================================


@pytest.mark.unit
class TestBundleConfirmation:
    """Stream and polling correlation; terminal state written once."""

    @pytest.mark.asyncio
    async def test_polling_reports_landed(self, ledger, relay, payer, rng):
        relay.statuses["bundle-1"] = [RelayBundleStatus.PENDING, RelayBundleStatus.PENDING, RelayBundleStatus.LANDED]
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.ACCEPTED
        assert outcome.confirmation_id == "bundle-1"
        assert outcome.slot == 123_456
        assert relay.status_calls == 3

    @pytest.mark.asyncio
    async def test_relay_refusal_keeps_reason_verbatim(self, ledger, relay, payer, rng):
        reason = "bundle contains an already processed transaction"
        relay.send_results.append(BundleRejectedError(reason))
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.REJECTED
        assert outcome.reason == reason

    @pytest.mark.asyncio
    async def test_failed_status_is_rejected(self, ledger, relay, payer, rng):
        relay.statuses["bundle-1"] = [RelayBundleStatus.FAILED]
        relay.details["bundle-1"] = "Failed"
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.REJECTED
        assert outcome.reason == "Failed"

    @pytest.mark.asyncio
    async def test_timeout_distinct_from_rejection(self, ledger, payer, rng):
        relay = FakeRelay(default_status=RelayBundleStatus.PENDING)
        submitter = BundleSubmitter(ledger, relay, fast_config(timeout_sec=0.05), rng=rng)

        result = await submitter.submit(make_batches(payer, 1), payer)

        outcome = result.outcomes[0]
        assert outcome.status == OutcomeStatus.TIMED_OUT
        assert outcome.unknown
        assert not outcome.definitely_failed
        assert outcome.confirmation_id == "bundle-1"
        assert result.tickets[0].state == BundleState.TIMED_OUT
        assert submitter.get_stats()["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_stream_acceptance_wins(self, ledger, payer, rng):
        relay = FakeRelay(default_status=RelayBundleStatus.PENDING)
        stream = FakeResultStream()
        relay.on_send = lambda bundle_id: stream.emit(BundleResultEvent(bundle_id, accepted=True, slot=99))
        submitter = BundleSubmitter(ledger, relay, fast_config(), result_source=stream, rng=rng)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.ACCEPTED
        assert outcome.slot == 99
        assert stream.subscriptions == stream.unsubscriptions == 1
        assert stream.callbacks == []

    @pytest.mark.asyncio
    async def test_stream_rejection_reason_verbatim(self, ledger, payer, rng):
        relay = FakeRelay(default_status=RelayBundleStatus.PENDING)
        stream = FakeResultStream()
        reason = "Bundle Dropped, no connected leader up soon"
        relay.on_send = lambda bundle_id: stream.emit(BundleResultEvent(bundle_id, accepted=False, reason=reason))
        submitter = BundleSubmitter(ledger, relay, fast_config(), result_source=stream, rng=rng)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.REJECTED
        assert outcome.reason == reason

    @pytest.mark.asyncio
    async def test_events_for_other_bundles_ignored(self, ledger, payer, rng):
        relay = FakeRelay(default_status=RelayBundleStatus.PENDING)
        stream = FakeResultStream()
        relay.on_send = lambda bundle_id: stream.emit(BundleResultEvent("someone-else", accepted=False, reason="x"))
        submitter = BundleSubmitter(ledger, relay, fast_config(timeout_sec=0.05), result_source=stream, rng=rng)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.TIMED_OUT
        assert stream.unsubscriptions == 1

    @pytest.mark.asyncio
    async def test_never_both_accepted_and_rejected(self, ledger, payer, rng):
        relay = FakeRelay()
        relay.statuses["bundle-1"] = [RelayBundleStatus.FAILED]
        stream = FakeResultStream()
        relay.on_send = lambda bundle_id: stream.emit(BundleResultEvent(bundle_id, accepted=True, slot=5))
        submitter = BundleSubmitter(ledger, relay, fast_config(), result_source=stream, rng=rng)

        result = await submitter.submit(make_batches(payer, 1), payer)

        ticket = result.tickets[0]
        terminal = [s for s in ticket.history if s in (BundleState.ACCEPTED, BundleState.REJECTED)]
        assert len(terminal) == 1

    def test_terminal_state_written_once(self):
        ticket = BundleTicket(index=0, batches=[])
        ticket.advance(BundleState.TIP_SIGNED)
        ticket.advance(BundleState.SUBMITTED)
        ticket.advance(BundleState.ACCEPTED)

        with pytest.raises(RuntimeError):
            ticket.advance(BundleState.REJECTED)
        assert ticket.history == [
            BundleState.BUILDING, BundleState.TIP_SIGNED, BundleState.SUBMITTED, BundleState.ACCEPTED,
        ]

    @pytest.mark.asyncio
    async def test_transport_errors_on_send_retried(self, ledger, relay, payer, rng):
        relay.send_results.extend([TransportError("429"), "bundle-x"])
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.definitely_succeeded
        assert outcome.confirmation_id == "bundle-x"

    @pytest.mark.asyncio
    async def test_unacknowledged_send_is_unknown(self, ledger, relay, payer, rng):
        relay.send_results.extend([TransportError("read timeout")] * 3)
        submitter = BundleSubmitter(ledger, relay, fast_config(max_retries=3), rng=rng, sleep=no_sleep)

        result = await submitter.submit(make_batches(payer, 1), payer)
        outcome, ticket = result.outcomes[0], result.tickets[0]

        assert result.status == OutcomeStatus.TIMED_OUT
        assert outcome.status == OutcomeStatus.TIMED_OUT
        assert outcome.unknown
        assert not outcome.definitely_failed
        assert outcome.confirmation_id == ticket.tip_signature
        assert ticket.state == BundleState.TIP_SIGNED
        assert submitter.get_stats()["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_blockhash_read_error_retried(self, ledger, relay, payer, rng):
        ledger.blockhash_errors.append(TransportError("getLatestBlockhash: connection reset"))
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.definitely_succeeded
        assert ledger.blockhash_calls == 2
        assert len(relay.bundles) == 1

    @pytest.mark.asyncio
    async def test_blockhash_unavailable_is_error_and_nothing_sent(self, ledger, relay, payer, rng):
        ledger.blockhash_errors.extend([TransportError("down")] * 3)
        submitter = BundleSubmitter(ledger, relay, fast_config(max_retries=3), rng=rng, sleep=no_sleep)

        outcome = await submitter.submit_bundle(make_batches(payer, 1), payer)

        assert outcome.status == OutcomeStatus.ERROR
        assert relay.bundles == []


# =============================================================================
# TEST: MULTI-BUNDLE
# =============================================================================


@pytest.mark.unit
class TestMultiBundle:
    """Splitting and RejectionPolicy."""

    @pytest.mark.asyncio
    async def test_split_into_sub_bundles(self, ledger, relay, payer, rng):
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        result = await submitter.submit(make_batches(payer, 9), payer)

        assert [len(b) for b in relay.bundles] == [5, 5, 2]
        assert result.all_accepted
        assert result.status == OutcomeStatus.ACCEPTED
        assert result.bundle_ids == ["bundle-1", "bundle-2", "bundle-3"]

    @pytest.mark.asyncio
    async def test_abort_stops_after_rejection(self, ledger, relay, payer, rng):
        relay.statuses["bundle-1"] = [RelayBundleStatus.FAILED]
        submitter = BundleSubmitter(ledger, relay, fast_config(), rng=rng, sleep=no_sleep)

        result = await submitter.submit(make_batches(payer, 9), payer)

        assert len(relay.bundles) == 1
        assert result.skipped == 2
        assert not result.all_accepted
        assert result.status == OutcomeStatus.REJECTED

    @pytest.mark.asyncio
    async def test_continue_submits_all(self, ledger, relay, payer, rng):
        relay.statuses["bundle-1"] = [RelayBundleStatus.FAILED]
        config = fast_config(rejection_policy=RejectionPolicy.CONTINUE)
        submitter = BundleSubmitter(ledger, relay, config, rng=rng, sleep=no_sleep)

        result = await submitter.submit(make_batches(payer, 9), payer)

        assert len(relay.bundles) == 3
        assert [o.status for o in result.outcomes] == [
            OutcomeStatus.REJECTED, OutcomeStatus.ACCEPTED, OutcomeStatus.ACCEPTED,
        ]
        assert not result.all_accepted
