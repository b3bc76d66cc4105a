"""
Error Taxonomy Unit Tests
=========================
Classification of node error text and the SubmissionOutcome contract.
"""

import pytest

from bundle_forge.shared.execution.errors import (
    BundleRejectedError,
    ErrorCode,
    InsufficientFundsError,
    ProgramError,
    SignerResolutionError,
    StaleSlotError,
    StaleTokenError,
    TransportError,
    classify_rpc_error,
    is_recoverable,
    to_error,
)
from bundle_forge.shared.execution.execution_result import (
    OutcomeStatus,
    accepted,
    errored,
    rejected,
    timed_out,
)


@pytest.mark.unit
class TestClassification:
    """Tests for classify_rpc_error()."""

    @pytest.mark.parametrize("message,expected", [
        ("Transaction simulation failed: Error processing Instruction 0: "
         "invalid instruction data: 123 is not a recent slot", StaleSlotError),
        ("Blockhash not found", StaleTokenError),
        ("block height exceeded", StaleTokenError),
        ("Attempt to debit an account but found no record of a prior credit. insufficient funds", InsufficientFundsError),
        ("Transaction simulation failed: custom program error: 0x1", ProgramError),
        ("Connection reset by peer", TransportError),
        ("", TransportError),
    ])
    def test_message_patterns(self, message, expected):
        assert classify_rpc_error(message) is expected

    def test_logs_participate_in_classification(self):
        logs = ["Program 11111111111111111111111111111111 failed: insufficient lamports"]
        assert classify_rpc_error("RPC error", logs) is InsufficientFundsError

    def test_stale_slot_wins_over_program_error(self):
        message = "InstructionError: 98765 is not a recent slot"
        assert classify_rpc_error(message) is StaleSlotError

    def test_to_error_keeps_context(self):
        error = to_error("custom program error: 0x1", logs=["log"], operation_index=3, account="Abc")
        assert isinstance(error, ProgramError)
        assert error.logs == ["log"]
        assert "op=3" in str(error)
        assert "account=Abc" in str(error)

    def test_recoverability(self):
        assert is_recoverable(TransportError("x"))
        assert is_recoverable(StaleSlotError("x"))
        assert not is_recoverable(ProgramError("x"))
        assert not is_recoverable(SignerResolutionError("x"))
        assert not is_recoverable(ValueError("x"))


@pytest.mark.unit
class TestSubmissionOutcome:
    """Tests for the outcome factories and predicates."""

    def test_accepted_is_definite_success(self):
        outcome = accepted("sig123", slot=10)
        assert outcome.definitely_succeeded
        assert not outcome.definitely_failed
        assert not outcome.unknown
        assert outcome.error_code is None
        outcome.raise_for_outcome()

    def test_timeout_is_unknown_not_failure(self):
        outcome = timed_out("bundle-1")
        assert outcome.status == OutcomeStatus.TIMED_OUT
        assert outcome.unknown
        assert not outcome.definitely_failed

    def test_rejected_keeps_reason_verbatim(self):
        reason = "bundle contains an already processed transaction"
        outcome = rejected(reason, error=BundleRejectedError(reason))
        assert outcome.definitely_failed
        assert outcome.reason == reason
        assert outcome.error_code == ErrorCode.BUNDLE_REJECTED
        with pytest.raises(BundleRejectedError):
            outcome.raise_for_outcome()

    def test_errored_wraps_exception(self):
        outcome = errored(TransportError("all endpoints down"))
        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.definitely_failed
        assert outcome.to_dict()["error_code"] == "RPC_ERROR"
