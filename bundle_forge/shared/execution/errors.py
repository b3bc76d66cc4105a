"""
Submission Error Taxonomy
=========================
Every failure raised by the packer, the lookup-table manager and the two
submission paths is one of these classes.

Four families:
- Recoverable: TransportError, StaleSlotError, StaleTokenError (refetch and retry)
- Structural: CapacityExceededError, OversizeBatchError, SignerResolutionError
  (repartition, never retry as-is)
- Ambiguous: PropagationTimeoutError, ConfirmationTimeoutError, BundleTimeoutError
  (outcome unknown, check later)
- Fatal: BundleRejectedError, InsufficientFundsError, ProgramError
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Standardized error codes for submission failures."""

    # Network errors
    RPC_ERROR = "RPC_ERROR"
    SLOT_EXPIRED = "SLOT_EXPIRED"
    BLOCKHASH_EXPIRED = "BLOCKHASH_EXPIRED"

    # Structural errors
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    OVERSIZE_BATCH = "OVERSIZE_BATCH"
    UNKNOWN_SIGNER = "UNKNOWN_SIGNER"

    # Ambiguous outcomes
    PROPAGATION_TIMEOUT = "PROPAGATION_TIMEOUT"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    BUNDLE_TIMEOUT = "BUNDLE_TIMEOUT"

    # Jito bundle errors
    BUNDLE_REJECTED = "BUNDLE_REJECTED"

    # On-chain errors
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    PROGRAM_ERROR = "PROGRAM_ERROR"

    UNKNOWN = "UNKNOWN"


class BundleForgeError(Exception):
    """Base class. Carries the operation index and account involved when known."""

    code = ErrorCode.UNKNOWN
    recoverable = False

    def __init__(
        self,
        message: str = "",
        operation_index: Optional[int] = None,
        account: Optional[str] = None,
        logs: Optional[list] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation_index = operation_index
        self.account = account
        self.logs = list(logs or [])

    def __str__(self) -> str:
        context = []
        if self.operation_index is not None:
            context.append(f"op={self.operation_index}")
        if self.account:
            context.append(f"account={self.account}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


# --- Recoverable ---

class TransportError(BundleForgeError):
    code = ErrorCode.RPC_ERROR
    recoverable = True


class StaleSlotError(BundleForgeError):
    """The node rejected the slot as too old or not yet rooted."""

    code = ErrorCode.SLOT_EXPIRED
    recoverable = True


class StaleTokenError(BundleForgeError):
    """The blockhash expired or is unknown to the node."""

    code = ErrorCode.BLOCKHASH_EXPIRED
    recoverable = True


# --- Structural ---

class CapacityExceededError(BundleForgeError):
    code = ErrorCode.CAPACITY_EXCEEDED

    def __init__(self, message: str = "", requested: int = 0, limit: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.requested = requested
        self.limit = limit


class OversizeBatchError(BundleForgeError):
    code = ErrorCode.OVERSIZE_BATCH

    def __init__(self, message: str = "", size: int = 0, limit: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.size = size
        self.limit = limit


class SignerResolutionError(BundleForgeError):
    code = ErrorCode.UNKNOWN_SIGNER


# --- Ambiguous ---

class PropagationTimeoutError(BundleForgeError):
    """Lookup table not resolvable yet. Expected under normal latency."""

    code = ErrorCode.PROPAGATION_TIMEOUT
    recoverable = True


class ConfirmationTimeoutError(BundleForgeError):
    """Sent but not confirmed in time. The transaction may still land."""

    code = ErrorCode.CONFIRMATION_TIMEOUT


class BundleTimeoutError(BundleForgeError):
    """No terminal relay status in time. The bundle may still land."""

    code = ErrorCode.BUNDLE_TIMEOUT

    def __init__(self, message: str = "", bundle_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.bundle_id = bundle_id


# --- Fatal ---

class BundleRejectedError(BundleForgeError):
    code = ErrorCode.BUNDLE_REJECTED

    def __init__(self, reason: str = "", bundle_id: Optional[str] = None, **kwargs):
        super().__init__(reason, **kwargs)
        self.reason = reason
        self.bundle_id = bundle_id


class ProgramError(BundleForgeError):
    code = ErrorCode.PROGRAM_ERROR


class InsufficientFundsError(ProgramError):
    code = ErrorCode.INSUFFICIENT_BALANCE


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════════

# Checked in order: a stale slot surfaces as an instruction error too
_PATTERNS = (
    (StaleSlotError, ("not a recent slot",)),
    (StaleTokenError, ("blockhash not found", "blockhashnotfound", "block height exceeded",
                       "blockheightexceeded", "transaction expired")),
    (InsufficientFundsError, ("insufficient funds", "insufficient lamports",
                              "insufficientfundsforfee", "insufficientfundsforrent")),
    (ProgramError, ("instructionerror", "custom program error", "program failed",
                    "transaction simulation failed", "invalid account data")),
)


def classify_rpc_error(message: str, logs: Optional[list] = None) -> type:
    """
    Map node error text (and simulation logs) onto the taxonomy.

    Anything unrecognized is treated as transport-level and therefore retryable.
    """
    haystack = " ".join([message or ""] + [str(line) for line in (logs or [])]).lower()
    for error_cls, needles in _PATTERNS:
        if any(needle in haystack for needle in needles):
            return error_cls
    return TransportError


def to_error(message: str, logs: Optional[list] = None, **context) -> BundleForgeError:
    """Build the classified exception for a node error message."""
    error_cls = classify_rpc_error(message, logs)
    return error_cls(message, logs=logs, **context)


def is_recoverable(error: BaseException) -> bool:
    """Default retry predicate."""
    return isinstance(error, BundleForgeError) and error.recoverable
