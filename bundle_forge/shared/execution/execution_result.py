"""
Unified Submission Outcome
==========================
Standardized return type for both submission paths.

SubmissionCoordinator (direct RPC) and BundleSubmitter (Jito relay) both
return this type, so callers can always tell apart:
- definitely succeeded (ACCEPTED)
- definitely failed (REJECTED, ERROR)
- unknown, check later (TIMED_OUT)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

from bundle_forge.shared.execution.errors import BundleForgeError, ErrorCode


class OutcomeStatus(Enum):
    """Terminal status of a submission."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"
    ERROR = "ERROR"


@dataclass
class SubmissionOutcome:
    """
    Result of one submission (a single batch or a single bundle).

    Usage:
        outcome = await coordinator.submit(batch)
        if outcome.definitely_succeeded:
            log(outcome.confirmation_id)
        elif outcome.unknown:
            schedule_recheck(outcome.confirmation_id)
        else:
            handle_error(outcome.error_code)
    """

    status: OutcomeStatus

    # Signature (direct path) or bundle id (relay path)
    confirmation_id: Optional[str] = None

    # Error handling
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    # Context
    attempts: int = 1
    slot: Optional[int] = None
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    # Diagnostic simulation logs (never change the status)
    logs: List[str] = field(default_factory=list)

    @property
    def definitely_succeeded(self) -> bool:
        return self.status == OutcomeStatus.ACCEPTED

    @property
    def definitely_failed(self) -> bool:
        return self.status in (OutcomeStatus.REJECTED, OutcomeStatus.ERROR)

    @property
    def unknown(self) -> bool:
        return self.status == OutcomeStatus.TIMED_OUT

    @property
    def error_code(self) -> Optional[ErrorCode]:
        if isinstance(self.error, BundleForgeError):
            return self.error.code
        if self.error is not None:
            return ErrorCode.UNKNOWN
        return None

    def raise_for_outcome(self) -> None:
        """Re-raise the causing error for callers that prefer exceptions."""
        if self.definitely_succeeded:
            return
        if self.error is not None:
            raise self.error
        raise BundleForgeError(self.reason or self.status.value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/storage."""
        return {
            "status": self.status.value,
            "confirmation_id": self.confirmation_id,
            "reason": self.reason,
            "error_code": self.error_code.value if self.error_code else None,
            "attempts": self.attempts,
            "slot": self.slot,
            "latency_ms": self.latency_ms,
        }

    def __repr__(self) -> str:
        ident = self.confirmation_id[:16] if self.confirmation_id else "N/A"
        if self.reason:
            return f"SubmissionOutcome({self.status.value}: {ident}..., {self.reason})"
        return f"SubmissionOutcome({self.status.value}: {ident}...)"


# ═══════════════════════════════════════════════════════════════════════════════
# FACTORY FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════

def accepted(confirmation_id: str, **kwargs) -> SubmissionOutcome:
    return SubmissionOutcome(status=OutcomeStatus.ACCEPTED, confirmation_id=confirmation_id, **kwargs)


def rejected(reason: str, error: Optional[BaseException] = None, **kwargs) -> SubmissionOutcome:
    return SubmissionOutcome(status=OutcomeStatus.REJECTED, reason=reason, error=error, **kwargs)


def timed_out(confirmation_id: Optional[str], error: Optional[BaseException] = None, **kwargs) -> SubmissionOutcome:
    return SubmissionOutcome(
        status=OutcomeStatus.TIMED_OUT,
        confirmation_id=confirmation_id,
        reason="no terminal status before timeout",
        error=error,
        **kwargs,
    )


def errored(error: BaseException, **kwargs) -> SubmissionOutcome:
    return SubmissionOutcome(status=OutcomeStatus.ERROR, reason=str(error), error=error, **kwargs)
