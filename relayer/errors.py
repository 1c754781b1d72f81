"""Error taxonomy for the relay pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Terminal failure classifications recorded on a request."""

    MALFORMED_SIGNATURE = "malformed_signature"
    BAD_SIGNATURE = "bad_signature"
    POLICY_REJECTED = "policy_rejected"
    REPLAY_OR_DUPLICATE = "replay_or_duplicate"
    SEQUENCE_GAP = "sequence_gap"
    ESTIMATION_FAILURE = "estimation_failure"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    FINALITY_TIMEOUT = "finality_timeout"
    EXECUTION_REVERTED = "execution_reverted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class RelayError(RuntimeError):
    """Base class for every failure the relay reports to callers."""

    kind: FailureKind = FailureKind.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason


class MalformedSignature(RelayError):
    """Raised when a signature cannot be parsed (length, recovery id, range)."""

    kind = FailureKind.MALFORMED_SIGNATURE


class RecoveryFailure(MalformedSignature):
    """Raised when no public key can be recovered from a well-formed signature."""


class BadSignature(RelayError):
    """Raised when the recovered signer is not the operation's principal."""

    kind = FailureKind.BAD_SIGNATURE


class PolicyRejected(RelayError):
    """Raised when the security guard refuses an operation."""

    kind = FailureKind.POLICY_REJECTED


class ReplayOrDuplicate(RelayError):
    """Raised when a sequence number is lower than the expected nonce."""

    kind = FailureKind.REPLAY_OR_DUPLICATE


class SequenceGap(RelayError):
    """Raised when a sequence number skips ahead of the expected nonce."""

    kind = FailureKind.SEQUENCE_GAP


class EstimationFailure(RelayError):
    """Raised when simulation reverts or the budget cannot be derived."""

    kind = FailureKind.ESTIMATION_FAILURE


class BackendUnavailable(RelayError):
    """Transient transport failure talking to the execution backend."""

    kind = FailureKind.BACKEND_UNAVAILABLE
    retryable = True


class FinalityTimeout(RelayError):
    """Raised when the backend did not report finality within the ceiling."""

    kind = FailureKind.FINALITY_TIMEOUT


class ExecutionReverted(RelayError):
    """Raised when the operation was included but failed on-chain."""

    kind = FailureKind.EXECUTION_REVERTED


class AuthorizationExpired(RelayError):
    """Raised when ``valid_until`` has elapsed."""

    kind = FailureKind.EXPIRED


class RequestCancelled(RelayError):
    """Raised when a caller cancels a request before submission."""

    kind = FailureKind.CANCELLED


class InvalidAuthorization(ValueError):
    """Raised when an incoming authorization payload fails boundary validation."""


class RelayConfigurationError(RuntimeError):
    """Raised when the relay configuration is missing or inconsistent."""


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        MalformedSignature,
        BadSignature,
        PolicyRejected,
        ReplayOrDuplicate,
        SequenceGap,
        EstimationFailure,
        BackendUnavailable,
        FinalityTimeout,
        ExecutionReverted,
        AuthorizationExpired,
        RequestCancelled,
    )
}


def error_for(kind: FailureKind, detail: Optional[str] = None) -> RelayError:
    """Build the exception matching a recorded failure ``kind``."""

    cls = _ERRORS_BY_KIND.get(kind, RelayError)
    return cls(detail or kind.value, reason=detail)
