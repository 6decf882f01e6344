"""Exception hierarchy for the gasless transfer engine.

Every error raised by the engine derives from GaslessTransferError so callers
can handle the whole family in one place. Each exception carries:
- error_code: machine-readable code (e.g., "RELAY_UNAVAILABLE")
- message: human-readable message
- details: structured context (amounts, addresses, operation hash)
- retryable: whether the failure is transient

Usage:
    from gasless_transfer.exceptions import GaslessTransferError, OperationTimedOut

    try:
        result = await engine.transfer(signer, recipient, amount)
    except OperationTimedOut as e:
        # outcome unknown, check the receipt out of band
        log.warning(e.to_dict())
"""
from __future__ import annotations

from typing import Any, Optional


class GaslessTransferError(Exception):
    """Base exception for all gasless transfer errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "GASLESS_TRANSFER_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a structured report."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Caller input errors (never retried)
# =============================================================================

class InvalidParameters(GaslessTransferError):
    """Malformed caller input (addresses, amounts, tiers)."""

    error_code = "INVALID_PARAMETERS"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field


class InvalidOperation(GaslessTransferError):
    """A UserOperation is missing a required part."""

    error_code = "INVALID_OPERATION"


# =============================================================================
# Signer errors (surfaced immediately)
# =============================================================================

class SigningFailed(GaslessTransferError):
    """The signer rejected the request or cannot sign typed data."""

    error_code = "SIGNING_FAILED"


class MalformedSignature(GaslessTransferError):
    """A signature could not be unwrapped to its canonical length."""

    error_code = "MALFORMED_SIGNATURE"


# =============================================================================
# Relay errors
# =============================================================================

class RelayUnavailable(GaslessTransferError):
    """Transient relay failure: network, timeout, or server error."""

    error_code = "RELAY_UNAVAILABLE"
    retryable = True


class EstimationRejected(GaslessTransferError):
    """The relay reported the draft operation as invalid."""

    error_code = "ESTIMATION_REJECTED"


class SubmissionRejected(GaslessTransferError):
    """The relay refused the final operation."""

    error_code = "SUBMISSION_REJECTED"


# =============================================================================
# Terminal outcome errors
# =============================================================================

class OperationTimedOut(GaslessTransferError):
    """No receipt observed within the polling budget. Outcome is unresolved."""

    error_code = "OPERATION_TIMED_OUT"

    def __init__(
        self,
        message: str,
        operation_hash: str,
        polls: int,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update({"operation_hash": operation_hash, "polls": polls, "outcome": "unresolved"})
        super().__init__(message, details=details)
        self.operation_hash = operation_hash
        self.polls = polls


class AccountingAnomaly(GaslessTransferError):
    """Balance reconciliation contradicts the expected transfer and fee."""

    error_code = "ACCOUNTING_ANOMALY"


class DeadlineExceeded(GaslessTransferError):
    """The caller deadline elapsed before the attempt finished.

    When operation_hash is set the operation was already handed to the relay.
    ``may_still_be_included`` is false once the outcome is already known,
    e.g. the deadline fired while balances were being reconciled.
    """

    error_code = "DEADLINE_EXCEEDED"

    def __init__(
        self,
        message: str,
        state: str,
        operation_hash: Optional[str] = None,
        may_still_be_included: Optional[bool] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        if may_still_be_included is None:
            may_still_be_included = bool(operation_hash)
        details = details or {}
        details["state"] = state
        if operation_hash:
            details["operation_hash"] = operation_hash
            details["may_still_be_included"] = may_still_be_included
        super().__init__(message, details=details)
        self.state = state
        self.operation_hash = operation_hash
        self.may_still_be_included = may_still_be_included


class ChainRPCError(GaslessTransferError):
    """A chain node returned an error for a read."""

    error_code = "CHAIN_RPC_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if code is not None:
            details["rpc_code"] = code
        super().__init__(message, details=details)
        self.code = code
        self.data = data
