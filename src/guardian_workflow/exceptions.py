"""Unified exception hierarchy for guardian workflows.

All workflow-specific exceptions inherit from WorkflowException, enabling:
- Consistent error handling across the registry, workflow, relay and store
- Structured error responses with machine-readable error codes
- A human-readable message that is distinct from the error code

Usage:
    from guardian_workflow.exceptions import (
        WorkflowException,
        TooEarlyError,
        NotBroadcasterError,
    )

    try:
        record = await workflow.approve(tx_id, caller)
    except TooEarlyError as e:
        print(e.details["seconds_remaining"])

All exceptions have:
- error_code: Machine-readable error code (e.g., "TOO_EARLY")
- retryable: Whether the caller may retry the same call unchanged
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a serializable response format

Role, time and signature errors are never retryable; they describe a
precondition the caller must fix. Network and storage errors may be retried
by the caller. None of the subsystems retry on their own.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class WorkflowException(Exception):
    """Base exception for all guardian workflow errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "ROLE_DENIED")
        details: Optional additional context
    """

    error_code: str = "WORKFLOW_ERROR"
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
        """Convert exception to a response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Authorization Errors
# =============================================================================

class RoleDeniedError(WorkflowException):
    """Caller does not hold the role required for the phase."""

    error_code = "ROLE_DENIED"

    def __init__(
        self,
        caller: str,
        phase: str,
        required: list[str],
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{caller} may not {phase}"
        if operation:
            message += f" {operation}"
        message += f": requires {' or '.join(required)}"
        details = details or {}
        details.update({"caller": caller, "phase": phase, "required_roles": required})
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class NotBroadcasterError(WorkflowException):
    """Broadcast attempted by an identity other than the live broadcaster."""

    error_code = "NOT_BROADCASTER"

    def __init__(
        self,
        caller: str,
        broadcaster: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update({"caller": caller, "broadcaster": broadcaster})
        super().__init__(
            f"{caller} is not the configured broadcaster ({broadcaster})",
            details=details,
        )


# =============================================================================
# Temporal Errors
# =============================================================================

class TooEarlyError(WorkflowException):
    """Time lock or minimum hold period is not yet satisfied."""

    error_code = "TOO_EARLY"

    def __init__(
        self,
        message: str,
        tx_id: Optional[int] = None,
        now: Optional[int] = None,
        not_before: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if tx_id is not None:
            details["tx_id"] = tx_id
        if now is not None:
            details["now"] = now
        if not_before is not None:
            details["not_before"] = not_before
            if now is not None:
                details["seconds_remaining"] = max(0, not_before - now)
        super().__init__(message, details=details)


class PreconditionFailedError(WorkflowException):
    """Payload references a capability the custodian has not enabled."""

    error_code = "PRECONDITION_FAILED"


# =============================================================================
# Meta-Transaction Errors
# =============================================================================

class InvalidSignatureError(WorkflowException):
    """Meta-transaction signature is malformed, stale or from the wrong signer."""

    error_code = "INVALID_SIGNATURE"

    def __init__(
        self,
        message: str,
        expected: Optional[str] = None,
        recovered: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if expected:
            details["expected_signer"] = expected
        if recovered:
            details["recovered_signer"] = recovered
        super().__init__(message, details=details)


class ExpiredError(WorkflowException):
    """Meta-transaction deadline has passed."""

    error_code = "EXPIRED"

    def __init__(
        self,
        deadline: int,
        now: int,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update({"deadline": deadline, "now": now})
        super().__init__(
            f"Meta-transaction expired {now - deadline}s ago (deadline {deadline})",
            details=details,
        )


class GasPriceExceededError(WorkflowException):
    """Current gas price is above the signed maximum."""

    error_code = "GAS_PRICE_EXCEEDED"

    def __init__(
        self,
        gas_price: int,
        max_gas_price: int,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update({"gas_price": gas_price, "max_gas_price": max_gas_price})
        super().__init__(
            f"Gas price {gas_price} wei exceeds signed maximum {max_gas_price} wei",
            details=details,
        )


# =============================================================================
# Lookup Errors
# =============================================================================

class NotFoundError(WorkflowException):
    """Operation type, record or stored transaction does not exist."""

    error_code = "NOT_FOUND"

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update({"resource_type": resource_type, "resource_id": str(resource_id)})
        super().__init__(
            message or f"{resource_type} not found: {resource_id}",
            details=details,
        )


class AlreadyTerminalError(NotFoundError):
    """Approve or cancel against a record that is already COMPLETED or CANCELLED."""

    error_code = "ALREADY_TERMINAL"

    def __init__(self, tx_id: int, status: str) -> None:
        super().__init__(
            "OperationRecord",
            tx_id,
            message=f"Operation {tx_id} is already {status}",
            details={"status": status},
        )


# =============================================================================
# Local Persistence Errors
# =============================================================================

class StoreError(WorkflowException):
    """Base class for durable store errors."""

    error_code = "STORE_ERROR"
    retryable = True


class StorageFullError(StoreError):
    """Write would exceed the store's size budget."""

    error_code = "STORAGE_FULL"

    def __init__(self, required_bytes: int, max_bytes: int) -> None:
        super().__init__(
            f"Storage budget exceeded: {required_bytes} bytes needed, {max_bytes} allowed",
            details={"required_bytes": required_bytes, "max_bytes": max_bytes},
        )


class SerializationError(StoreError):
    """Stored data could not be serialized or parsed."""

    error_code = "SERIALIZATION_ERROR"


class InvalidDataError(StoreError):
    """Store write is missing required data."""

    error_code = "INVALID_DATA"
    retryable = False


# =============================================================================
# Infrastructure Errors
# =============================================================================

class CoordinationServiceError(WorkflowException):
    """Multisig coordination service returned an error.

    The response body is kept verbatim so callers can surface it unchanged.
    """

    error_code = "COORDINATION_SERVICE_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if body is not None:
            details["body"] = body
        super().__init__(message, details=details)


class LedgerUnavailableError(WorkflowException):
    """Ledger connection could not be reached."""

    error_code = "LEDGER_UNAVAILABLE"
    retryable = True


class LedgerRevertError(WorkflowException):
    """Ledger rejected a submitted transaction."""

    error_code = "TRANSACTION_REVERTED"

    def __init__(
        self,
        reason: str,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        details = details or {}
        details["reason"] = reason
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(f"Transaction reverted: {reason}", details=details)


__all__ = [
    "WorkflowException",
    "RoleDeniedError",
    "NotBroadcasterError",
    "TooEarlyError",
    "PreconditionFailedError",
    "InvalidSignatureError",
    "ExpiredError",
    "GasPriceExceededError",
    "NotFoundError",
    "AlreadyTerminalError",
    "StoreError",
    "StorageFullError",
    "SerializationError",
    "InvalidDataError",
    "CoordinationServiceError",
    "LedgerUnavailableError",
    "LedgerRevertError",
]
