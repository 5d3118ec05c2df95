"""Exception hierarchy for Sardis multisig governance.

All governance errors inherit from MultisigError, enabling:
- Consistent error handling between the engine and the API layer
- HTTP status code mapping for callers that expose these operations
- Structured error responses with stable error codes

Usage:
    from sardis_multisig.exceptions import (
        MultisigError,
        TimeLockedError,
        AlreadyVotedError,
    )

    try:
        await engine.execute(proposal_id, executor_key)
    except TimeLockedError as e:
        print(e.details["remaining_seconds"])

All exceptions have:
- error_code: Machine-readable error code (e.g., "TIME_LOCKED")
- http_status: Appropriate HTTP status code for API responses
- retryable: Whether the same call may succeed if simply repeated
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class MultisigError(Exception):
    """Base exception for all multisig governance errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "MULTISIG_ERROR"
    http_status: int = 500
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
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Input Errors (4xx)
# =============================================================================

class MultisigValidationError(MultisigError):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

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


class MultisigNotFoundError(MultisigError):
    """Requested multisig, member or proposal not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class NotAMemberError(MultisigError):
    """Public key is not a signer of the multisig."""

    error_code = "NOT_A_MEMBER"
    http_status = 403

    def __init__(self, multisig_id: str, member_key: str) -> None:
        super().__init__(
            f"Key {member_key} is not a member of multisig {multisig_id}",
            details={"multisig_id": multisig_id, "member_key": member_key},
        )


class MissingCapabilityError(MultisigError):
    """Member lacks the capability required for the operation."""

    error_code = "MISSING_CAPABILITY"
    http_status = 403

    def __init__(self, member_key: str, capability: str) -> None:
        super().__init__(
            f"Member {member_key} does not hold the {capability} capability",
            details={"member_key": member_key, "capability": capability},
        )


# =============================================================================
# State Conflict Errors (409)
#
# Raised when the caller acted on stale state or lost a race. Callers should
# re-fetch the proposal status; the engine never retries these itself.
# =============================================================================

class StateConflictError(MultisigError):
    """Base class for proposal/member state conflicts."""

    error_code = "STATE_CONFLICT"
    http_status = 409


class AlreadyVotedError(StateConflictError):
    """Member has already approved or rejected this proposal."""

    error_code = "ALREADY_VOTED"

    def __init__(self, proposal_id: str, member_key: str) -> None:
        super().__init__(
            f"Member {member_key} has already voted on proposal {proposal_id}",
            details={"proposal_id": proposal_id, "member_key": member_key},
        )


class ProposalNotPendingError(StateConflictError):
    """Proposal is no longer accepting votes."""

    error_code = "PROPOSAL_NOT_PENDING"

    def __init__(self, proposal_id: str, status: str) -> None:
        super().__init__(
            f"Proposal {proposal_id} is {status}, not PENDING",
            details={"proposal_id": proposal_id, "status": status},
        )


class MemberInactiveError(StateConflictError):
    """Member has been deactivated and can no longer act."""

    error_code = "MEMBER_INACTIVE"

    def __init__(self, member_key: str) -> None:
        super().__init__(
            f"Member {member_key} is not active",
            details={"member_key": member_key},
        )


class NotApprovedError(StateConflictError):
    """Proposal has not reached the approved state required for execution."""

    error_code = "NOT_APPROVED"

    def __init__(
        self,
        proposal_id: str,
        status: str,
        approvals: Optional[int] = None,
        threshold: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {"proposal_id": proposal_id, "status": status}
        if approvals is not None:
            details["approvals"] = approvals
        if threshold is not None:
            details["threshold"] = threshold
        super().__init__(
            f"Proposal {proposal_id} must be approved before execution (status: {status})",
            details=details,
        )


class TimeLockedError(StateConflictError):
    """Threshold met but the time-lock has not elapsed yet."""

    error_code = "TIME_LOCKED"

    def __init__(self, proposal_id: str, remaining_seconds: int) -> None:
        super().__init__(
            f"Proposal {proposal_id} is time-locked for another {remaining_seconds}s",
            details={"proposal_id": proposal_id, "remaining_seconds": remaining_seconds},
        )
        self.remaining_seconds = remaining_seconds


class AlreadyExecutedError(StateConflictError):
    """Proposal was already executed on the ledger."""

    error_code = "ALREADY_EXECUTED"

    def __init__(self, proposal_id: str, transaction_hash: Optional[str] = None) -> None:
        details: dict[str, Any] = {"proposal_id": proposal_id}
        if transaction_hash:
            details["transaction_hash"] = transaction_hash
        super().__init__(f"Proposal {proposal_id} has already been executed", details=details)


class ReconciliationRequiredError(StateConflictError):
    """A previous execution attempt has an unknown ledger outcome."""

    error_code = "RECONCILIATION_REQUIRED"

    def __init__(self, proposal_id: str) -> None:
        super().__init__(
            f"Proposal {proposal_id} has an unresolved execution attempt; "
            "reconcile it against the ledger before executing again",
            details={"proposal_id": proposal_id},
        )


# =============================================================================
# Quorum Safety
# =============================================================================

class RemovalWouldBreakQuorumError(MultisigError):
    """Removing the member would leave the multisig without spare signers.

    The lifecycle manager does not raise this from its public operations; it
    defers the removal and reports REMOVAL_WOULD_BREAK_QUORUM instead.
    """

    error_code = "REMOVAL_WOULD_BREAK_QUORUM"
    http_status = 409


# =============================================================================
# Gateway / Ledger Errors (5xx)
# =============================================================================

class GatewayError(MultisigError):
    """Base class for errors raised by an ExecutionGateway."""

    error_code = "GATEWAY_ERROR"
    http_status = 502


class GatewayRejectedError(GatewayError):
    """Ledger refused the transfer; funds are confirmed not to have moved."""

    error_code = "GATEWAY_REJECTED"


class GatewayOutcomeUnknownError(GatewayError):
    """Submission may or may not have landed (timeout, dropped connection)."""

    error_code = "GATEWAY_OUTCOME_UNKNOWN"
    retryable = True


class ExecutionFailedError(GatewayError):
    """Execution failed and the proposal is now FAILED."""

    error_code = "EXECUTION_FAILED"

    def __init__(
        self,
        proposal_id: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["proposal_id"] = proposal_id
        details["reason"] = reason
        details["ledger_confirmed"] = True
        super().__init__(f"Execution of proposal {proposal_id} failed: {reason}", details=details)


class ExecutionOutcomeUnknownError(GatewayError):
    """Execution outcome is ambiguous; proposal left APPROVED for reconciliation."""

    error_code = "EXECUTION_OUTCOME_UNKNOWN"

    def __init__(
        self,
        proposal_id: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["proposal_id"] = proposal_id
        details["reason"] = reason
        details["ledger_confirmed"] = False
        super().__init__(
            f"Execution of proposal {proposal_id} has an unknown outcome: {reason}",
            details=details,
        )


# =============================================================================
# Infrastructure Errors
# =============================================================================

class StoreError(MultisigError):
    """Persistence store failure (connectivity, constraint violation)."""

    error_code = "STORE_ERROR"
    http_status = 503
    retryable = True


class DuplicateApprovalError(StoreError):
    """Unique (proposal, member) approval constraint violated."""

    error_code = "DUPLICATE_APPROVAL"
    http_status = 409
    retryable = False

    def __init__(self, proposal_id: str, member_id: str) -> None:
        super().__init__(
            f"Approval for proposal {proposal_id} by member {member_id} already exists",
            details={"proposal_id": proposal_id, "member_id": member_id},
        )
        self.proposal_id = proposal_id
        self.member_id = member_id


class ConfigurationError(MultisigError):
    """Service configuration error."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


__all__ = [
    "MultisigError",
    "MultisigValidationError",
    "MultisigNotFoundError",
    "NotAMemberError",
    "MissingCapabilityError",
    "StateConflictError",
    "AlreadyVotedError",
    "ProposalNotPendingError",
    "MemberInactiveError",
    "NotApprovedError",
    "TimeLockedError",
    "AlreadyExecutedError",
    "ReconciliationRequiredError",
    "RemovalWouldBreakQuorumError",
    "GatewayError",
    "GatewayRejectedError",
    "GatewayOutcomeUnknownError",
    "ExecutionFailedError",
    "ExecutionOutcomeUnknownError",
    "StoreError",
    "DuplicateApprovalError",
    "ConfigurationError",
]
