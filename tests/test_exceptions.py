"""
Tests for the multisig exception hierarchy.
"""
from __future__ import annotations

from sardis_multisig.exceptions import (
    AlreadyVotedError,
    DuplicateApprovalError,
    ExecutionOutcomeUnknownError,
    GatewayError,
    GatewayOutcomeUnknownError,
    MissingCapabilityError,
    MultisigError,
    MultisigNotFoundError,
    MultisigValidationError,
    StateConflictError,
    StoreError,
    TimeLockedError,
)


class TestExceptionHierarchy:
    """Status codes, error codes and retryability."""

    def test_validation(self):
        error = MultisigValidationError("bad amount", field="amount")
        assert isinstance(error, MultisigError)
        assert error.http_status == 400
        assert error.details["field"] == "amount"

    def test_not_found(self):
        error = MultisigNotFoundError("Proposal", "prop_1")
        assert error.http_status == 404
        assert "prop_1" in error.message

    def test_missing_capability_is_forbidden(self):
        assert MissingCapabilityError("A", "EXECUTE").http_status == 403

    def test_state_conflicts(self):
        error = AlreadyVotedError("prop_1", "A")
        assert isinstance(error, StateConflictError)
        assert error.http_status == 409
        assert error.error_code == "ALREADY_VOTED"

    def test_time_locked_carries_remaining(self):
        error = TimeLockedError("prop_1", 42)
        assert error.remaining_seconds == 42
        assert error.to_dict() == {
            "error": "TIME_LOCKED",
            "message": error.message,
            "details": {"proposal_id": "prop_1", "remaining_seconds": 42},
        }

    def test_gateway_errors(self):
        assert GatewayOutcomeUnknownError("timeout").retryable is True
        error = ExecutionOutcomeUnknownError("prop_1", "timeout")
        assert isinstance(error, GatewayError)
        assert error.http_status == 502
        assert error.retryable is False

    def test_store_errors(self):
        assert StoreError("down").retryable is True
        duplicate = DuplicateApprovalError("prop_1", "mbr_1")
        assert isinstance(duplicate, StoreError)
        assert duplicate.http_status == 409
        assert duplicate.retryable is False
