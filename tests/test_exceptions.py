"""
Tests for the guardian_workflow exception hierarchy.
"""
from __future__ import annotations

from guardian_workflow.exceptions import (
    AlreadyTerminalError,
    CoordinationServiceError,
    ExpiredError,
    InvalidDataError,
    LedgerRevertError,
    NotFoundError,
    RoleDeniedError,
    SerializationError,
    StoreError,
    TooEarlyError,
    WorkflowException,
)


class TestWorkflowException:

    def test_to_dict(self):
        exc = WorkflowException("boom", details={"k": 1})
        assert exc.to_dict() == {
            "error": "WORKFLOW_ERROR",
            "message": "boom",
            "retryable": False,
            "details": {"k": 1},
        }

    def test_error_code_override(self):
        assert WorkflowException("x", error_code="CUSTOM").error_code == "CUSTOM"


class TestSubclasses:

    def test_role_denied_message(self):
        exc = RoleDeniedError("0xabc", "approve", ["OWNER", "RECOVERY"], operation="OWNERSHIP_TRANSFER")
        assert exc.message == "0xabc may not approve OWNERSHIP_TRANSFER: requires OWNER or RECOVERY"
        assert exc.details["required_roles"] == ["OWNER", "RECOVERY"]
        assert not exc.retryable

    def test_too_early_seconds_remaining(self):
        exc = TooEarlyError("wait", tx_id=1, now=100, not_before=160)
        assert exc.details == {"tx_id": 1, "now": 100, "not_before": 160, "seconds_remaining": 60}

    def test_expired(self):
        exc = ExpiredError(deadline=10, now=15)
        assert "5s ago" in exc.message

    def test_already_terminal_is_not_found(self):
        exc = AlreadyTerminalError(3, "COMPLETED")
        assert isinstance(exc, NotFoundError)
        assert exc.error_code == "ALREADY_TERMINAL"
        assert exc.details["status"] == "COMPLETED"
        assert exc.details["resource_id"] == "3"

    def test_store_errors_retryability(self):
        assert issubclass(SerializationError, StoreError)
        assert SerializationError("x").retryable
        assert not InvalidDataError("x").retryable

    def test_coordination_error_keeps_body(self):
        exc = CoordinationServiceError("bad", status_code=400, body='{"a": 1}')
        assert exc.to_dict()["details"] == {"status_code": 400, "body": '{"a": 1}'}
        assert exc.retryable

    def test_revert_reason(self):
        exc = LedgerRevertError("GS020", tx_hash="0x01")
        assert exc.reason == "GS020"
        assert exc.message == "Transaction reverted: GS020"
