"""
Logging utilities for guardian workflow operations.

Features:
- Operation context tracking with timing for request/approve/cancel/broadcast
- Ledger submission lifecycle logging
- Store change logging
- Audit trail support (JSONL file or logger)
- Address masking
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .config import LoggingConfig, get_settings

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """Kinds of workflow operations."""
    REGISTRY_LOAD = "registry_load"
    REQUEST = "request"
    APPROVE = "approve"
    CANCEL = "cancel"
    META_APPROVE = "meta_approve"
    META_CANCEL = "meta_cancel"
    REQUEST_AND_APPROVE = "request_and_approve"
    SIGN = "sign"
    BROADCAST = "broadcast"
    MULTISIG_POLL = "multisig_poll"


@dataclass
class OperationContext:
    """Context for a workflow operation."""
    operation_id: str
    kind: OperationKind
    custodian: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "custodian": self.custodian,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


class WorkflowLogger:
    """
    Structured logger for guardian workflow operations.

    Provides:
    - Operation context tracking
    - Ledger submission lifecycle logging
    - Audit trail support
    """

    def __init__(
        self,
        name: str = "guardian_workflow",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or LoggingConfig()
        self._operation_counter = 0

    @property
    def config(self) -> LoggingConfig:
        return self._config

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        """Convert level string to logging level."""
        return getattr(logging, level_str.upper(), logging.INFO)

    def _addr(self, address: str) -> str:
        return self._mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(
        self,
        kind: OperationKind,
        custodian: str,
        **metadata,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with wf_logger.operation_context(OperationKind.APPROVE, custodian) as ctx:
                record = await ...
                ctx.metadata["tx_id"] = record.tx_id
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            kind=kind,
            custodian=self._addr(custodian),
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {kind.value} on {ctx.custodian}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)

        except Exception as e:
            ctx.complete(success=False, error=f"{type(e).__name__}: {e}")
            raise

        finally:
            level = (
                self._get_level(self._config.error_level)
                if not ctx.success
                else self._get_level(self._config.operation_level)
            )
            self._logger.log(
                level,
                f"Completed {kind.value} on {ctx.custodian} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )
            if self._config.audit_log_enabled:
                self._write_audit_log(f"operation_{kind.value}", ctx.to_dict())

    def log_submitted(
        self,
        tx_hash: str,
        custodian: str,
        function: str,
        sender: str,
    ) -> None:
        """Log a ledger submission."""
        data = {
            "tx_hash": tx_hash,
            "custodian": self._addr(custodian),
            "function": function,
            "sender": self._addr(sender),
        }
        self._logger.log(
            self._get_level(self._config.transaction_level),
            f"Transaction submitted: {tx_hash} {function} from {data['sender']}",
            extra={"transaction": data},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_submitted", data)

    def log_confirmed(
        self,
        tx_hash: str,
        block_number: int,
        gas_used: int,
        tx_id: Optional[int] = None,
    ) -> None:
        """Log a ledger confirmation."""
        self._logger.log(
            self._get_level(self._config.transaction_level),
            f"Transaction confirmed: {tx_hash} in block {block_number}"
            + (f" (txId {tx_id})" if tx_id is not None else ""),
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_confirmed", {
                "tx_hash": tx_hash,
                "block_number": block_number,
                "gas_used": gas_used,
                "tx_id": tx_id,
            })

    def log_failed(
        self,
        function: str,
        error: str,
        tx_hash: Optional[str] = None,
    ) -> None:
        """Log a failed submission."""
        self._logger.log(
            self._get_level(self._config.error_level),
            f"Transaction failed: {function} {tx_hash or ''} - {error}",
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("transaction_failed", {
                "function": function,
                "tx_hash": tx_hash,
                "error": error,
            })

    def log_store_change(self, custodian: str, operation_id: Optional[str], action: str) -> None:
        """Log a durable store mutation."""
        self._logger.log(
            self._get_level(self._config.store_level),
            f"Store {action} for {self._addr(custodian)}"
            + (f" op={operation_id}" if operation_id else ""),
        )

    @staticmethod
    def _mask_address(address: str) -> str:
        """Mask middle portion of address for privacy."""
        if len(address) < 10:
            return address
        return f"{address[:6]}...{address[-4:]}"

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write to audit log."""
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }

        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(
                f"AUDIT: {event_type}",
                extra={"audit": audit_entry},
            )


# Global logger instance
_workflow_logger: Optional[WorkflowLogger] = None


def get_workflow_logger(
    name: str = "guardian_workflow",
    config: Optional[LoggingConfig] = None,
) -> WorkflowLogger:
    """Get the global workflow logger instance."""
    global _workflow_logger
    if _workflow_logger is None:
        _workflow_logger = WorkflowLogger(name, config or LoggingConfig.from_settings(get_settings()))
    return _workflow_logger


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level (default: GUARDIAN_LOG_LEVEL)
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    level = level or get_settings().log_level
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("guardian_workflow").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
