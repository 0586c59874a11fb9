"""
Temporal workflow state machine for guardian custodian operations.

Each administrative operation moves through request -> wait -> approve/cancel,
gated by the role table of its operation type and by elapsed time:

    PENDING --(now >= releaseTime)--> READY     (derived, never stored)
    PENDING/READY --approve--> COMPLETED        (terminal)
    PENDING/READY --cancel---> CANCELLED        (terminal)

Meta-transaction variants let a broadcaster submit an approval or
cancellation signed by the role holder. Single-phase operations request and
approve in one call under a pre-signed authorization.

The ledger is the single source of truth: txIds are assigned by the ledger,
role holders are read fresh on every check, and records are re-fetched after
every mutating call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from web3 import Web3

from .config import get_settings
from .exceptions import (
    AlreadyTerminalError,
    InvalidSignatureError,
    NotBroadcasterError,
    NotFoundError,
    PreconditionFailedError,
    RoleDeniedError,
    TooEarlyError,
)
from .ledger import (
    VIEW_BROADCASTER,
    VIEW_CHAIN_ID,
    VIEW_DELEGATED_CALL_ENABLED,
    VIEW_OWNER,
    VIEW_RECOVERY,
    VIEW_SIGNER_NONCE,
    VIEW_TIME_LOCK,
    VIEW_TRANSACTION,
    VIEW_TRANSACTION_HISTORY,
    LedgerClient,
    Receipt,
    submit_and_wait,
)
from .logging_utils import OperationKind, WorkflowLogger, get_workflow_logger
from .meta_tx import MetaTransaction, MetaTxAction, validate_meta_transaction
from .registry import OperationType, OperationTypeRegistry, Phase, Role, WorkflowType

logger = logging.getLogger(__name__)

# Bound on a single history read
HISTORY_PAGE_SIZE = 100


class TxStatus(str, Enum):
    """Operation record status."""
    PENDING = "PENDING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = (TxStatus.COMPLETED, TxStatus.CANCELLED)


@dataclass
class OperationRecord:
    """A ledger operation record. Only PENDING, COMPLETED and CANCELLED are stored."""
    tx_id: int
    operation_type: str
    requester: str
    target: str
    value: int
    execution_payload: str
    created_at: int
    release_time: int
    status: TxStatus

    @classmethod
    def from_ledger(cls, data: Dict[str, Any]) -> "OperationRecord":
        return cls(
            tx_id=int(data["txId"]),
            operation_type=str(data["operationType"]).lower(),
            requester=Web3.to_checksum_address(data["requester"]),
            target=Web3.to_checksum_address(data["target"]),
            value=int(data.get("value", 0)),
            execution_payload=data.get("executionPayload") or "0x",
            created_at=int(data["createdAt"]),
            release_time=int(data["releaseTime"]),
            status=TxStatus(data["status"]),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def effective_status(self, now: int) -> TxStatus:
        """Stored status, with PENDING reported as READY once the release time passes."""
        if self.status == TxStatus.PENDING and now >= self.release_time:
            return TxStatus.READY
        return self.status

    def seconds_until_release(self, now: int) -> int:
        return max(0, self.release_time - now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "operation_type": self.operation_type,
            "requester": self.requester,
            "target": self.target,
            "value": self.value,
            "execution_payload": self.execution_payload,
            "created_at": self.created_at,
            "release_time": self.release_time,
            "status": self.status.value,
        }


_META_PHASES = {
    MetaTxAction.APPROVE: Phase.META_APPROVE,
    MetaTxAction.CANCEL: Phase.META_CANCEL,
    MetaTxAction.REQUEST_AND_APPROVE: Phase.REQUEST_AND_APPROVE,
}

_META_KINDS = {
    MetaTxAction.APPROVE: OperationKind.META_APPROVE,
    MetaTxAction.CANCEL: OperationKind.META_CANCEL,
    MetaTxAction.REQUEST_AND_APPROVE: OperationKind.REQUEST_AND_APPROVE,
}


class TemporalWorkflow:
    """
    Request/approve/cancel lifecycle for one custodian contract.

    Time checks use `clock` when given, otherwise the ledger's block timestamp.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registry: OperationTypeRegistry,
        custodian: str,
        clock: Optional[Callable[[], float]] = None,
        min_cancel_hold_seconds: Optional[int] = None,
        wf_logger: Optional[WorkflowLogger] = None,
    ):
        self._ledger = ledger
        self._registry = registry
        self._custodian = Web3.to_checksum_address(custodian)
        self._clock = clock
        if min_cancel_hold_seconds is None:
            min_cancel_hold_seconds = get_settings().min_cancel_hold_seconds
        self._min_cancel_hold_seconds = min_cancel_hold_seconds
        self._wf_logger = wf_logger or get_workflow_logger()
        self.refresh_event = asyncio.Event()

    @property
    def custodian(self) -> str:
        return self._custodian

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @property
    def registry(self) -> OperationTypeRegistry:
        return self._registry

    async def now(self) -> int:
        if self._clock is not None:
            return int(self._clock())
        return int(await self._ledger.block_timestamp())

    async def _view(self, signature: str, *args: Any) -> Any:
        return await self._ledger.read_view(self._custodian, signature, args)

    # =========================================================================
    # Role reads (never cached)
    # =========================================================================

    async def owner(self) -> str:
        return await self._view(VIEW_OWNER)

    async def broadcaster(self) -> str:
        return await self._view(VIEW_BROADCASTER)

    async def recovery(self) -> str:
        return await self._view(VIEW_RECOVERY)

    async def time_lock_minutes(self) -> int:
        return int(await self._view(VIEW_TIME_LOCK))

    async def chain_id(self) -> int:
        return int(await self._view(VIEW_CHAIN_ID))

    async def signer_nonce(self, signer: str) -> int:
        return int(await self._view(VIEW_SIGNER_NONCE, Web3.to_checksum_address(signer)))

    async def role_holder(self, role: Role) -> str:
        if role == Role.OWNER:
            return await self.owner()
        if role == Role.BROADCASTER:
            return await self.broadcaster()
        return await self.recovery()

    async def check_role(self, op: OperationType, phase: Phase, caller: str) -> Role:
        """
        Return the first role in the phase's role table that `caller` holds.

        Raises:
            RoleDeniedError: if the caller holds none of them
        """
        roles = op.roles(phase)
        for role in roles:
            holder = await self.role_holder(role)
            if holder and holder.lower() == caller.lower():
                return role
        raise RoleDeniedError(
            caller=caller,
            phase=phase.value,
            required=[r.value for r in roles],
            operation=op.name,
        )

    async def verify_broadcaster(self, caller: str) -> str:
        """
        Check `caller` against the custodian's current broadcaster.

        Raises:
            NotBroadcasterError: if they differ
        """
        broadcaster = await self.broadcaster()
        if not broadcaster or broadcaster.lower() != caller.lower():
            raise NotBroadcasterError(caller=caller, broadcaster=broadcaster)
        return broadcaster

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_record(self, tx_id: int) -> OperationRecord:
        data = await self._view(VIEW_TRANSACTION, int(tx_id))
        if not data:
            raise NotFoundError("OperationRecord", tx_id)
        return OperationRecord.from_ledger(data)

    async def history(self, from_id: int, to_id: int) -> List[OperationRecord]:
        """Records with from_id <= txId <= to_id, read in bounded pages."""
        if from_id > to_id:
            raise ValueError(f"Invalid range: {from_id} > {to_id}")
        records: List[OperationRecord] = []
        start = from_id
        while start <= to_id:
            end = min(to_id, start + HISTORY_PAGE_SIZE - 1)
            page = await self._view(VIEW_TRANSACTION_HISTORY, start, end)
            records.extend(OperationRecord.from_ledger(item) for item in page)
            start = end + 1
        return records

    async def all_records(self) -> List[OperationRecord]:
        """Every record, read from txId 1 in pages until a short page."""
        records: List[OperationRecord] = []
        start = 1
        while True:
            page = await self._view(VIEW_TRANSACTION_HISTORY, start, start + HISTORY_PAGE_SIZE - 1)
            records.extend(OperationRecord.from_ledger(item) for item in page)
            if len(page) < HISTORY_PAGE_SIZE:
                return records
            start += HISTORY_PAGE_SIZE

    async def pending(self) -> List[OperationRecord]:
        """Records not yet approved or cancelled (PENDING or READY)."""
        return [r for r in await self.all_records() if not r.is_terminal]

    async def completed(self) -> List[OperationRecord]:
        """Records in a terminal state."""
        return [r for r in await self.all_records() if r.is_terminal]

    async def effective_status(self, record: OperationRecord) -> TxStatus:
        return record.effective_status(await self.now())

    async def wait_until_release(
        self,
        tx_id: int,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> OperationRecord:
        """
        Poll until the record is READY or terminal.

        Polls at a fixed interval (default: GUARDIAN_POLL_INTERVAL_SECONDS);
        `refresh_event.set()` wakes the loop early.
        """
        if poll_interval is None:
            poll_interval = get_settings().poll_interval_seconds
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            record = await self.get_record(tx_id)
            status = await self.effective_status(record)
            if status != TxStatus.PENDING:
                return record
            if timeout is not None and loop.time() - started >= timeout:
                raise asyncio.TimeoutError(f"Operation {tx_id} not released after {timeout}s")
            self.refresh_event.clear()
            try:
                await asyncio.wait_for(self.refresh_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

    # =========================================================================
    # Direct transitions
    # =========================================================================

    async def _check_capabilities(self, op: OperationType, payload: Dict[str, Any]) -> None:
        names = [name for name, _ in op.payload_fields]
        if "operation" in names and int(payload.get("operation", 0)) == 1:
            if not await self._view(VIEW_DELEGATED_CALL_ENABLED):
                raise PreconditionFailedError(
                    "Delegate call is not enabled on this custodian",
                    details={"operation_type": op.name, "custodian": self._custodian},
                )

    async def _active_record(self, tx_id: int) -> Tuple[OperationRecord, OperationType]:
        record = await self.get_record(tx_id)
        if record.is_terminal:
            raise AlreadyTerminalError(record.tx_id, record.status.value)
        return record, self._registry.resolve(record.operation_type)

    def _mutated(self) -> None:
        self.refresh_event.set()

    async def request(
        self,
        op_type: Union[OperationType, str],
        payload: Optional[Dict[str, Any]],
        caller: str,
    ) -> OperationRecord:
        """
        Request a multi-phase operation.

        Raises:
            PreconditionFailedError: for single-phase types, or a disabled capability
            RoleDeniedError: if the caller lacks the request role
        """
        op = self._registry.lookup(op_type)
        payload = payload or {}
        if op.workflow_type == WorkflowType.SINGLE_PHASE or not op.supports(Phase.REQUEST):
            raise PreconditionFailedError(
                f"{op.name} is single-phase; use request_and_approve_single_phase",
                details={"operation_type": op.name},
            )

        async with self._wf_logger.operation_context(
            OperationKind.REQUEST, self._custodian, operation_type=op.name
        ) as ctx:
            await self.check_role(op, Phase.REQUEST, caller)
            await self._check_capabilities(op, payload)
            receipt = await submit_and_wait(
                self._ledger,
                self._custodian,
                op.function(Phase.REQUEST),
                op.call_args(payload),
                caller,
                self._wf_logger,
            )
            self._mutated()
            record = await self.get_record(receipt.tx_id)
            ctx.metadata["tx_id"] = record.tx_id
            ctx.metadata["release_time"] = record.release_time

        logger.info(
            f"Requested {op.name} txId={record.tx_id} on {self._custodian}, "
            f"release at {record.release_time}"
        )
        return record

    async def approve(self, tx_id: int, caller: str) -> OperationRecord:
        """
        Approve a record once its release time has passed.

        Raises:
            NotFoundError / AlreadyTerminalError: unknown or finished record
            RoleDeniedError: caller lacks the approve role
            TooEarlyError: now < releaseTime
        """
        async with self._wf_logger.operation_context(
            OperationKind.APPROVE, self._custodian, tx_id=tx_id
        ):
            record, op = await self._active_record(tx_id)
            await self.check_role(op, Phase.APPROVE, caller)
            now = await self.now()
            if now < record.release_time:
                raise TooEarlyError(
                    f"Operation {tx_id} is time-locked for another "
                    f"{record.seconds_until_release(now)}s",
                    tx_id=tx_id,
                    now=now,
                    not_before=record.release_time,
                )
            await submit_and_wait(
                self._ledger,
                self._custodian,
                op.function(Phase.APPROVE),
                [record.tx_id],
                caller,
                self._wf_logger,
            )
            self._mutated()
            return await self.get_record(tx_id)

    async def cancel(self, tx_id: int, caller: str) -> OperationRecord:
        """
        Cancel a record after the minimum hold period.

        Raises:
            NotFoundError / AlreadyTerminalError: unknown or finished record
            RoleDeniedError: caller lacks the cancel role
            TooEarlyError: cancellation within the minimum hold period
        """
        async with self._wf_logger.operation_context(
            OperationKind.CANCEL, self._custodian, tx_id=tx_id
        ):
            record, op = await self._active_record(tx_id)
            await self.check_role(op, Phase.CANCEL, caller)
            now = await self.now()
            not_before = record.created_at + self._min_cancel_hold_seconds
            if now < not_before:
                raise TooEarlyError(
                    f"Cannot cancel operation {tx_id} within "
                    f"{self._min_cancel_hold_seconds}s of the request",
                    tx_id=tx_id,
                    now=now,
                    not_before=not_before,
                )
            await submit_and_wait(
                self._ledger,
                self._custodian,
                op.function(Phase.CANCEL),
                [record.tx_id],
                caller,
                self._wf_logger,
            )
            self._mutated()
            return await self.get_record(tx_id)

    # =========================================================================
    # Meta-transaction transitions
    # =========================================================================

    async def validate_meta_transaction(
        self, meta_tx: MetaTransaction, broadcaster: str
    ) -> Tuple[OperationType, Phase]:
        """
        Run every broadcast-time check against live ledger state.

        Order: broadcaster, deadline, gas price, signature, nonce, binding,
        signer role, record state.
        """
        await self.verify_broadcaster(broadcaster)

        phase = _META_PHASES[meta_tx.action]
        op = self._registry.resolve(meta_tx.operation_type)

        now = await self.now()
        gas_price = await self._ledger.gas_price()
        nonce = await self.signer_nonce(meta_tx.signer)
        validate_meta_transaction(meta_tx, now, gas_price, expected_nonce=nonce)

        params = meta_tx.params
        chain_id = await self.chain_id()
        if params.chain_id != chain_id:
            raise InvalidSignatureError(
                f"Meta-transaction signed for chain {params.chain_id}, custodian is on {chain_id}"
            )
        if params.handler_contract.lower() != self._custodian.lower():
            raise InvalidSignatureError(
                f"Meta-transaction is bound to {params.handler_contract}, not {self._custodian}"
            )
        if params.handler_selector.lower() != op.selector(phase).lower():
            raise InvalidSignatureError(
                f"Meta-transaction selector {params.handler_selector} does not match "
                f"{op.function(phase)}"
            )

        await self.check_role(op, phase, meta_tx.signer)

        if phase == Phase.REQUEST_AND_APPROVE:
            if meta_tx.tx_id != 0:
                raise InvalidSignatureError("Single-phase meta-transaction must not reference a txId")
            await self._check_capabilities(op, op.decode_payload(meta_tx.payload_bytes))
        else:
            record, record_op = await self._active_record(meta_tx.tx_id)
            if record_op.type_id != op.type_id:
                raise InvalidSignatureError(
                    f"Meta-transaction is for {op.name}, record {record.tx_id} is {record_op.name}"
                )
        return op, phase

    async def execute_meta_transaction(
        self, meta_tx: MetaTransaction, broadcaster: str
    ) -> Tuple[OperationRecord, Receipt]:
        """Validate and submit a meta-transaction of any action."""
        async with self._wf_logger.operation_context(
            _META_KINDS[meta_tx.action],
            self._custodian,
            tx_id=meta_tx.tx_id,
            signer=meta_tx.signer,
        ) as ctx:
            op, phase = await self.validate_meta_transaction(meta_tx, broadcaster)
            receipt = await submit_and_wait(
                self._ledger,
                self._custodian,
                op.function(phase),
                [meta_tx.to_call_tuple()],
                broadcaster,
                self._wf_logger,
            )
            self._mutated()
            record = await self.get_record(receipt.tx_id)
            ctx.metadata["tx_id"] = record.tx_id
            return record, receipt

    def _expect_action(self, meta_tx: MetaTransaction, action: MetaTxAction) -> None:
        if meta_tx.action != action:
            raise InvalidSignatureError(
                f"Expected a {action.value} meta-transaction, got {meta_tx.action.value}"
            )

    async def approve_via_meta_transaction(
        self, meta_tx: MetaTransaction, broadcaster: str
    ) -> OperationRecord:
        self._expect_action(meta_tx, MetaTxAction.APPROVE)
        record, _ = await self.execute_meta_transaction(meta_tx, broadcaster)
        return record

    async def cancel_via_meta_transaction(
        self, meta_tx: MetaTransaction, broadcaster: str
    ) -> OperationRecord:
        self._expect_action(meta_tx, MetaTxAction.CANCEL)
        record, _ = await self.execute_meta_transaction(meta_tx, broadcaster)
        return record

    async def request_and_approve_single_phase(
        self, meta_tx: MetaTransaction, broadcaster: str
    ) -> OperationRecord:
        """Request and approve in one call; the signer accepts skipping the time lock."""
        self._expect_action(meta_tx, MetaTxAction.REQUEST_AND_APPROVE)
        record, _ = await self.execute_meta_transaction(meta_tx, broadcaster)
        return record


__all__ = [
    "TxStatus",
    "OperationRecord",
    "TemporalWorkflow",
    "TERMINAL_STATUSES",
]
