"""
In-process simulated guardian custodian and Safe.

Implements `LedgerClient` against a local model of the custodian contract so
workflows can run offline and in tests. Submissions are dispatched on the
4-byte selector of the function signature and checked against the same rules
the on-chain contract enforces; a violated rule reverts with a reason.

Features:
- Settable clock and gas price
- Monotonic txId assignment per custodian
- Role, release-time, minimum-hold and terminal-state enforcement
- Meta-transaction verification (broadcaster, binding, signature, nonce, deadline, gas)
- Atomic application of the approved effect, including Safe execution
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from web3 import Web3

from .config import DEFAULT_MIN_CANCEL_HOLD_SECONDS, GWEI
from .exceptions import LedgerRevertError, LedgerUnavailableError, NotFoundError
from .ledger import (
    VIEW_BROADCASTER,
    VIEW_CHAIN_ID,
    VIEW_DELEGATED_CALL_ENABLED,
    VIEW_OWNER,
    VIEW_RECOVERY,
    VIEW_SAFE,
    VIEW_SAFE_NONCE,
    VIEW_SAFE_OWNERS,
    VIEW_SAFE_THRESHOLD,
    VIEW_SIGNER_NONCE,
    VIEW_SUPPORTED_OPERATION_TYPES,
    VIEW_TIME_LOCK,
    VIEW_TRANSACTION,
    VIEW_TRANSACTION_HISTORY,
    Receipt,
)
from .meta_tx import MetaTransaction, MetaTxAction, recover_signer
from .registry import (
    EXPECTED_OPERATION_TYPES,
    OperationType,
    Phase,
    Role,
    WorkflowType,
    function_selector,
)

logger = logging.getLogger(__name__)

MAX_HISTORY_RANGE = 1000
SAFE_SIGNATURE_LENGTH = 65

_PHASE_ACTIONS = {
    Phase.META_APPROVE: MetaTxAction.APPROVE,
    Phase.META_CANCEL: MetaTxAction.CANCEL,
    Phase.REQUEST_AND_APPROVE: MetaTxAction.REQUEST_AND_APPROVE,
}


def _derive_address(label: str) -> str:
    return Web3.to_checksum_address(Web3.keccak(text=label)[-20:])


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def _effect_name(op: OperationType) -> str:
    """Catalog name of the operation whose functions `op` shares."""
    for base in EXPECTED_OPERATION_TYPES:
        if op.functions == base.functions:
            return base.name
    return op.name


@dataclass
class SimulatedRecord:
    tx_id: int
    operation_type: str
    requester: str
    target: str
    value: int
    execution_payload: str
    created_at: int
    release_time: int
    status: str = "PENDING"

    def to_view(self) -> Dict[str, Any]:
        return {
            "txId": self.tx_id,
            "operationType": self.operation_type,
            "requester": self.requester,
            "target": self.target,
            "value": self.value,
            "executionPayload": self.execution_payload,
            "createdAt": self.created_at,
            "releaseTime": self.release_time,
            "status": self.status,
        }


@dataclass
class SimulatedSafe:
    address: str
    owners: List[str]
    threshold: int
    nonce: int = 0
    executed: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SimulatedCustodian:
    address: str
    owner: str
    broadcaster: str
    recovery: str
    time_lock_minutes: int
    supported: List[OperationType]
    safe: Optional[str] = None
    delegated_call_enabled: bool = False
    records: Dict[int, SimulatedRecord] = field(default_factory=dict)
    signer_nonces: Dict[str, int] = field(default_factory=dict)
    next_tx_id: int = 1

    def role_holder(self, role: Role) -> str:
        if role == Role.OWNER:
            return self.owner
        if role == Role.BROADCASTER:
            return self.broadcaster
        return self.recovery

    def holds_any(self, address: str, roles: Iterable[Role]) -> bool:
        return any(_same(address, self.role_holder(role)) for role in roles)

    def nonce_of(self, signer: str) -> int:
        return self.signer_nonces.get(signer.lower(), 0)

    def consume_nonce(self, signer: str) -> None:
        self.signer_nonces[signer.lower()] = self.nonce_of(signer) + 1


class SimulatedLedger:
    """
    Conforming in-process ledger hosting guardian custodians and Safes.

    Usage:
        ledger = SimulatedLedger(start_time=0)
        custodian = ledger.deploy_custodian(owner, broadcaster, recovery, time_lock_minutes=1440)
        ledger.advance(1441 * 60)
    """

    def __init__(
        self,
        chain_id: int = 31337,
        start_time: int = 1_700_000_000,
        gas_price: int = 1 * GWEI,
        operation_types: Sequence[OperationType] = EXPECTED_OPERATION_TYPES,
        min_cancel_hold_seconds: int = DEFAULT_MIN_CANCEL_HOLD_SECONDS,
    ):
        self.chain_id = chain_id
        self.now = int(start_time)
        self.current_gas_price = int(gas_price)
        self.min_cancel_hold_seconds = min_cancel_hold_seconds
        self.available = True
        self.block_number = 0

        self._operation_types = tuple(operation_types)
        self._custodians: Dict[str, SimulatedCustodian] = {}
        self._safes: Dict[str, SimulatedSafe] = {}
        self._receipts: Dict[str, Receipt] = {}
        self._deploy_counter = 0
        self._tx_counter = 0

        self._functions: Dict[str, Tuple[OperationType, Phase]] = {}
        for op in self._operation_types:
            for phase, signature in op.functions.items():
                self._functions[function_selector(signature)] = (op, phase)

        self._views: Dict[str, Callable[..., Any]] = {
            function_selector(VIEW_OWNER): lambda c: c.owner,
            function_selector(VIEW_BROADCASTER): lambda c: c.broadcaster,
            function_selector(VIEW_RECOVERY): lambda c: c.recovery,
            function_selector(VIEW_TIME_LOCK): lambda c: c.time_lock_minutes,
            function_selector(VIEW_SUPPORTED_OPERATION_TYPES): lambda c: [
                (op.type_id, op.name) for op in c.supported
            ],
            function_selector(VIEW_TRANSACTION): self._view_transaction,
            function_selector(VIEW_TRANSACTION_HISTORY): self._view_history,
            function_selector(VIEW_SIGNER_NONCE): lambda c, signer: c.nonce_of(signer),
            function_selector(VIEW_DELEGATED_CALL_ENABLED): lambda c: c.delegated_call_enabled,
            function_selector(VIEW_CHAIN_ID): lambda c: self.chain_id,
            function_selector(VIEW_SAFE): lambda c: c.safe,
        }
        self._safe_views: Dict[str, Callable[..., Any]] = {
            function_selector(VIEW_SAFE_OWNERS): lambda s: list(s.owners),
            function_selector(VIEW_SAFE_THRESHOLD): lambda s: s.threshold,
            function_selector(VIEW_SAFE_NONCE): lambda s: s.nonce,
        }

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def set_time(self, timestamp: int) -> None:
        self.now = int(timestamp)

    def advance(self, seconds: int) -> int:
        self.now += int(seconds)
        return self.now

    def set_gas_price(self, gas_price: int) -> None:
        self.current_gas_price = int(gas_price)

    def clock(self) -> int:
        return self.now

    def deploy_safe(
        self,
        owners: Sequence[str],
        threshold: int,
        address: Optional[str] = None,
        nonce: int = 0,
    ) -> str:
        self._deploy_counter += 1
        address = Web3.to_checksum_address(address or _derive_address(f"safe:{self._deploy_counter}"))
        self._safes[address.lower()] = SimulatedSafe(
            address=address,
            owners=[Web3.to_checksum_address(o) for o in owners],
            threshold=threshold,
            nonce=nonce,
        )
        return address

    def deploy_custodian(
        self,
        owner: str,
        broadcaster: str,
        recovery: str,
        time_lock_minutes: int,
        safe: Optional[str] = None,
        supported: Optional[Sequence[OperationType]] = None,
        delegated_call_enabled: bool = False,
        address: Optional[str] = None,
    ) -> str:
        self._deploy_counter += 1
        address = Web3.to_checksum_address(
            address or _derive_address(f"custodian:{self._deploy_counter}")
        )
        self._custodians[address.lower()] = SimulatedCustodian(
            address=address,
            owner=Web3.to_checksum_address(owner),
            broadcaster=Web3.to_checksum_address(broadcaster),
            recovery=Web3.to_checksum_address(recovery),
            time_lock_minutes=time_lock_minutes,
            supported=list(supported if supported is not None else self._operation_types),
            safe=Web3.to_checksum_address(safe) if safe else None,
            delegated_call_enabled=delegated_call_enabled,
        )
        return address

    def custodian(self, address: str) -> SimulatedCustodian:
        try:
            return self._custodians[address.lower()]
        except KeyError:
            raise NotFoundError("Custodian", address) from None

    def safe(self, address: str) -> SimulatedSafe:
        try:
            return self._safes[address.lower()]
        except KeyError:
            raise NotFoundError("Safe", address) from None

    # -------------------------------------------------------------------------
    # LedgerClient
    # -------------------------------------------------------------------------

    def _ensure_available(self) -> None:
        if not self.available:
            raise LedgerUnavailableError("Simulated ledger is offline")

    async def read_view(
        self, contract: str, signature: str, args: Sequence[Any] = ()
    ) -> Any:
        self._ensure_available()
        selector = function_selector(signature)
        key = contract.lower()
        if key in self._custodians and selector in self._views:
            return self._views[selector](self._custodians[key], *args)
        if key in self._safes and selector in self._safe_views:
            return self._safe_views[selector](self._safes[key], *args)
        raise LedgerRevertError(f"No view {signature} on {contract}")

    async def submit(
        self, contract: str, signature: str, args: Sequence[Any], sender: str
    ) -> str:
        self._ensure_available()
        selector = function_selector(signature)
        if selector not in self._functions:
            raise LedgerRevertError(f"Unknown function selector {selector}")
        custodian = self.custodian(contract)
        catalog_op, phase = self._functions[selector]
        # A custodian may advertise the same functions under its own type name
        op = next(
            (o for o in custodian.supported if o.functions.get(phase) == catalog_op.functions[phase]),
            None,
        )
        if op is None:
            raise LedgerRevertError(f"Operation {catalog_op.name} not supported")

        handler = {
            Phase.REQUEST: self._request,
            Phase.APPROVE: self._approve,
            Phase.CANCEL: self._cancel,
            Phase.META_APPROVE: self._meta_approve,
            Phase.META_CANCEL: self._meta_cancel,
            Phase.REQUEST_AND_APPROVE: self._request_and_approve,
        }[phase]
        tx_id = handler(custodian, op, list(args), sender)

        self._tx_counter += 1
        self.block_number += 1
        tx_hash = Web3.to_hex(Web3.keccak(text=f"tx:{self._tx_counter}:{selector}"))
        self._receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            status=1,
            block_number=self.block_number,
            gas_used=21000,
            tx_id=tx_id,
        )
        logger.debug(f"Simulated {op.name}.{phase.value} txId={tx_id} by {sender}")
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt:
        self._ensure_available()
        try:
            return self._receipts[tx_hash]
        except KeyError:
            raise NotFoundError("Transaction", tx_hash) from None

    async def gas_price(self) -> int:
        self._ensure_available()
        return self.current_gas_price

    async def block_timestamp(self) -> int:
        self._ensure_available()
        return self.now

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def _view_transaction(self, custodian: SimulatedCustodian, tx_id: int) -> Optional[Dict[str, Any]]:
        record = custodian.records.get(int(tx_id))
        return record.to_view() if record else None

    def _view_history(
        self, custodian: SimulatedCustodian, from_id: int, to_id: int
    ) -> List[Dict[str, Any]]:
        from_id, to_id = int(from_id), int(to_id)
        if from_id > to_id:
            raise LedgerRevertError("Invalid range")
        if to_id - from_id >= MAX_HISTORY_RANGE:
            raise LedgerRevertError("Range too large")
        return [
            custodian.records[i].to_view()
            for i in range(from_id, to_id + 1)
            if i in custodian.records
        ]

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def _require_role(
        self, custodian: SimulatedCustodian, op: OperationType, phase: Phase, sender: str
    ) -> None:
        roles = op.roles(phase)
        if not custodian.holds_any(sender, roles):
            raise LedgerRevertError(
                f"Restricted to {' or '.join(r.value for r in roles)}"
            )

    def _pending_record(
        self, custodian: SimulatedCustodian, op: OperationType, tx_id: int
    ) -> SimulatedRecord:
        record = custodian.records.get(int(tx_id))
        if record is None:
            raise LedgerRevertError("Transaction not found")
        if record.operation_type != op.type_id:
            raise LedgerRevertError("Operation type mismatch")
        if record.status != "PENDING":
            raise LedgerRevertError("Transaction not pending")
        return record

    def _check_capabilities(
        self, custodian: SimulatedCustodian, op: OperationType, values: Sequence[Any]
    ) -> None:
        names = [name for name, _ in op.payload_fields]
        if "operation" in names and int(values[names.index("operation")]) == 1:
            if not custodian.delegated_call_enabled:
                raise LedgerRevertError("Delegated calls disabled")

    def _create_record(
        self,
        custodian: SimulatedCustodian,
        op: OperationType,
        values: Sequence[Any],
        sender: str,
        immediate: bool,
    ) -> SimulatedRecord:
        names = [name for name, _ in op.payload_fields]
        payload = op.encode_payload(dict(zip(names, values)))
        target = custodian.address
        value = 0
        if "to" in names:
            target = Web3.to_checksum_address(values[names.index("to")])
            value = int(values[names.index("value")])
        lock = 0 if immediate else custodian.time_lock_minutes * 60
        record = SimulatedRecord(
            tx_id=custodian.next_tx_id,
            operation_type=op.type_id,
            requester=Web3.to_checksum_address(sender),
            target=target,
            value=value,
            execution_payload=Web3.to_hex(payload) if payload else "0x",
            created_at=self.now,
            release_time=self.now + lock,
        )
        custodian.records[record.tx_id] = record
        custodian.next_tx_id += 1
        return record

    def _verify_meta(
        self,
        custodian: SimulatedCustodian,
        op: OperationType,
        phase: Phase,
        args: Sequence[Any],
        sender: str,
    ) -> MetaTransaction:
        if not _same(sender, custodian.broadcaster):
            raise LedgerRevertError("Restricted to broadcaster")

        meta_tx = MetaTransaction.from_call_tuple(tuple(args[0]))
        params = meta_tx.params

        if params.chain_id != self.chain_id:
            raise LedgerRevertError("Chain ID mismatch")
        if not _same(params.handler_contract, custodian.address):
            raise LedgerRevertError("Handler contract mismatch")
        if params.handler_selector.lower() != op.selector(phase).lower():
            raise LedgerRevertError("Handler selector mismatch")
        if meta_tx.operation_type.lower() != op.type_id.lower():
            raise LedgerRevertError("Operation type mismatch")
        if meta_tx.action != _PHASE_ACTIONS[phase]:
            raise LedgerRevertError("Action mismatch")
        if self.now > params.deadline:
            raise LedgerRevertError("Meta-transaction expired")
        if self.current_gas_price > params.max_gas_price:
            raise LedgerRevertError("Gas price exceeds maximum")
        if not _same(recover_signer(meta_tx), params.signer):
            raise LedgerRevertError("Invalid signature")
        if params.nonce != custodian.nonce_of(params.signer):
            raise LedgerRevertError("Invalid nonce")
        self._require_role(custodian, op, phase, params.signer)
        return meta_tx

    # -------------------------------------------------------------------------
    # Phase handlers
    # -------------------------------------------------------------------------

    def _request(self, custodian, op, args, sender) -> int:
        if op.workflow_type != WorkflowType.MULTI_PHASE:
            raise LedgerRevertError("Single-phase operation")
        self._require_role(custodian, op, Phase.REQUEST, sender)
        values = list(args[0]) if op.tuple_payload else list(args)
        self._check_capabilities(custodian, op, values)
        record = self._create_record(custodian, op, values, sender, immediate=False)
        return record.tx_id

    def _approve(self, custodian, op, args, sender) -> int:
        record = self._pending_record(custodian, op, args[0])
        self._require_role(custodian, op, Phase.APPROVE, sender)
        if self.now < record.release_time:
            raise LedgerRevertError("Current time is before release time")
        self._apply(custodian, op, record)
        return record.tx_id

    def _cancel(self, custodian, op, args, sender) -> int:
        record = self._pending_record(custodian, op, args[0])
        self._require_role(custodian, op, Phase.CANCEL, sender)
        if self.now - record.created_at < self.min_cancel_hold_seconds:
            raise LedgerRevertError("Cannot cancel within first hour")
        record.status = "CANCELLED"
        return record.tx_id

    def _meta_approve(self, custodian, op, args, sender) -> int:
        meta_tx = self._verify_meta(custodian, op, Phase.META_APPROVE, args, sender)
        record = self._pending_record(custodian, op, meta_tx.tx_id)
        self._apply(custodian, op, record)
        custodian.consume_nonce(meta_tx.signer)
        return record.tx_id

    def _meta_cancel(self, custodian, op, args, sender) -> int:
        meta_tx = self._verify_meta(custodian, op, Phase.META_CANCEL, args, sender)
        record = self._pending_record(custodian, op, meta_tx.tx_id)
        custodian.consume_nonce(meta_tx.signer)
        record.status = "CANCELLED"
        return record.tx_id

    def _request_and_approve(self, custodian, op, args, sender) -> int:
        meta_tx = self._verify_meta(custodian, op, Phase.REQUEST_AND_APPROVE, args, sender)
        if meta_tx.tx_id != 0:
            raise LedgerRevertError("Single-phase meta-transaction must not reference a txId")
        payload = op.decode_payload(meta_tx.payload_bytes)
        values = [payload[name] for name, _ in op.payload_fields]
        self._check_capabilities(custodian, op, values)
        record = self._create_record(custodian, op, values, meta_tx.signer, immediate=True)
        try:
            self._apply(custodian, op, record)
        except LedgerRevertError:
            del custodian.records[record.tx_id]
            custodian.next_tx_id -= 1
            raise
        custodian.consume_nonce(meta_tx.signer)
        return record.tx_id

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    def _apply(self, custodian: SimulatedCustodian, op: OperationType, record: SimulatedRecord) -> None:
        """Apply the approved effect; the record only completes if the effect succeeds."""
        payload = op.decode_payload(record.execution_payload)

        kind = _effect_name(op)
        if kind == "OWNERSHIP_TRANSFER":
            custodian.owner = custodian.recovery
        elif kind == "BROADCASTER_UPDATE":
            custodian.broadcaster = payload["new_broadcaster"]
        elif kind == "RECOVERY_UPDATE":
            custodian.recovery = payload["new_recovery"]
        elif kind == "TIMELOCK_UPDATE":
            minutes = int(payload["new_time_lock_minutes"])
            if minutes <= 0:
                raise LedgerRevertError("Time lock must be positive")
            custodian.time_lock_minutes = minutes
        elif kind == "EXEC_SAFE_TX":
            self._exec_safe(custodian, payload)
        else:
            raise LedgerRevertError(f"No handler for {op.name}")

        record.status = "COMPLETED"

    def _exec_safe(self, custodian: SimulatedCustodian, payload: Dict[str, Any]) -> None:
        if not custodian.safe:
            raise LedgerRevertError("No Safe configured")
        safe = self.safe(custodian.safe)
        signatures = Web3.to_bytes(hexstr=payload["signatures"])
        if len(signatures) < SAFE_SIGNATURE_LENGTH * safe.threshold:
            raise LedgerRevertError("GS020: signatures data too short")
        safe.executed.append({**payload, "nonce": safe.nonce})
        safe.nonce += 1
