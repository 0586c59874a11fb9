"""
Meta-transaction signer/relay.

Signing and broadcasting are separate steps, usually performed by different
identities at different times:

1. `sign` builds a deadline-bound authorization, signs it locally with the
   role holder's key and persists it in the durable store.
2. `broadcast` loads it, re-verifies the live broadcaster and every
   meta-transaction precondition, submits it, and deletes the stored copy on
   success. A failed broadcast leaves the stored copy for retry or re-signing.

Existing records are stored under their txId; new single-phase
authorizations under a synthesized `temp_<token>` id that has no relation to
the txId the ledger eventually assigns.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from web3 import Web3

from .config import MetaTxSettings, get_settings
from .exceptions import (
    AlreadyTerminalError,
    NotFoundError,
    PreconditionFailedError,
    StoreError,
)
from .ledger import LedgerClient, Receipt
from .logging_utils import OperationKind, WorkflowLogger, get_workflow_logger
from .meta_tx import (
    MetaTransaction,
    MetaTxAction,
    MetaTxParams,
    SignerIdentity,
    sign_meta_transaction,
)
from .registry import OperationType, OperationTypeRegistry, Phase
from .store import SignedTransactionStore, StoredSignedTransaction, normalize_operation_id
from .workflow import OperationRecord, TemporalWorkflow, TxStatus

logger = logging.getLogger(__name__)

_PHASE_ACTIONS = {
    Phase.APPROVE: MetaTxAction.APPROVE,
    Phase.META_APPROVE: MetaTxAction.APPROVE,
    Phase.CANCEL: MetaTxAction.CANCEL,
    Phase.META_CANCEL: MetaTxAction.CANCEL,
    Phase.REQUEST: MetaTxAction.REQUEST_AND_APPROVE,
    Phase.REQUEST_AND_APPROVE: MetaTxAction.REQUEST_AND_APPROVE,
}

_ACTION_PHASES = {
    MetaTxAction.APPROVE: Phase.META_APPROVE,
    MetaTxAction.CANCEL: Phase.META_CANCEL,
    MetaTxAction.REQUEST_AND_APPROVE: Phase.REQUEST_AND_APPROVE,
}


def temporary_operation_id(token: Union[int, str, None] = None) -> str:
    """Synthesize a store key for an authorization with no ledger txId yet."""
    if token is None:
        token = secrets.token_hex(8)
    return normalize_operation_id(f"temp_{token}")


@dataclass
class ExecutionResult:
    """Outcome of a broadcast."""
    tx_hash: str
    operation_id: str
    action: MetaTxAction
    record: OperationRecord
    receipt: Receipt
    cleanup_error: Optional[str] = None

    @property
    def cleaned_up(self) -> bool:
        return self.cleanup_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "operation_id": self.operation_id,
            "action": self.action.value,
            "record": self.record.to_dict(),
            "receipt": self.receipt.to_dict(),
            "cleanup_error": self.cleanup_error,
        }


class MetaTxRelay:
    """
    Signs, stores and broadcasts meta-transactions for one custodian.

    Usage:
        relay = MetaTxRelay(ledger, registry, workflow, store)
        entry = await relay.sign_existing(tx_id, MetaTxAction.APPROVE, owner_signer)
        result = await relay.broadcast(entry.operation_id, broadcaster_address)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registry: OperationTypeRegistry,
        workflow: TemporalWorkflow,
        store: SignedTransactionStore,
        settings: Optional[MetaTxSettings] = None,
        clock: Optional[Callable[[], float]] = None,
        wf_logger: Optional[WorkflowLogger] = None,
    ):
        self._ledger = ledger
        self._registry = registry
        self._workflow = workflow
        self._store = store
        self._settings = settings or get_settings().meta_tx_settings()
        self._clock = clock or time.time
        self._wf_logger = wf_logger or get_workflow_logger()

    @property
    def custodian(self) -> str:
        return self._workflow.custodian

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @property
    def store(self) -> SignedTransactionStore:
        return self._store

    async def _params(
        self, op: OperationType, phase: Phase, action: MetaTxAction, signer: str
    ) -> MetaTxParams:
        # Nonce and chain id are the only ledger reads needed to build the message
        nonce = await self._workflow.signer_nonce(signer)
        chain_id = await self._workflow.chain_id()
        timing = self._settings.to_params(int(self._clock()))
        return MetaTxParams(
            chain_id=chain_id,
            nonce=nonce,
            handler_contract=self.custodian,
            handler_selector=op.selector(phase),
            action=action,
            deadline=timing["deadline"],
            max_gas_price=timing["max_gas_price"],
            signer=Web3.to_checksum_address(signer),
        )

    async def _persist(
        self,
        operation_id: str,
        meta_tx: MetaTransaction,
        op: OperationType,
        extra: Optional[Dict[str, Any]] = None,
    ) -> StoredSignedTransaction:
        metadata: Dict[str, Any] = {
            "type": op.name,
            "action": meta_tx.action.value,
            "operationType": op.type_id,
            "txId": meta_tx.tx_id,
            "signer": meta_tx.signer,
            "deadline": meta_tx.params.deadline,
            "status": TxStatus.PENDING.value,
            "broadcasted": False,
        }
        metadata.update(extra or {})
        return await self._store.store(self.custodian, operation_id, meta_tx.to_json(), metadata)

    async def sign(
        self,
        op_type: Union[OperationType, str],
        phase: Phase,
        record_or_payload: Union[OperationRecord, int, Dict[str, Any]],
        signer: SignerIdentity,
        operation_id: Optional[str] = None,
    ) -> StoredSignedTransaction:
        """
        Sign an authorization for `phase` and store it.

        Approve/cancel phases take an existing record (or its txId);
        request/request_and_approve phases take a new payload.
        """
        action = _PHASE_ACTIONS[phase]
        if action == MetaTxAction.REQUEST_AND_APPROVE:
            if not isinstance(record_or_payload, dict):
                raise PreconditionFailedError("A new payload is required for single-phase signing")
            return await self.sign_new(op_type, record_or_payload, signer, operation_id)

        if isinstance(record_or_payload, OperationRecord):
            tx_id = record_or_payload.tx_id
        elif isinstance(record_or_payload, int):
            tx_id = record_or_payload
        else:
            raise PreconditionFailedError(f"An existing record is required to {action.value}")

        op = self._registry.lookup(op_type)
        record = await self._workflow.get_record(tx_id)
        if record.operation_type != op.type_id.lower():
            raise PreconditionFailedError(
                f"Record {tx_id} is not a {op.name} operation",
                details={"tx_id": tx_id, "operation_type": record.operation_type},
            )
        return await self.sign_existing(tx_id, action, signer)

    async def sign_existing(
        self,
        tx_id: int,
        action: MetaTxAction,
        signer: SignerIdentity,
    ) -> StoredSignedTransaction:
        """
        Sign an approval or cancellation of an existing PENDING record.

        Raises:
            NotFoundError / AlreadyTerminalError: unknown or finished record
            RoleDeniedError: signer lacks the meta-phase role
        """
        if action == MetaTxAction.REQUEST_AND_APPROVE:
            raise PreconditionFailedError("Use sign_new for single-phase authorizations")

        async with self._wf_logger.operation_context(
            OperationKind.SIGN, self.custodian, tx_id=tx_id, action=action.value
        ):
            record = await self._workflow.get_record(tx_id)
            if record.is_terminal:
                raise AlreadyTerminalError(record.tx_id, record.status.value)
            op = self._registry.resolve(record.operation_type)
            phase = _ACTION_PHASES[action]
            await self._workflow.check_role(op, phase, signer.address)

            params = await self._params(op, phase, action, signer.address)
            meta_tx = MetaTransaction(tx_id=record.tx_id, operation_type=op.type_id, params=params)
            signed = sign_meta_transaction(meta_tx, signer)
            entry = await self._persist(str(record.tx_id), signed, op)

        logger.info(f"Signed {action.value} for {op.name} txId={tx_id}, deadline {params.deadline}")
        return entry

    async def sign_new(
        self,
        op_type: Union[OperationType, str],
        payload: Dict[str, Any],
        signer: SignerIdentity,
        operation_id: Optional[str] = None,
    ) -> StoredSignedTransaction:
        """
        Sign a single-phase request-and-approve authorization for a new payload.

        `operation_id` is the temporary store key (e.g. `temp_<safe nonce>`);
        one is generated when omitted.
        """
        op = self._registry.lookup(op_type)
        if not op.supports(Phase.REQUEST_AND_APPROVE):
            raise PreconditionFailedError(
                f"{op.name} has no single-phase variant",
                details={"operation_type": op.name},
            )
        op_id = normalize_operation_id(operation_id) if operation_id else temporary_operation_id()

        async with self._wf_logger.operation_context(
            OperationKind.SIGN, self.custodian, operation_id=op_id, action="request_and_approve"
        ):
            await self._workflow.check_role(op, Phase.REQUEST_AND_APPROVE, signer.address)
            encoded = op.encode_payload(payload)
            params = await self._params(
                op, Phase.REQUEST_AND_APPROVE, MetaTxAction.REQUEST_AND_APPROVE, signer.address
            )
            meta_tx = MetaTransaction(
                tx_id=0,
                operation_type=op.type_id,
                params=params,
                payload=Web3.to_hex(encoded) if encoded else "0x",
            )
            signed = sign_meta_transaction(meta_tx, signer)
            entry = await self._persist(
                op_id, signed, op, {"payload": op.decode_payload(encoded)}
            )

        logger.info(f"Signed single-phase {op.name} as {op_id}, deadline {params.deadline}")
        return entry

    async def broadcast(self, operation_id: Union[int, str], broadcaster: str) -> ExecutionResult:
        """
        Submit a stored authorization as the broadcaster.

        On success the stored entry is deleted; if that deletion fails the
        result carries `cleanup_error` and the entry stays visible. On any
        failure before or during submission the entry is left intact.

        Raises:
            NotFoundError: no stored entry under operation_id
            NotBroadcasterError, ExpiredError, GasPriceExceededError,
            InvalidSignatureError, RoleDeniedError, LedgerRevertError
        """
        op_id = str(operation_id)
        entry = await self._store.get(self.custodian, op_id)
        if entry is None:
            raise NotFoundError("StoredSignedTransaction", op_id)
        meta_tx = entry.meta_transaction()

        async with self._wf_logger.operation_context(
            OperationKind.BROADCAST, self.custodian, operation_id=op_id, action=meta_tx.action.value
        ):
            record, receipt = await self._workflow.execute_meta_transaction(meta_tx, broadcaster)

        cleanup_error = None
        try:
            await self._store.remove(self.custodian, op_id)
        except StoreError as e:
            cleanup_error = f"{e.error_code}: {e.message}"
            logger.error(
                f"Broadcast {receipt.tx_hash} succeeded but stored entry {op_id} "
                f"could not be removed: {cleanup_error}"
            )

        logger.info(
            f"Broadcast {meta_tx.action.value} {op_id} -> txId={record.tx_id} "
            f"({record.status.value}) in {receipt.tx_hash}"
        )
        return ExecutionResult(
            tx_hash=receipt.tx_hash,
            operation_id=op_id,
            action=meta_tx.action,
            record=record,
            receipt=receipt,
            cleanup_error=cleanup_error,
        )

    async def pending_signatures(self) -> List[StoredSignedTransaction]:
        """Stored, unbroadcast authorizations for this custodian, oldest first."""
        entries = await self._store.get_by_contract(self.custodian)
        return sorted(entries.values(), key=lambda e: (e.timestamp, e.operation_id))

    async def discard(self, operation_id: Union[int, str]) -> bool:
        """Drop a stored authorization locally; has no effect on the ledger."""
        return await self._store.remove(self.custodian, str(operation_id))


__all__ = [
    "ExecutionResult",
    "MetaTxRelay",
    "temporary_operation_id",
]
