"""
Multisig aggregator for Safe-guarded custodians.

Bridges a Safe's queued transactions (collected by the Safe Transaction
Service) into the custodian's operation lifecycle. Each queued transaction is
re-expressed as a single EXEC_SAFE_TX operation that can then be authorized
through either mechanism:

- time lock: request -> wait -> approve/cancel (TimelockProvider)
- meta-transaction: sign single-phase -> broadcast (MetaTxProvider)

Features:
- Pending list filtered against the Safe's on-chain nonce
- Signature assembly from per-owner confirmations, in owner-list order
- Observational confirmation-threshold tracking
- Per-mechanism authorization tracking keyed by Safe nonce
- Fixed-interval polling that an on-demand refresh can supersede

The aggregator never confirms a Safe transaction itself; it only observes
confirmations and re-packages them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from eth_abi import decode
from eth_utils import to_bytes
from web3 import Web3

from .exceptions import PreconditionFailedError
from .ledger import VIEW_SAFE, VIEW_SAFE_NONCE, VIEW_SAFE_OWNERS, VIEW_SAFE_THRESHOLD
from .logging_utils import OperationKind, WorkflowLogger, get_workflow_logger
from .meta_tx import SignerIdentity, hash_typed_data
from .providers import Authorization, MetaTxProvider, TimelockProvider
from .registry import EXEC_SAFE_TX, OperationType
from .relay import MetaTxRelay, temporary_operation_id
from .safe_service import (
    ZERO_ADDRESS,
    SafeServiceTransaction,
    SafeTransactionProposal,
    SafeTransactionServiceClient,
)
from .store import StoreChangeEvent
from .workflow import OperationRecord, TemporalWorkflow, TxStatus

logger = logging.getLogger(__name__)

# r || s || v
SAFE_SIGNATURE_LENGTH = 65

ERC20_TRANSFER_SELECTOR = "0xa9059cbb"

SAFE_TX_TYPE = [
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "operation", "type": "uint8"},
    {"name": "safeTxGas", "type": "uint256"},
    {"name": "baseGas", "type": "uint256"},
    {"name": "gasPrice", "type": "uint256"},
    {"name": "gasToken", "type": "address"},
    {"name": "refundReceiver", "type": "address"},
    {"name": "nonce", "type": "uint256"},
]


def _strip_0x(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


# ============================================================================
# Data models
# ============================================================================


@dataclass
class Confirmation:
    """One owner's confirmation of a Safe transaction."""
    owner: str
    signature: str

    def to_dict(self) -> Dict[str, Any]:
        return {"owner": self.owner, "signature": self.signature}


@dataclass
class MultisigPendingTx:
    """
    A queued Safe transaction, mirrored read-only from the coordinator.

    `confirmations` only grows until `confirmations_required` is met.
    """
    safe_tx_hash: str
    to: str
    value: int
    data: str
    operation: int
    nonce: int
    confirmations: List[Confirmation] = field(default_factory=list)
    confirmations_required: int = 1
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS
    signatures: str = ""
    submission_date: Optional[str] = None

    @classmethod
    def from_service(cls, tx: SafeServiceTransaction) -> "MultisigPendingTx":
        return cls(
            safe_tx_hash=tx.safe_tx_hash,
            to=Web3.to_checksum_address(tx.to),
            value=int(tx.value),
            data=tx.data or "0x",
            operation=tx.operation,
            nonce=tx.nonce,
            confirmations=[
                Confirmation(owner=Web3.to_checksum_address(c.owner), signature=c.signature or "")
                for c in tx.confirmations
            ],
            confirmations_required=tx.confirmations_required,
            safe_tx_gas=int(tx.safe_tx_gas),
            base_gas=int(tx.base_gas),
            gas_price=int(tx.gas_price),
            gas_token=tx.gas_token or ZERO_ADDRESS,
            refund_receiver=tx.refund_receiver or ZERO_ADDRESS,
            signatures=tx.signatures or "",
            submission_date=tx.submission_date,
        )

    @property
    def is_delegate_call(self) -> bool:
        return self.operation == 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "safe_tx_hash": self.safe_tx_hash,
            "to": self.to,
            "value": str(self.value),
            "data": self.data,
            "operation": self.operation,
            "nonce": self.nonce,
            "confirmations": [c.to_dict() for c in self.confirmations],
            "confirmations_required": self.confirmations_required,
            "signatures": self.signatures,
            "submission_date": self.submission_date,
        }


@dataclass
class ConfirmationStatus:
    confirmed: int
    required: int
    remaining: int
    is_complete: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirmed": self.confirmed,
            "required": self.required,
            "remaining": self.remaining,
            "is_complete": self.is_complete,
        }


@dataclass
class AuthorizationTracking:
    """
    Progress of one Safe transaction through both authorization mechanisms.

    Keyed by Safe nonce: the custodian txId does not exist until a time-lock
    request has executed.
    """
    safe_nonce: int
    safe_tx_hash: str
    confirmation: ConfirmationStatus
    timelock_tx_id: Optional[int] = None
    timelock_status: Optional[TxStatus] = None
    meta_tx_operation_id: Optional[str] = None
    meta_tx_signed: bool = False
    meta_tx_broadcast: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "safe_nonce": self.safe_nonce,
            "safe_tx_hash": self.safe_tx_hash,
            "confirmation": self.confirmation.to_dict(),
            "timelock_tx_id": self.timelock_tx_id,
            "timelock_status": self.timelock_status.value if self.timelock_status else None,
            "meta_tx_operation_id": self.meta_tx_operation_id,
            "meta_tx_signed": self.meta_tx_signed,
            "meta_tx_broadcast": self.meta_tx_broadcast,
        }


# ============================================================================
# Pure helpers
# ============================================================================


def confirmation_status(tx: MultisigPendingTx) -> ConfirmationStatus:
    """Threshold arithmetic; the aggregator never counts toward the threshold."""
    confirmed = len(tx.confirmations)
    required = tx.confirmations_required
    return ConfirmationStatus(
        confirmed=confirmed,
        required=required,
        remaining=max(0, required - confirmed),
        is_complete=confirmed >= required,
    )


def assemble_signatures(tx: MultisigPendingTx, owners: Sequence[str]) -> str:
    """
    Safe signature bytes for execution.

    Uses `tx.signatures` when the coordinator already provides it. Otherwise
    concatenates each confirmation's signature in owner-list order, which must
    match the order the Safe checks signatures in.
    """
    if tx.signatures and _strip_0x(tx.signatures):
        return "0x" + _strip_0x(tx.signatures).lower()

    by_owner = {c.owner.lower(): c for c in tx.confirmations}
    owner_set = {o.lower() for o in owners}
    for c in tx.confirmations:
        if c.owner.lower() not in owner_set:
            logger.warning(
                f"Ignoring confirmation of Safe tx {tx.safe_tx_hash} by non-owner {c.owner}"
            )

    parts: List[str] = []
    for owner in owners:
        confirmation = by_owner.get(owner.lower())
        if confirmation is None or not confirmation.signature:
            continue
        parts.append(_strip_0x(confirmation.signature))
    return "0x" + "".join(parts)


def to_canonical_operation(tx: MultisigPendingTx, owners: Sequence[str]) -> Dict[str, Any]:
    """The EXEC_SAFE_TX payload for a queued Safe transaction."""
    return {
        "to": Web3.to_checksum_address(tx.to),
        "value": tx.value,
        "data": tx.data or "0x",
        "operation": tx.operation,
        "safe_tx_gas": tx.safe_tx_gas,
        "base_gas": tx.base_gas,
        "gas_price": tx.gas_price,
        "gas_token": Web3.to_checksum_address(tx.gas_token),
        "refund_receiver": Web3.to_checksum_address(tx.refund_receiver),
        "signatures": assemble_signatures(tx, owners),
    }


def build_safe_typed_data(
    safe_address: str,
    chain_id: int,
    to: str,
    value: int,
    data: str,
    operation: int,
    nonce: int,
    safe_tx_gas: int = 0,
    base_gas: int = 0,
    gas_price: int = 0,
    gas_token: str = ZERO_ADDRESS,
    refund_receiver: str = ZERO_ADDRESS,
) -> Dict[str, Any]:
    """EIP-712 SafeTx structure (Safe v1.3+ domain: chainId + verifyingContract)."""
    return {
        "types": {
            "EIP712Domain": [
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "SafeTx": SAFE_TX_TYPE,
        },
        "primaryType": "SafeTx",
        "domain": {
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(safe_address),
        },
        "message": {
            "to": Web3.to_checksum_address(to),
            "value": int(value),
            "data": to_bytes(hexstr=data or "0x"),
            "operation": int(operation),
            "safeTxGas": int(safe_tx_gas),
            "baseGas": int(base_gas),
            "gasPrice": int(gas_price),
            "gasToken": Web3.to_checksum_address(gas_token),
            "refundReceiver": Web3.to_checksum_address(refund_receiver),
            "nonce": int(nonce),
        },
    }


def compute_safe_tx_hash(safe_address: str, chain_id: int, tx: MultisigPendingTx) -> str:
    typed = build_safe_typed_data(
        safe_address,
        chain_id,
        to=tx.to,
        value=tx.value,
        data=tx.data,
        operation=tx.operation,
        nonce=tx.nonce,
        safe_tx_gas=tx.safe_tx_gas,
        base_gas=tx.base_gas,
        gas_price=tx.gas_price,
        gas_token=tx.gas_token,
        refund_receiver=tx.refund_receiver,
    )
    return Web3.to_hex(hash_typed_data(typed))


def describe_safe_tx(tx: MultisigPendingTx) -> str:
    """Human-readable summary of what a Safe transaction does."""
    data = tx.data or "0x"
    if tx.is_delegate_call:
        return f"Delegate call to {tx.to}"
    if data in ("0x", ""):
        return f"Send {Web3.from_wei(tx.value, 'ether')} ETH to {tx.to}"
    if data[:10].lower() == ERC20_TRANSFER_SELECTOR:
        try:
            recipient, amount = decode(["address", "uint256"], to_bytes(hexstr=data[10:]))
        except Exception as e:
            logger.debug(f"Undecodable ERC-20 transfer in {tx.safe_tx_hash}: {e}")
        else:
            return f"Transfer {amount} of token {tx.to} to {Web3.to_checksum_address(recipient)}"
    return f"Call {data[:10]} on {tx.to}"


# ============================================================================
# Aggregator
# ============================================================================


class MultisigAggregator:
    """
    Re-expresses a Safe's queued transactions as EXEC_SAFE_TX operations on
    the guarding custodian.

    Usage:
        aggregator = MultisigAggregator(service, workflow, relay)
        for tx in await aggregator.list_pending():
            await aggregator.sign(tx, owner_signer)
            await aggregator.broadcast(tx, broadcaster_address)
    """

    def __init__(
        self,
        service: SafeTransactionServiceClient,
        workflow: TemporalWorkflow,
        relay: MetaTxRelay,
        safe_address: Optional[str] = None,
        wf_logger: Optional[WorkflowLogger] = None,
    ):
        self._service = service
        self._workflow = workflow
        self._relay = relay
        self._ledger = workflow.ledger
        self._safe_address = Web3.to_checksum_address(safe_address) if safe_address else None
        self._wf_logger = wf_logger or get_workflow_logger()
        self._timelock = TimelockProvider(workflow)
        self._meta_tx = MetaTxProvider(relay)
        self._tracking: Dict[int, AuthorizationTracking] = {}
        self._pending: List[MultisigPendingTx] = []
        self._lock = asyncio.Lock()
        self._unsubscribe = relay.store.subscribe(self._on_store_change)

    @property
    def custodian(self) -> str:
        return self._workflow.custodian

    @property
    def pending(self) -> List[MultisigPendingTx]:
        """Result of the last list_pending/poll refresh."""
        return list(self._pending)

    def close(self) -> None:
        self._unsubscribe()

    def _on_store_change(self, event: StoreChangeEvent) -> None:
        # Another task touched the signed-authorization store; re-read lazily
        if (
            event.custodian_address is None
            or event.custodian_address.lower() == self.custodian.lower()
        ):
            self._workflow.refresh_event.set()

    # =========================================================================
    # Safe reads
    # =========================================================================

    def exec_safe_tx(self) -> OperationType:
        """EXEC_SAFE_TX as the custodian advertises it."""
        return self._workflow.registry.lookup(EXEC_SAFE_TX)

    async def safe_address(self) -> str:
        if self._safe_address is None:
            safe = await self._ledger.read_view(self.custodian, VIEW_SAFE)
            if not safe or safe.lower() == ZERO_ADDRESS:
                raise PreconditionFailedError(
                    f"Custodian {self.custodian} has no Safe configured",
                    details={"custodian": self.custodian},
                )
            self._safe_address = Web3.to_checksum_address(safe)
        return self._safe_address

    async def owners(self) -> List[str]:
        """Safe owners, read fresh, in the Safe's own order."""
        safe = await self.safe_address()
        owners = await self._ledger.read_view(safe, VIEW_SAFE_OWNERS)
        return [Web3.to_checksum_address(o) for o in owners]

    async def threshold(self) -> int:
        safe = await self.safe_address()
        return int(await self._ledger.read_view(safe, VIEW_SAFE_THRESHOLD))

    async def safe_nonce(self) -> int:
        safe = await self.safe_address()
        return int(await self._ledger.read_view(safe, VIEW_SAFE_NONCE))

    async def list_pending(self) -> List[MultisigPendingTx]:
        """Queued Safe transactions at or after the Safe's current nonce."""
        async with self._wf_logger.operation_context(
            OperationKind.MULTISIG_POLL, self.custodian
        ) as ctx:
            safe = await self.safe_address()
            nonce = await self.safe_nonce()
            listed = await self._service.list_pending(safe, current_nonce=nonce)
            pending = sorted(
                (MultisigPendingTx.from_service(tx) for tx in listed),
                key=lambda tx: tx.nonce,
            )
            ctx.metadata["pending"] = len(pending)
            ctx.metadata["safe_nonce"] = nonce
        self._pending = pending
        return list(pending)

    async def canonical_operation(self, tx: MultisigPendingTx) -> Dict[str, Any]:
        return to_canonical_operation(tx, await self.owners())

    # =========================================================================
    # Tracking
    # =========================================================================

    def _entry(self, tx: MultisigPendingTx) -> AuthorizationTracking:
        entry = self._tracking.get(tx.nonce)
        if entry is None or entry.safe_tx_hash.lower() != tx.safe_tx_hash.lower():
            # A replacement transaction at the same nonce starts fresh
            entry = AuthorizationTracking(
                safe_nonce=tx.nonce,
                safe_tx_hash=tx.safe_tx_hash,
                confirmation=confirmation_status(tx),
            )
            self._tracking[tx.nonce] = entry
        else:
            entry.confirmation = confirmation_status(tx)
        return entry

    async def _find_timelock_record(self, payload: Dict[str, Any]) -> Optional[OperationRecord]:
        op = self.exec_safe_tx()
        encoded = Web3.to_hex(op.encode_payload(payload)).lower()
        type_id = op.type_id.lower()
        for record in reversed(await self._workflow.all_records()):
            if record.operation_type == type_id and record.execution_payload.lower() == encoded:
                return record
        return None

    async def tracking(self, tx: MultisigPendingTx) -> AuthorizationTracking:
        """
        Current authorization progress for a queued transaction.

        The time-lock record is re-read from the ledger; the meta-tx flags are
        reconciled with the signed-authorization store.
        """
        async with self._lock:
            entry = self._entry(tx)

        if entry.timelock_tx_id is not None:
            record = await self._workflow.get_record(entry.timelock_tx_id)
        else:
            record = await self._find_timelock_record(await self.canonical_operation(tx))
        if record is not None:
            entry.timelock_tx_id = record.tx_id
            entry.timelock_status = await self._workflow.effective_status(record)

        operation_id = entry.meta_tx_operation_id or temporary_operation_id(tx.nonce)
        stored = await self._relay.store.get(self.custodian, operation_id)
        if stored is not None:
            entry.meta_tx_operation_id = operation_id
            entry.meta_tx_signed = True
        elif entry.meta_tx_signed and not entry.meta_tx_broadcast:
            # Discarded elsewhere before broadcast
            entry.meta_tx_signed = False
        return entry

    # =========================================================================
    # Time-lock path
    # =========================================================================

    async def request(self, tx: MultisigPendingTx, caller: str) -> Authorization:
        """Request the Safe transaction through the time lock."""
        status = confirmation_status(tx)
        if not status.is_complete:
            logger.warning(
                f"Requesting Safe tx nonce={tx.nonce} with {status.confirmed}/{status.required} "
                f"confirmations; execution will fail until the threshold is met"
            )
        payload = await self.canonical_operation(tx)
        authorization = await self._timelock.request(self.exec_safe_tx(), payload, caller)
        async with self._lock:
            entry = self._entry(tx)
            entry.timelock_tx_id = authorization.tx_id
            entry.timelock_status = TxStatus.PENDING
        logger.info(
            f"Safe tx nonce={tx.nonce} ({describe_safe_tx(tx)}) requested as txId={authorization.tx_id}"
        )
        return authorization

    async def _timelock_authorization(self, tx: MultisigPendingTx) -> Authorization:
        entry = await self.tracking(tx)
        if entry.timelock_tx_id is None:
            raise PreconditionFailedError(
                f"Safe tx nonce={tx.nonce} has not been requested through the time lock",
                details={"safe_nonce": tx.nonce, "safe_tx_hash": tx.safe_tx_hash},
            )
        return Authorization(
            provider=self._timelock.name,
            operation_type=self.exec_safe_tx().type_id,
            tx_id=entry.timelock_tx_id,
        )

    async def approve(self, tx: MultisigPendingTx, caller: str) -> OperationRecord:
        authorization = await self._timelock_authorization(tx)
        record = await self._timelock.approve(authorization, caller)
        self._tracking[tx.nonce].timelock_status = record.status
        return record

    async def cancel(self, tx: MultisigPendingTx, caller: str) -> OperationRecord:
        authorization = await self._timelock_authorization(tx)
        record = await self._timelock.cancel(authorization, caller)
        self._tracking[tx.nonce].timelock_status = record.status
        return record

    # =========================================================================
    # Meta-transaction path
    # =========================================================================

    async def sign(self, tx: MultisigPendingTx, signer: SignerIdentity) -> Authorization:
        """Pre-sign a single-phase authorization stored as temp_<safe nonce>."""
        payload = await self.canonical_operation(tx)
        operation_id = temporary_operation_id(tx.nonce)
        authorization = await self._meta_tx.request(self.exec_safe_tx(), payload, signer, operation_id)
        async with self._lock:
            entry = self._entry(tx)
            entry.meta_tx_operation_id = authorization.operation_id
            entry.meta_tx_signed = True
            entry.meta_tx_broadcast = False
        return authorization

    async def broadcast(self, tx: MultisigPendingTx, broadcaster: str) -> OperationRecord:
        """Broadcast the stored single-phase authorization for a queued transaction."""
        async with self._lock:
            entry = self._entry(tx)
        authorization = Authorization(
            provider=self._meta_tx.name,
            operation_type=self.exec_safe_tx().type_id,
            operation_id=entry.meta_tx_operation_id or temporary_operation_id(tx.nonce),
        )
        record = await self._meta_tx.approve(authorization, broadcaster)
        entry.meta_tx_broadcast = True
        logger.info(f"Safe tx nonce={tx.nonce} executed via meta-transaction txId={record.tx_id}")
        return record

    async def discard(self, tx: MultisigPendingTx, caller: str) -> None:
        """Drop the unbroadcast single-phase authorization locally."""
        entry = self._tracking.get(tx.nonce)
        authorization = Authorization(
            provider=self._meta_tx.name,
            operation_type=self.exec_safe_tx().type_id,
            operation_id=(entry.meta_tx_operation_id if entry else None)
            or temporary_operation_id(tx.nonce),
        )
        await self._meta_tx.cancel(authorization, caller)
        if entry is not None:
            entry.meta_tx_signed = False

    # =========================================================================
    # Proposal and polling
    # =========================================================================

    async def propose(
        self,
        to: str,
        value: int,
        data: str,
        signer: SignerIdentity,
        operation: int = 0,
        nonce: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> str:
        """
        Propose a new Safe transaction, confirmed by `signer`.

        Returns the Safe transaction hash.
        """
        safe = await self.safe_address()
        if nonce is None:
            nonce = await self.safe_nonce()
        chain_id = await self._workflow.chain_id()
        typed = build_safe_typed_data(safe, chain_id, to, value, data, operation, nonce)
        safe_tx_hash = Web3.to_hex(hash_typed_data(typed))
        signature = signer.sign_typed_data(typed)
        proposal = SafeTransactionProposal(
            to=Web3.to_checksum_address(to),
            value=str(value),
            data=data if data and data != "0x" else None,
            operation=operation,
            nonce=nonce,
            contract_transaction_hash=safe_tx_hash,
            sender=Web3.to_checksum_address(signer.address),
            signature=signature,
            origin=origin,
        )
        await self._service.propose(safe, proposal)
        return safe_tx_hash

    async def poll(
        self,
        interval: float,
        stop_event: asyncio.Event,
        refresh_event: Optional[asyncio.Event] = None,
        on_update: Optional[Callable[[List[MultisigPendingTx]], Optional[Awaitable[None]]]] = None,
    ) -> None:
        """
        Refresh the pending list every `interval` seconds until `stop_event` is set.

        Setting `refresh_event` (by default the workflow's, which every
        mutating call sets) triggers an immediate refresh.
        """
        refresh_event = refresh_event or self._workflow.refresh_event
        while not stop_event.is_set():
            pending = await self.list_pending()
            if on_update is not None:
                result = on_update(pending)
                if asyncio.iscoroutine(result):
                    await result

            refresh_event.clear()
            waiters = [
                asyncio.ensure_future(stop_event.wait()),
                asyncio.ensure_future(refresh_event.wait()),
            ]
            try:
                await asyncio.wait(waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
        logger.debug(f"Stopped polling Safe for {self.custodian}")


__all__ = [
    "Confirmation",
    "MultisigPendingTx",
    "ConfirmationStatus",
    "AuthorizationTracking",
    "MultisigAggregator",
    "confirmation_status",
    "assemble_signatures",
    "to_canonical_operation",
    "build_safe_typed_data",
    "compute_safe_tx_hash",
    "describe_safe_tx",
    "SAFE_SIGNATURE_LENGTH",
]
