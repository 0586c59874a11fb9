"""
Operation type registry for guardian custodian contracts.

An operation type is content-addressed: its identifier is the keccak256 hash
of its canonical name. Each type declares the ledger function used for every
phase and the roles allowed to drive that phase.

Features:
- Static catalog of the operation types a guardian custodian is expected to support
- Soft-fail loading against the custodian's advertised operation types
- Declarative role table checked uniformly by the workflow
- ABI encoding of execution payloads
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from eth_abi import decode, encode
from eth_utils import to_bytes
from web3 import Web3

from .exceptions import LedgerRevertError, LedgerUnavailableError, NotFoundError, WorkflowException
from .ledger import VIEW_SUPPORTED_OPERATION_TYPES, LedgerClient
from .logging_utils import OperationKind, get_workflow_logger

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Roles recorded on a custodian contract."""
    OWNER = "owner"
    BROADCASTER = "broadcaster"
    RECOVERY = "recovery"


class Phase(str, Enum):
    """Lifecycle phases of an operation."""
    REQUEST = "request"
    APPROVE = "approve"
    CANCEL = "cancel"
    META_APPROVE = "meta_approve"
    META_CANCEL = "meta_cancel"
    REQUEST_AND_APPROVE = "request_and_approve"


class WorkflowType(str, Enum):
    MULTI_PHASE = "multi_phase"
    SINGLE_PHASE = "single_phase"


def operation_type_id(name: str) -> str:
    """keccak256 of the canonical operation name, as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(text=name))


def function_selector(signature: str) -> str:
    """First 4 bytes of keccak256 of a function signature, as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


def _coerce(abi_type: str, value: Any) -> Any:
    """Coerce JSON-friendly payload values to what eth_abi expects."""
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    if abi_type.startswith("bytes"):
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return to_bytes(hexstr=value or "0x")
    if abi_type.startswith(("uint", "int")):
        return int(value)
    if abi_type == "bool":
        return bool(value)
    return value


def _jsonable(abi_type: str, value: Any) -> Any:
    if abi_type.startswith("bytes"):
        return Web3.to_hex(value)
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    return value


# Meta-transaction call argument: (txId, operationType, action, payload, chainId,
# handlerContract, handlerSelector, nonce, deadline, maxGasPrice, signer, signature)
META_TX_TUPLE = "(uint256,bytes32,uint8,bytes,uint256,address,bytes4,uint256,uint256,uint256,address,bytes)"

SAFE_TX_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("to", "address"),
    ("value", "uint256"),
    ("data", "bytes"),
    ("operation", "uint8"),
    ("safe_tx_gas", "uint256"),
    ("base_gas", "uint256"),
    ("gas_price", "uint256"),
    ("gas_token", "address"),
    ("refund_receiver", "address"),
    ("signatures", "bytes"),
)
SAFE_TX_TUPLE = "(" + ",".join(t for _, t in SAFE_TX_FIELDS) + ")"


@dataclass(frozen=True)
class OperationType:
    """
    A content-addressed administrative operation.

    `functions` maps each supported phase to the custodian function signature
    that drives it; `roles_by_phase` lists the roles allowed for the phase,
    primary role first.
    """
    name: str
    workflow_type: WorkflowType
    functions: Dict[Phase, str] = field(default_factory=dict, hash=False)
    roles_by_phase: Dict[Phase, Tuple[Role, ...]] = field(default_factory=dict, hash=False)
    payload_fields: Tuple[Tuple[str, str], ...] = ()
    tuple_payload: bool = False
    description: str = ""

    @property
    def type_id(self) -> str:
        return operation_type_id(self.name)

    @property
    def required_selector(self) -> str:
        """Selector of the function that initiates the operation."""
        if self.workflow_type == WorkflowType.SINGLE_PHASE:
            return self.selector(Phase.REQUEST_AND_APPROVE)
        return self.selector(Phase.REQUEST)

    def supports(self, phase: Phase) -> bool:
        return phase in self.functions

    def function(self, phase: Phase) -> str:
        try:
            return self.functions[phase]
        except KeyError:
            raise NotFoundError(
                "OperationPhase",
                f"{self.name}.{phase.value}",
                message=f"{self.name} has no {phase.value} phase",
            ) from None

    def selector(self, phase: Phase) -> str:
        return function_selector(self.function(phase))

    def roles(self, phase: Phase) -> Tuple[Role, ...]:
        return self.roles_by_phase.get(phase, ())

    def _values(self, payload: Dict[str, Any]) -> List[Any]:
        missing = [name for name, _ in self.payload_fields if name not in payload]
        if missing:
            raise WorkflowException(
                f"{self.name} payload missing fields: {', '.join(missing)}",
                error_code="INVALID_PAYLOAD",
                details={"missing": missing},
            )
        return [_coerce(t, payload[name]) for name, t in self.payload_fields]

    def encode_payload(self, payload: Dict[str, Any]) -> bytes:
        """ABI-encode the execution payload in declared field order."""
        if not self.payload_fields:
            return b""
        values = self._values(payload)
        return encode([t for _, t in self.payload_fields], values)

    def decode_payload(self, data: Union[bytes, str]) -> Dict[str, Any]:
        if isinstance(data, str):
            data = to_bytes(hexstr=data)
        if not self.payload_fields:
            return {}
        types = [t for _, t in self.payload_fields]
        values = decode(types, data)
        return {
            name: _jsonable(t, v)
            for (name, t), v in zip(self.payload_fields, values)
        }

    def call_args(self, payload: Dict[str, Any]) -> List[Any]:
        """Arguments for the request function."""
        values = self._values(payload)
        if self.tuple_payload:
            return [tuple(values)]
        return values

    def with_name(self, name: str) -> "OperationType":
        return replace(self, name=name)


_OWNER = (Role.OWNER,)

OWNERSHIP_TRANSFER = OperationType(
    name="OWNERSHIP_TRANSFER",
    workflow_type=WorkflowType.MULTI_PHASE,
    functions={
        Phase.REQUEST: "transferOwnershipRequest()",
        Phase.APPROVE: "transferOwnershipDelayedApproval(uint256)",
        Phase.CANCEL: "transferOwnershipCancellation(uint256)",
        Phase.META_APPROVE: f"transferOwnershipApprovalWithMetaTx({META_TX_TUPLE})",
        Phase.META_CANCEL: f"transferOwnershipCancellationWithMetaTx({META_TX_TUPLE})",
    },
    roles_by_phase={
        Phase.REQUEST: (Role.RECOVERY,),
        Phase.APPROVE: (Role.OWNER, Role.RECOVERY),
        Phase.CANCEL: (Role.RECOVERY,),
        Phase.META_APPROVE: _OWNER,
        Phase.META_CANCEL: _OWNER,
    },
    description="Transfer ownership to the recovery address",
)

BROADCASTER_UPDATE = OperationType(
    name="BROADCASTER_UPDATE",
    workflow_type=WorkflowType.MULTI_PHASE,
    functions={
        Phase.REQUEST: "updateBroadcasterRequest(address)",
        Phase.APPROVE: "updateBroadcasterDelayedApproval(uint256)",
        Phase.CANCEL: "updateBroadcasterCancellation(uint256)",
        Phase.META_APPROVE: f"updateBroadcasterApprovalWithMetaTx({META_TX_TUPLE})",
        Phase.META_CANCEL: f"updateBroadcasterCancellationWithMetaTx({META_TX_TUPLE})",
    },
    roles_by_phase={phase: _OWNER for phase in (
        Phase.REQUEST, Phase.APPROVE, Phase.CANCEL, Phase.META_APPROVE, Phase.META_CANCEL,
    )},
    payload_fields=(("new_broadcaster", "address"),),
    description="Rotate the broadcaster identity",
)

RECOVERY_UPDATE = OperationType(
    name="RECOVERY_UPDATE",
    workflow_type=WorkflowType.SINGLE_PHASE,
    functions={
        Phase.REQUEST_AND_APPROVE: f"updateRecoveryRequestAndApprove({META_TX_TUPLE})",
    },
    roles_by_phase={Phase.REQUEST_AND_APPROVE: _OWNER},
    payload_fields=(("new_recovery", "address"),),
    description="Replace the recovery address",
)

TIMELOCK_UPDATE = OperationType(
    name="TIMELOCK_UPDATE",
    workflow_type=WorkflowType.SINGLE_PHASE,
    functions={
        Phase.REQUEST_AND_APPROVE: f"updateTimeLockRequestAndApprove({META_TX_TUPLE})",
    },
    roles_by_phase={Phase.REQUEST_AND_APPROVE: _OWNER},
    payload_fields=(("new_time_lock_minutes", "uint256"),),
    description="Change the time-lock period",
)

EXEC_SAFE_TX = OperationType(
    name="EXEC_SAFE_TX",
    workflow_type=WorkflowType.MULTI_PHASE,
    functions={
        Phase.REQUEST: f"requestTransaction({SAFE_TX_TUPLE})",
        Phase.APPROVE: "approveTransactionAfterDelay(uint256)",
        Phase.CANCEL: "cancelTransaction(uint256)",
        Phase.META_APPROVE: f"approveTransactionWithMetaTx({META_TX_TUPLE})",
        Phase.META_CANCEL: f"cancelTransactionWithMetaTx({META_TX_TUPLE})",
        Phase.REQUEST_AND_APPROVE: f"requestAndApproveTransactionWithMetaTx({META_TX_TUPLE})",
    },
    roles_by_phase={phase: _OWNER for phase in Phase},
    payload_fields=SAFE_TX_FIELDS,
    tuple_payload=True,
    description="Execute a transaction through the guarded Safe",
)

EXPECTED_OPERATION_TYPES: Tuple[OperationType, ...] = (
    OWNERSHIP_TRANSFER,
    BROADCASTER_UPDATE,
    RECOVERY_UPDATE,
    TIMELOCK_UPDATE,
    EXEC_SAFE_TX,
)


def _normalize(name: str) -> str:
    return name.strip().upper().replace(" ", "_")


def _names_match(expected: str, fetched: str) -> bool:
    """Substring/token match between an expected canonical name and a fetched one."""
    fetched_norm = _normalize(fetched)
    if expected in fetched_norm or fetched_norm in expected:
        return True
    expected_tokens = set(expected.split("_"))
    fetched_tokens = set(fetched_norm.split("_"))
    return len(expected_tokens) > 1 and expected_tokens <= fetched_tokens


class OperationTypeRegistry:
    """
    Operation types supported by one custodian contract.

    Loaded once with `load()`; immutable afterwards until `refresh()`.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        custodian: str,
        catalog: Iterable[OperationType] = EXPECTED_OPERATION_TYPES,
    ):
        self._ledger = ledger
        self._custodian = Web3.to_checksum_address(custodian)
        self._catalog = tuple(catalog)
        self._by_id: Dict[str, OperationType] = {}
        self._by_name: Dict[str, OperationType] = {}
        self._missing: List[str] = []
        self._loaded = False
        self._lock = asyncio.Lock()
        self._wf_logger = get_workflow_logger()

    @property
    def custodian(self) -> str:
        return self._custodian

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def missing(self) -> List[str]:
        """Expected operation names the custodian does not advertise."""
        return list(self._missing)

    async def _fetch_supported(self) -> Sequence[Tuple[str, str]]:
        try:
            return await self._ledger.read_view(
                self._custodian, VIEW_SUPPORTED_OPERATION_TYPES
            )
        except LedgerUnavailableError:
            raise
        except LedgerRevertError as e:
            logger.warning(
                f"Custodian {self._custodian} does not list its operation types: {e.reason}"
            )
            return []
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            raise LedgerUnavailableError(
                f"Cannot load operation types for {self._custodian}: {e}",
                details={"custodian": self._custodian},
            ) from e

    async def load(self) -> Dict[str, OperationType]:
        """
        Fetch the custodian's supported operation types and match them
        against the expected catalog.

        Exact identifier matches win. Expected names left unmatched fall back
        to a best-effort name match against the fetched names; anything still
        unmatched is logged and skipped. A custodian that reverts the read
        loads empty, with every expected type reported missing.

        Raises:
            LedgerUnavailableError: if the ledger cannot be reached
        """
        async with self._lock:
            async with self._wf_logger.operation_context(
                OperationKind.REGISTRY_LOAD, self._custodian
            ) as ctx:
                supported = await self._fetch_supported()
                by_id: Dict[str, OperationType] = {}
                by_name: Dict[str, OperationType] = {}
                fetched = {str(type_id).lower(): name for type_id, name in supported}
                catalog_by_id = {op.type_id.lower(): op for op in self._catalog}

                for type_id in fetched:
                    op = catalog_by_id.get(type_id)
                    if op is not None:
                        by_id[type_id] = op
                        by_name[op.name] = op

                missing = [op for op in self._catalog if op.name not in by_name]
                if missing:
                    logger.warning(
                        f"Custodian {self._custodian} does not advertise: "
                        f"{', '.join(op.name for op in missing)}"
                    )

                still_missing: List[str] = []
                for op in missing:
                    match = None
                    for type_id, fetched_name in fetched.items():
                        if type_id in by_id:
                            continue
                        if not _names_match(op.name, fetched_name):
                            continue
                        if operation_type_id(fetched_name).lower() != type_id:
                            logger.warning(
                                f"Ignoring {fetched_name!r}: identifier {type_id} "
                                f"is not the hash of its name"
                            )
                            continue
                        match = (type_id, op.with_name(fetched_name))
                        break
                    if match is None:
                        still_missing.append(op.name)
                        continue
                    type_id, aliased = match
                    logger.info(f"Using {aliased.name!r} ({type_id}) for {op.name}")
                    by_id[type_id] = aliased
                    by_name[op.name] = aliased
                    by_name[aliased.name] = aliased

                self._by_id = by_id
                self._by_name = by_name
                self._missing = still_missing
                self._loaded = True
                ctx.metadata["loaded"] = len(by_id)
                ctx.metadata["missing"] = still_missing

        logger.info(f"Loaded {len(self._by_id)} operation types for {self._custodian}")
        return dict(self._by_id)

    async def refresh(self) -> Dict[str, OperationType]:
        """Re-fetch the supported operation types."""
        return await self.load()

    def all(self) -> List[OperationType]:
        return list(self._by_id.values())

    def resolve(self, type_id: str) -> OperationType:
        """Look up an operation type by identifier."""
        op = self._by_id.get(str(type_id).lower())
        if op is None:
            raise NotFoundError("OperationType", type_id)
        return op

    def resolve_name(self, name: str) -> OperationType:
        """Look up an operation type by canonical or advertised name."""
        op = self._by_name.get(name) or self._by_name.get(_normalize(name))
        if op is None:
            raise NotFoundError("OperationType", name)
        return op

    def lookup(self, op: Union[OperationType, str]) -> OperationType:
        """Resolve an OperationType, identifier or name."""
        if isinstance(op, OperationType):
            # A catalog constant may be served under the custodian's advertised name
            return self._by_id.get(op.type_id.lower()) or self.resolve_name(op.name)
        if op.startswith("0x") and len(op) == 66:
            return self.resolve(op)
        return self.resolve_name(op)

    def allowed_roles(self, type_id: str, phase: Phase) -> Tuple[Role, ...]:
        return self.resolve(type_id).roles(phase)

    def required_role(self, type_id: str, phase: Phase) -> Role:
        """Primary role required for a phase."""
        roles = self.allowed_roles(type_id, phase)
        if not roles:
            raise NotFoundError(
                "OperationPhase",
                f"{type_id}.{phase.value}",
                message=f"Operation {type_id} has no {phase.value} phase",
            )
        return roles[0]


__all__ = [
    "Role",
    "Phase",
    "WorkflowType",
    "OperationType",
    "OperationTypeRegistry",
    "operation_type_id",
    "function_selector",
    "META_TX_TUPLE",
    "SAFE_TX_FIELDS",
    "OWNERSHIP_TRANSFER",
    "BROADCASTER_UPDATE",
    "RECOVERY_UPDATE",
    "TIMELOCK_UPDATE",
    "EXEC_SAFE_TX",
    "EXPECTED_OPERATION_TYPES",
]
