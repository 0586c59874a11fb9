"""
Authorization providers.

Two independent mechanisms can authorize the same canonical operation:

- TimelockProvider: request on-ledger, wait out the time lock, approve or cancel
- MetaTxProvider: pre-sign a single-phase authorization, then broadcast it

Both expose request/approve/cancel, so callers (and the multisig aggregator)
do not need to know which mechanism produced the authorization.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union

from .meta_tx import SignerIdentity
from .registry import OperationType
from .relay import MetaTxRelay
from .workflow import OperationRecord, TemporalWorkflow

logger = logging.getLogger(__name__)

Caller = Union[str, SignerIdentity]


def _address(caller: Caller) -> str:
    return caller if isinstance(caller, str) else caller.address


@dataclass
class Authorization:
    """Handle to an in-flight authorization from either provider."""
    provider: str
    operation_type: str
    tx_id: Optional[int] = None
    operation_id: Optional[str] = None
    record: Optional[OperationRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "operation_type": self.operation_type,
            "tx_id": self.tx_id,
            "operation_id": self.operation_id,
            "record": self.record.to_dict() if self.record else None,
        }


class AuthorizationProvider(Protocol):
    name: str

    async def request(
        self,
        op_type: Union[OperationType, str],
        payload: Dict[str, Any],
        caller: Caller,
        operation_id: Optional[str] = None,
    ) -> Authorization:
        ...

    async def approve(self, authorization: Authorization, caller: Caller) -> OperationRecord:
        ...

    async def cancel(
        self, authorization: Authorization, caller: Caller
    ) -> Optional[OperationRecord]:
        ...


class TimelockProvider:
    """Request -> wait for release -> approve/cancel, directly against the ledger."""

    name = "timelock"

    def __init__(self, workflow: TemporalWorkflow):
        self._workflow = workflow

    async def request(
        self,
        op_type: Union[OperationType, str],
        payload: Dict[str, Any],
        caller: Caller,
        operation_id: Optional[str] = None,
    ) -> Authorization:
        record = await self._workflow.request(op_type, payload, _address(caller))
        return Authorization(
            provider=self.name,
            operation_type=record.operation_type,
            tx_id=record.tx_id,
            record=record,
        )

    async def wait(
        self, authorization: Authorization, poll_interval: Optional[float] = None
    ) -> OperationRecord:
        record = await self._workflow.wait_until_release(authorization.tx_id, poll_interval)
        authorization.record = record
        return record

    async def approve(self, authorization: Authorization, caller: Caller) -> OperationRecord:
        record = await self._workflow.approve(authorization.tx_id, _address(caller))
        authorization.record = record
        return record

    async def cancel(self, authorization: Authorization, caller: Caller) -> OperationRecord:
        record = await self._workflow.cancel(authorization.tx_id, _address(caller))
        authorization.record = record
        return record


class MetaTxProvider:
    """
    Single-phase authorization signed by the role holder and broadcast later.

    `request` takes the signer identity, `approve` the broadcaster address.
    `cancel` only discards the unbroadcast authorization locally.
    """

    name = "meta_tx"

    def __init__(self, relay: MetaTxRelay):
        self._relay = relay

    async def request(
        self,
        op_type: Union[OperationType, str],
        payload: Dict[str, Any],
        caller: Caller,
        operation_id: Optional[str] = None,
    ) -> Authorization:
        if isinstance(caller, str):
            raise TypeError("MetaTxProvider.request needs a SignerIdentity, not an address")
        entry = await self._relay.sign_new(op_type, payload, caller, operation_id)
        return Authorization(
            provider=self.name,
            operation_type=entry.metadata["operationType"],
            operation_id=entry.operation_id,
        )

    async def approve(self, authorization: Authorization, caller: Caller) -> OperationRecord:
        result = await self._relay.broadcast(authorization.operation_id, _address(caller))
        authorization.tx_id = result.record.tx_id
        authorization.record = result.record
        return result.record

    async def cancel(self, authorization: Authorization, caller: Caller) -> None:
        removed = await self._relay.discard(authorization.operation_id)
        logger.info(
            f"Discarded unbroadcast authorization {authorization.operation_id} "
            f"(removed={removed}) by {_address(caller)}"
        )
        return None


__all__ = [
    "Authorization",
    "AuthorizationProvider",
    "TimelockProvider",
    "MetaTxProvider",
]
