"""
Ledger read/write port.

The workflow, relay and multisig aggregator talk to the ledger only through
`LedgerClient`. Any backend that implements the protocol (a node-backed
client, or the in-process simulated custodian) can be plugged in.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence, runtime_checkable

from .exceptions import LedgerRevertError
from .logging_utils import WorkflowLogger

logger = logging.getLogger(__name__)

# Custodian views
VIEW_OWNER = "owner()"
VIEW_BROADCASTER = "getBroadcaster()"
VIEW_RECOVERY = "getRecoveryAddress()"
VIEW_TIME_LOCK = "getTimeLockPeriodInMinutes()"
VIEW_SUPPORTED_OPERATION_TYPES = "getSupportedOperationTypes()"
VIEW_TRANSACTION = "getTransaction(uint256)"
VIEW_TRANSACTION_HISTORY = "getTransactionHistory(uint256,uint256)"
VIEW_SIGNER_NONCE = "getSignerNonce(address)"
VIEW_DELEGATED_CALL_ENABLED = "delegatedCallEnabled()"
VIEW_CHAIN_ID = "getChainId()"
VIEW_SAFE = "safe()"

# Safe views
VIEW_SAFE_OWNERS = "getOwners()"
VIEW_SAFE_THRESHOLD = "getThreshold()"
VIEW_SAFE_NONCE = "nonce()"


@dataclass
class Receipt:
    """Confirmation receipt for a submitted transaction."""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int = 0
    tx_id: Optional[int] = None
    revert_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "tx_id": self.tx_id,
            "revert_reason": self.revert_reason,
        }


@runtime_checkable
class LedgerClient(Protocol):
    """Read/write access to custodian and Safe contracts."""

    async def read_view(
        self, contract: str, signature: str, args: Sequence[Any] = ()
    ) -> Any:
        ...

    async def submit(
        self, contract: str, signature: str, args: Sequence[Any], sender: str
    ) -> str:
        """Submit a state-changing call and return its transaction hash."""
        ...

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt:
        ...

    async def gas_price(self) -> int:
        ...

    async def block_timestamp(self) -> int:
        ...


async def submit_and_wait(
    ledger: LedgerClient,
    contract: str,
    signature: str,
    args: Sequence[Any],
    sender: str,
    wf_logger: WorkflowLogger,
) -> Receipt:
    """
    Submit a call, wait for it to be mined and raise on revert.

    Raises:
        LedgerRevertError: if the submission or the mined transaction reverts
    """
    try:
        tx_hash = await ledger.submit(contract, signature, args, sender)
    except LedgerRevertError as e:
        wf_logger.log_failed(signature, e.reason)
        raise

    wf_logger.log_submitted(tx_hash, contract, signature, sender)
    receipt = await ledger.wait_for_confirmation(tx_hash)

    if not receipt.success:
        reason = receipt.revert_reason or "execution reverted"
        wf_logger.log_failed(signature, reason, tx_hash=tx_hash)
        raise LedgerRevertError(reason, tx_hash=tx_hash)

    wf_logger.log_confirmed(tx_hash, receipt.block_number, receipt.gas_used, receipt.tx_id)
    return receipt
