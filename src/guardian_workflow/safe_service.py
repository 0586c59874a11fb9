"""
Client for the Safe Transaction Service (the k-of-n multisig coordinator).

Example usage:
    ```python
    async with SafeTransactionServiceClient(chain_id=11155111) as service:
        pending = await service.list_pending(safe_address, current_nonce=7)
    ```

Non-2xx responses raise CoordinationServiceError with the response body kept
verbatim. The client never retries; callers decide whether to.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from web3 import Web3

from .config import WorkflowSettings, get_settings, safe_service_url
from .exceptions import CoordinationServiceError

logger = logging.getLogger(__name__)

PENDING_PAGE_LIMIT = 100
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class _ServiceModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SafeConfirmation(_ServiceModel):
    owner: str
    signature: Optional[str] = None
    submission_date: Optional[str] = None
    signature_type: Optional[str] = None


class SafeServiceTransaction(_ServiceModel):
    """A multisig transaction as returned by the service."""
    safe: Optional[str] = None
    to: str
    value: int = 0
    data: Optional[str] = None
    operation: int = 0
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: Optional[str] = ZERO_ADDRESS
    refund_receiver: Optional[str] = ZERO_ADDRESS
    nonce: int
    safe_tx_hash: str
    submission_date: Optional[str] = None
    execution_date: Optional[str] = None
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None
    is_executed: bool = False
    is_successful: Optional[bool] = None
    confirmations_required: int = 1
    confirmations: List[SafeConfirmation] = Field(default_factory=list)
    signatures: Optional[str] = None
    origin: Optional[str] = None

    @property
    def is_processed(self) -> bool:
        """Executed on-chain, even when the service has not caught up."""
        return bool(
            self.execution_date
            or self.transaction_hash
            or self.is_executed
            or (self.block_number is not None and self.block_number > 0)
        )


class SafeServiceTransactionPage(_ServiceModel):
    count: int = 0
    next: Optional[str] = None
    previous: Optional[str] = None
    results: List[SafeServiceTransaction] = Field(default_factory=list)


class SafeTransactionProposal(_ServiceModel):
    """Body of a proposal to the service."""
    to: str
    value: str = "0"
    data: Optional[str] = None
    operation: int = 0
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: str = "0"
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS
    nonce: int
    contract_transaction_hash: str
    sender: str
    signature: str
    origin: Optional[str] = None

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SafeTransactionServiceClient:
    """
    Safe Transaction Service API client.

    Args:
        base_url: Service base URL; derived from chain_id when omitted
        chain_id: Chain used to pick the default service URL
        http_client: Optional pre-configured httpx.AsyncClient
        timeout: Request timeout in seconds (default: 30)
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: Optional[str] = None,
        chain_id: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if base_url is None:
            if chain_id is None:
                raise ValueError("base_url or chain_id is required")
            base_url = safe_service_url(chain_id)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[WorkflowSettings] = None,
        chain_id: Optional[int] = None,
    ) -> "SafeTransactionServiceClient":
        """Build a client from GUARDIAN_SAFE_SERVICE_URL, falling back to the chain's default."""
        settings = settings or get_settings()
        return cls(
            base_url=settings.safe_service_url,
            chain_id=chain_id,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "SafeTransactionServiceClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        client = await self._get_client()
        url = f"{self._base_url}{path}"
        try:
            response = await client.request(method, url, params=params, json=json)
        except httpx.HTTPError as e:
            raise CoordinationServiceError(
                f"Safe Transaction Service unreachable: {e}",
                details={"url": url},
            ) from e

        if response.status_code >= 400:
            body = response.text
            logger.warning(f"Safe Transaction Service {method} {path} -> {response.status_code}")
            raise CoordinationServiceError(
                f"Safe Transaction Service returned {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )

        if not response.content:
            return None
        return response.json()

    async def list_pending(
        self,
        safe_address: str,
        current_nonce: Optional[int] = None,
    ) -> List[SafeServiceTransaction]:
        """
        Queued, unexecuted transactions for a Safe.

        Entries that were executed or failed on-chain, or that sit behind
        `current_nonce`, are dropped even when the service still lists them.
        """
        safe = Web3.to_checksum_address(safe_address)
        data = await self._request(
            "GET",
            f"/api/v1/safes/{safe}/multisig-transactions/",
            params={"executed": "false", "limit": PENDING_PAGE_LIMIT, "trusted": "true"},
        )
        page = SafeServiceTransactionPage.model_validate(data or {})

        pending: List[SafeServiceTransaction] = []
        for tx in page.results:
            if tx.is_processed:
                logger.debug(f"Skipping executed Safe tx nonce={tx.nonce} {tx.safe_tx_hash}")
                continue
            if tx.is_successful is False:
                logger.debug(f"Skipping failed Safe tx nonce={tx.nonce} {tx.safe_tx_hash}")
                continue
            if current_nonce is not None and tx.nonce < current_nonce:
                logger.debug(f"Skipping stale Safe tx nonce={tx.nonce} < {current_nonce}")
                continue
            pending.append(tx)

        logger.info(
            f"Safe {safe}: {len(pending)} pending of {len(page.results)} listed"
        )
        return pending

    async def get_transaction(self, safe_tx_hash: str) -> SafeServiceTransaction:
        data = await self._request("GET", f"/api/v1/multisig-transactions/{safe_tx_hash}/")
        return SafeServiceTransaction.model_validate(data)

    async def propose(self, safe_address: str, proposal: SafeTransactionProposal) -> None:
        """Propose a new multisig transaction."""
        safe = Web3.to_checksum_address(safe_address)
        await self._request(
            "POST",
            f"/api/v1/safes/{safe}/multisig-transactions/",
            json=proposal.to_body(),
        )
        logger.info(f"Proposed Safe tx nonce={proposal.nonce} {proposal.contract_transaction_hash}")


__all__ = [
    "SafeConfirmation",
    "SafeServiceTransaction",
    "SafeServiceTransactionPage",
    "SafeTransactionProposal",
    "SafeTransactionServiceClient",
]
