"""
Configuration for guardian workflows.

Features:
- Environment-driven settings (prefix GUARDIAN_) via pydantic-settings
- Meta-transaction defaults (relative deadline, max gas price floor)
- Logging and audit trail configuration
- Safe Transaction Service endpoints per chain
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

GWEI = 10**9

# Signed meta-transactions never carry a max gas price below this floor
MIN_MAX_GAS_PRICE_WEI = 50 * GWEI
DEFAULT_DEADLINE_SECONDS = 3600
DEFAULT_STORAGE_KEY = "dapp_signed_transactions"
DEFAULT_MAX_STORAGE_BYTES = 5 * 1024 * 1024
DEFAULT_MIN_CANCEL_HOLD_SECONDS = 3600


class WorkflowSettings(BaseSettings):
    """Guardian workflow settings."""

    # Durable store
    storage_key: str = DEFAULT_STORAGE_KEY
    storage_dir: str = "./data"
    max_storage_bytes: int = DEFAULT_MAX_STORAGE_BYTES

    # Meta-transactions
    meta_tx_deadline_seconds: int = DEFAULT_DEADLINE_SECONDS
    meta_tx_max_gas_price_wei: int = MIN_MAX_GAS_PRICE_WEI

    # Temporal workflow
    min_cancel_hold_seconds: int = DEFAULT_MIN_CANCEL_HOLD_SECONDS
    poll_interval_seconds: float = 15.0

    # Multisig coordination service
    http_timeout_seconds: float = 30.0
    safe_service_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    audit_log_path: Optional[str] = None

    class Config:
        env_prefix = "GUARDIAN_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("meta_tx_max_gas_price_wei")
    @classmethod
    def enforce_gas_price_floor(cls, v: int) -> int:
        """Raise configured max gas prices below 50 gwei to the floor."""
        if v < MIN_MAX_GAS_PRICE_WEI:
            logger.warning(
                f"meta_tx_max_gas_price_wei={v} is below the 50 gwei floor; using floor"
            )
            return MIN_MAX_GAS_PRICE_WEI
        return v

    @field_validator("meta_tx_deadline_seconds", "max_storage_bytes")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_dir)

    def meta_tx_settings(self) -> "MetaTxSettings":
        return MetaTxSettings(
            deadline_seconds=self.meta_tx_deadline_seconds,
            max_gas_price_wei=self.meta_tx_max_gas_price_wei,
        )


@lru_cache
def get_settings() -> WorkflowSettings:
    """Load WorkflowSettings once per process."""
    return WorkflowSettings()


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    get_settings.cache_clear()


@dataclass
class MetaTxSettings:
    """Meta-transaction defaults with a relative deadline."""
    deadline_seconds: int = DEFAULT_DEADLINE_SECONDS
    max_gas_price_wei: int = MIN_MAX_GAS_PRICE_WEI

    def __post_init__(self) -> None:
        if self.max_gas_price_wei < MIN_MAX_GAS_PRICE_WEI:
            self.max_gas_price_wei = MIN_MAX_GAS_PRICE_WEI

    def to_params(self, now: int) -> Dict[str, int]:
        """Convert the relative deadline into an absolute timestamp."""
        return {
            "deadline": int(now) + self.deadline_seconds,
            "max_gas_price": self.max_gas_price_wei,
        }


@dataclass
class LoggingConfig:
    """Configuration for workflow operation logging."""
    # Log levels for different operations
    operation_level: str = "INFO"
    transaction_level: str = "INFO"
    store_level: str = "DEBUG"
    error_level: str = "ERROR"

    # Sensitive data handling
    mask_addresses: bool = False  # Partial masking for privacy

    # Audit logging
    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger

    @classmethod
    def from_settings(cls, settings: WorkflowSettings) -> "LoggingConfig":
        return cls(audit_log_path=settings.audit_log_path)


# Safe Transaction Service endpoints
SAFE_SERVICE_URLS: Dict[int, str] = {
    1: "https://safe-transaction-mainnet.safe.global",
    10: "https://safe-transaction-optimism.safe.global",
    56: "https://safe-transaction-bsc.safe.global",
    100: "https://safe-transaction-gnosis.safe.global",
    137: "https://safe-transaction-polygon.safe.global",
    8453: "https://safe-transaction-base.safe.global",
    42161: "https://safe-transaction-arbitrum.safe.global",
    43114: "https://safe-transaction-avalanche.safe.global",
    # Testnets
    5: "https://safe-transaction-goerli.safe.global",
    84532: "https://safe-transaction-base-sepolia.safe.global",
    11155111: "https://safe-transaction-sepolia.safe.global",
}


def safe_service_url(chain_id: int) -> str:
    """Get the Safe Transaction Service URL for a chain, defaulting to mainnet."""
    url = SAFE_SERVICE_URLS.get(chain_id)
    if url is None:
        logger.warning(f"No Safe Transaction Service for chain {chain_id}; using mainnet")
        return SAFE_SERVICE_URLS[1]
    return url


CHAIN_ID_MAP: Dict[str, int] = {
    "ethereum": 1,
    "optimism": 10,
    "bsc": 56,
    "gnosis": 100,
    "polygon": 137,
    "base": 8453,
    "arbitrum": 42161,
    "avalanche": 43114,
    "goerli": 5,
    "base_sepolia": 84532,
    "sepolia": 11155111,
}


def chain_name(chain_id: int) -> str:
    """Reverse lookup of CHAIN_ID_MAP for display."""
    for name, cid in CHAIN_ID_MAP.items():
        if cid == chain_id:
            return name
    return f"chain_{chain_id}"
