"""
Tests for guardian_workflow.config.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from guardian_workflow.config import (
    DEFAULT_STORAGE_KEY,
    MIN_MAX_GAS_PRICE_WEI,
    LoggingConfig,
    WorkflowSettings,
    chain_name,
    get_settings,
    reset_settings,
    safe_service_url,
)
from guardian_workflow.safe_service import SafeTransactionServiceClient
from guardian_workflow.workflow import TemporalWorkflow


class TestWorkflowSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GUARDIAN_STORAGE_KEY", raising=False)
        settings = WorkflowSettings(_env_file=None)
        assert settings.storage_key == DEFAULT_STORAGE_KEY
        assert settings.meta_tx_deadline_seconds == 3600
        assert settings.meta_tx_max_gas_price_wei == MIN_MAX_GAS_PRICE_WEI
        assert settings.min_cancel_hold_seconds == 3600

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("GUARDIAN_STORAGE_KEY", "custom_ns")
        monkeypatch.setenv("GUARDIAN_META_TX_DEADLINE_SECONDS", "600")
        settings = WorkflowSettings(_env_file=None)
        assert settings.storage_key == "custom_ns"
        assert settings.meta_tx_settings().deadline_seconds == 600

    def test_gas_price_floor(self):
        settings = WorkflowSettings(_env_file=None, meta_tx_max_gas_price_wei=1)
        assert settings.meta_tx_max_gas_price_wei == MIN_MAX_GAS_PRICE_WEI

    def test_positive_values_required(self):
        with pytest.raises(ValidationError):
            WorkflowSettings(_env_file=None, meta_tx_deadline_seconds=0)
        with pytest.raises(ValidationError):
            WorkflowSettings(_env_file=None, max_storage_bytes=-1)

    def test_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("GUARDIAN_LOG_LEVEL", "DEBUG")
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first

    def test_logging_config(self):
        settings = WorkflowSettings(_env_file=None, audit_log_path="/tmp/audit.log")
        assert LoggingConfig.from_settings(settings).audit_log_path == "/tmp/audit.log"


class TestChains:

    def test_safe_service_url(self):
        assert safe_service_url(8453) == "https://safe-transaction-base.safe.global"
        assert safe_service_url(424242) == "https://safe-transaction-mainnet.safe.global"

    def test_chain_name(self):
        assert chain_name(11155111) == "sepolia"
        assert chain_name(31337) == "chain_31337"


class TestSettingsConsumers:

    def test_safe_service_url_override(self):
        settings = WorkflowSettings(
            _env_file=None, safe_service_url="https://safe.internal/", http_timeout_seconds=5
        )
        client = SafeTransactionServiceClient.from_settings(settings)
        assert client.base_url == "https://safe.internal"

    def test_safe_service_url_from_chain(self):
        settings = WorkflowSettings(_env_file=None)
        client = SafeTransactionServiceClient.from_settings(settings, chain_id=137)
        assert client.base_url == "https://safe-transaction-polygon.safe.global"

    @pytest.mark.asyncio
    async def test_cancel_hold_from_environment(self, monkeypatch, ledger, registry, custodian, owner):
        """GUARDIAN_MIN_CANCEL_HOLD_SECONDS shortens the client-side hold."""
        monkeypatch.setenv("GUARDIAN_MIN_CANCEL_HOLD_SECONDS", "0")
        reset_settings()
        ledger.min_cancel_hold_seconds = 0
        workflow = TemporalWorkflow(ledger, registry, custodian)

        record = await workflow.request(
            "BROADCASTER_UPDATE", {"new_broadcaster": "0x000000000000000000000000000000000000dEaD"}, owner.address
        )
        cancelled = await workflow.cancel(record.tx_id, owner.address)
        assert cancelled.status.value == "CANCELLED"
