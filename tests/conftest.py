"""
Pytest configuration for guardian_workflow tests.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

from guardian_workflow import logging_utils
from guardian_workflow.config import reset_settings
from guardian_workflow.meta_tx import LocalAccountSigner
from guardian_workflow.registry import OperationTypeRegistry
from guardian_workflow.relay import MetaTxRelay
from guardian_workflow.simulated import SimulatedLedger
from guardian_workflow.store import MemoryStorageBackend, SignedTransactionStore
from guardian_workflow.workflow import TemporalWorkflow

START_TIME = 1_700_000_000
TIME_LOCK_MINUTES = 1440

OWNER_KEY = "0x" + "11" * 32
BROADCASTER_KEY = "0x" + "22" * 32
RECOVERY_KEY = "0x" + "33" * 32
OUTSIDER_KEY = "0x" + "44" * 32
SAFE_OWNER_B_KEY = "0x" + "55" * 32
SAFE_OWNER_C_KEY = "0x" + "66" * 32


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop cached settings and the shared workflow logger between tests."""
    reset_settings()
    logging_utils._workflow_logger = None
    yield
    reset_settings()
    logging_utils._workflow_logger = None


@pytest.fixture
def owner():
    return LocalAccountSigner(OWNER_KEY)


@pytest.fixture
def broadcaster():
    return LocalAccountSigner(BROADCASTER_KEY)


@pytest.fixture
def recovery():
    return LocalAccountSigner(RECOVERY_KEY)


@pytest.fixture
def outsider():
    return LocalAccountSigner(OUTSIDER_KEY)


@pytest.fixture
def safe_owners(owner):
    """Safe owners in the Safe's own order."""
    return [
        owner,
        LocalAccountSigner(SAFE_OWNER_B_KEY),
        LocalAccountSigner(SAFE_OWNER_C_KEY),
    ]


@pytest.fixture
def ledger():
    return SimulatedLedger(start_time=START_TIME)


@pytest.fixture
def safe_address(ledger, safe_owners):
    return ledger.deploy_safe([s.address for s in safe_owners], threshold=2)


@pytest.fixture
def custodian(ledger, owner, broadcaster, recovery, safe_address):
    return ledger.deploy_custodian(
        owner=owner.address,
        broadcaster=broadcaster.address,
        recovery=recovery.address,
        time_lock_minutes=TIME_LOCK_MINUTES,
        safe=safe_address,
    )


@pytest_asyncio.fixture
async def registry(ledger, custodian):
    registry = OperationTypeRegistry(ledger, custodian)
    await registry.load()
    return registry


@pytest.fixture
def workflow(ledger, registry, custodian):
    return TemporalWorkflow(ledger, registry, custodian)


@pytest.fixture
def store(ledger):
    return SignedTransactionStore(MemoryStorageBackend(), clock=ledger.clock)


@pytest.fixture
def relay(ledger, registry, workflow, store):
    return MetaTxRelay(ledger, registry, workflow, store, clock=ledger.clock)
