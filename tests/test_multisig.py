"""
Tests for guardian_workflow.multisig.

Tests cover:
- Confirmation threshold arithmetic
- Signature assembly in owner-list order
- Transaction descriptions
- End-to-end execution through the time lock and through a meta-transaction
- Authorization tracking keyed by Safe nonce
- Proposal signing and the polling loop
"""
from __future__ import annotations

import asyncio
import json
import logging
import re

import pytest
import pytest_asyncio
from eth_abi import encode
from web3 import Web3

from guardian_workflow.exceptions import PreconditionFailedError
from guardian_workflow.multisig import (
    ERC20_TRANSFER_SELECTOR,
    Confirmation,
    MultisigAggregator,
    MultisigPendingTx,
    assemble_signatures,
    compute_safe_tx_hash,
    confirmation_status,
    describe_safe_tx,
    to_canonical_operation,
)
from guardian_workflow.registry import EXEC_SAFE_TX, OperationTypeRegistry
from guardian_workflow.relay import MetaTxRelay
from guardian_workflow.safe_service import SafeTransactionServiceClient
from guardian_workflow.store import MemoryStorageBackend, SignedTransactionStore
from guardian_workflow.workflow import TemporalWorkflow, TxStatus

from conftest import TIME_LOCK_MINUTES

SERVICE_URL = "https://safe.example"
LIST_URL = re.compile(r"https://safe\.example/api/v1/safes/0x[0-9a-fA-F]{40}/multisig-transactions/.*")
TARGET = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
ZERO = "0x0000000000000000000000000000000000000000"


def sig(byte: str) -> str:
    return "0x" + byte * 65


def pending_tx(confirmations, nonce=0, safe_tx_hash=None, value=10**18, data="0x", operation=0, required=2):
    return MultisigPendingTx(
        safe_tx_hash=safe_tx_hash or "0x" + "ab" * 32,
        to=TARGET,
        value=value,
        data=data,
        operation=operation,
        nonce=nonce,
        confirmations=confirmations,
        confirmations_required=required,
    )


def service_json(nonce, confirmations, safe_tx_hash=None):
    return {
        "to": TARGET,
        "value": str(10**18),
        "data": None,
        "operation": 0,
        "nonce": nonce,
        "safeTxHash": safe_tx_hash or "0x" + f"{nonce + 1:02x}" * 32,
        "isExecuted": False,
        "confirmationsRequired": 2,
        "confirmations": [
            {"owner": owner, "signature": signature, "signatureType": "EOA"}
            for owner, signature in confirmations
        ],
    }


@pytest_asyncio.fixture
async def service():
    client = SafeTransactionServiceClient(base_url=SERVICE_URL)
    yield client
    await client.close()


@pytest.fixture
def aggregator(service, workflow, relay):
    aggregator = MultisigAggregator(service, workflow, relay)
    yield aggregator
    aggregator.close()


class TestConfirmationStatus:

    def test_incomplete(self, safe_owners):
        tx = pending_tx([Confirmation(safe_owners[0].address, sig("aa"))], required=2)
        status = confirmation_status(tx)
        assert (status.confirmed, status.required, status.remaining) == (1, 2, 1)
        assert not status.is_complete

    def test_complete(self, safe_owners):
        tx = pending_tx(
            [Confirmation(s.address, sig("aa")) for s in safe_owners],
            required=2,
        )
        status = confirmation_status(tx)
        assert status.remaining == 0
        assert status.is_complete


class TestSignatureAssembly:

    def test_owner_list_order(self, safe_owners):
        a, b, c = (s.address for s in safe_owners)
        tx = pending_tx([Confirmation(c, sig("cc")), Confirmation(a, sig("aa"))])
        assert assemble_signatures(tx, [a, b, c]) == "0x" + "aa" * 65 + "cc" * 65

    def test_non_owner_confirmation_ignored(self, safe_owners, outsider, caplog):
        a, b, c = (s.address for s in safe_owners)
        tx = pending_tx([Confirmation(outsider.address, sig("ee")), Confirmation(b, sig("bb"))])
        with caplog.at_level(logging.WARNING):
            assert assemble_signatures(tx, [a, b, c]) == "0x" + "bb" * 65
        assert "non-owner" in caplog.text

    def test_owner_matching_ignores_case(self, safe_owners):
        a = safe_owners[0].address
        tx = pending_tx([Confirmation(a.lower(), sig("aa"))])
        assert assemble_signatures(tx, [a]) == "0x" + "aa" * 65

    def test_coordinator_signatures_preferred(self, safe_owners):
        tx = pending_tx([Confirmation(safe_owners[0].address, sig("aa"))])
        tx.signatures = "0xABCD"
        assert assemble_signatures(tx, [s.address for s in safe_owners]) == "0xabcd"

    def test_canonical_operation(self, safe_owners):
        a, b, _ = (s.address for s in safe_owners)
        tx = pending_tx([Confirmation(a, sig("aa")), Confirmation(b, sig("bb"))], value=5)
        payload = to_canonical_operation(tx, [a, b])
        assert payload["to"] == TARGET
        assert payload["value"] == 5
        assert payload["data"] == "0x"
        assert payload["gas_token"] == ZERO
        assert payload["signatures"] == "0x" + "aa" * 65 + "bb" * 65


class TestDescriptions:

    def test_native_transfer(self):
        assert describe_safe_tx(pending_tx([])) == f"Send 1 ETH to {TARGET}"

    def test_erc20_transfer(self, owner):
        data = ERC20_TRANSFER_SELECTOR + encode(["address", "uint256"], [owner.address, 500]).hex()
        tx = pending_tx([], value=0, data=data)
        assert describe_safe_tx(tx) == f"Transfer 500 of token {TARGET} to {owner.address}"

    def test_delegate_call(self):
        tx = pending_tx([], operation=1, data="0x12345678")
        assert tx.is_delegate_call
        assert describe_safe_tx(tx) == f"Delegate call to {TARGET}"

    def test_other_call(self):
        tx = pending_tx([], value=0, data="0x12345678" + "00" * 32)
        assert describe_safe_tx(tx) == f"Call 0x12345678 on {TARGET}"


class TestSafeReads:

    @pytest.mark.asyncio
    async def test_reads_from_ledger(self, aggregator, safe_address, safe_owners):
        assert await aggregator.safe_address() == safe_address
        assert await aggregator.owners() == [s.address for s in safe_owners]
        assert await aggregator.threshold() == 2
        assert await aggregator.safe_nonce() == 0

    @pytest.mark.asyncio
    async def test_custodian_without_safe(self, ledger, owner, broadcaster, recovery, registry, service, relay):
        bare = ledger.deploy_custodian(
            owner=owner.address,
            broadcaster=broadcaster.address,
            recovery=recovery.address,
            time_lock_minutes=TIME_LOCK_MINUTES,
        )
        workflow = TemporalWorkflow(ledger, registry, bare)
        aggregator = MultisigAggregator(service, workflow, relay)
        with pytest.raises(PreconditionFailedError):
            await aggregator.safe_address()
        aggregator.close()

    @pytest.mark.asyncio
    async def test_list_pending_sorted_and_filtered(self, aggregator, ledger, safe_address, safe_owners, httpx_mock):
        ledger.safe(safe_address).nonce = 1
        a = safe_owners[0].address
        httpx_mock.add_response(
            url=LIST_URL,
            json={"results": [service_json(3, [(a, sig("aa"))]), service_json(0, []), service_json(1, [])]},
        )

        pending = await aggregator.list_pending()

        assert [tx.nonce for tx in pending] == [1, 3]
        assert pending[1].confirmations == [Confirmation(a, sig("aa"))]
        assert aggregator.pending == pending
        assert httpx_mock.get_request().url.params["executed"] == "false"


class TestTimelockPath:

    @pytest.mark.asyncio
    async def test_request_wait_approve_executes_safe_tx(
        self, aggregator, ledger, safe_address, safe_owners, owner, httpx_mock
    ):
        a, b, _ = (s.address for s in safe_owners)
        httpx_mock.add_response(url=LIST_URL, json={"results": [service_json(0, [(b, sig("bb")), (a, sig("aa"))])]})
        [tx] = await aggregator.list_pending()

        authorization = await aggregator.request(tx, owner.address)
        assert authorization.provider == "timelock"

        tracking = await aggregator.tracking(tx)
        assert tracking.timelock_tx_id == authorization.tx_id
        assert tracking.timelock_status == TxStatus.PENDING
        assert tracking.confirmation.is_complete

        ledger.advance(TIME_LOCK_MINUTES * 60)
        assert (await aggregator.tracking(tx)).timelock_status == TxStatus.READY

        record = await aggregator.approve(tx, owner.address)
        assert record.status == TxStatus.COMPLETED

        safe = ledger.safe(safe_address)
        assert safe.nonce == 1
        assert len(safe.executed) == 1
        assert safe.executed[0]["signatures"].lower() == "0x" + "aa" * 65 + "bb" * 65
        assert (await aggregator.tracking(tx)).timelock_status == TxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel(self, aggregator, ledger, safe_address, safe_owners, owner):
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]])
        await aggregator.request(tx, owner.address)
        ledger.advance(3600)

        record = await aggregator.cancel(tx, owner.address)

        assert record.status == TxStatus.CANCELLED
        assert ledger.safe(safe_address).executed == []

    @pytest.mark.asyncio
    async def test_incomplete_confirmations_warn(self, aggregator, safe_owners, owner, caplog):
        tx = pending_tx([Confirmation(safe_owners[0].address, sig("aa"))])
        with caplog.at_level(logging.WARNING):
            authorization = await aggregator.request(tx, owner.address)
        assert authorization.tx_id == 1
        assert "1/2 confirmations" in caplog.text

    @pytest.mark.asyncio
    async def test_approve_without_request(self, aggregator, safe_owners, owner):
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]])
        with pytest.raises(PreconditionFailedError):
            await aggregator.approve(tx, owner.address)

    @pytest.mark.asyncio
    async def test_tracking_found_after_restart(self, service, workflow, relay, safe_owners, owner):
        """A fresh aggregator rediscovers the time-lock record from the ledger."""
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]])
        first = MultisigAggregator(service, workflow, relay)
        authorization = await first.request(tx, owner.address)
        first.close()

        second = MultisigAggregator(service, workflow, relay)
        tracking = await second.tracking(tx)
        assert tracking.timelock_tx_id == authorization.tx_id
        second.close()

    @pytest.mark.asyncio
    async def test_replacement_at_same_nonce_starts_fresh(self, aggregator, safe_owners, owner):
        confirmations = [Confirmation(s.address, sig("aa")) for s in safe_owners[:2]]
        original = pending_tx(confirmations, safe_tx_hash="0x" + "01" * 32)
        await aggregator.request(original, owner.address)

        replacement = pending_tx(confirmations, safe_tx_hash="0x" + "02" * 32, value=1)
        tracking = await aggregator.tracking(replacement)
        assert tracking.safe_tx_hash == replacement.safe_tx_hash
        assert tracking.timelock_tx_id is None

    @pytest.mark.asyncio
    async def test_custodian_with_renamed_exec_type(
        self, service, ledger, safe_address, safe_owners, owner, broadcaster, recovery
    ):
        renamed = EXEC_SAFE_TX.with_name("GUARDIAN_EXEC_SAFE_TX")
        custodian = ledger.deploy_custodian(
            owner=owner.address,
            broadcaster=broadcaster.address,
            recovery=recovery.address,
            time_lock_minutes=TIME_LOCK_MINUTES,
            safe=safe_address,
            supported=[renamed],
        )
        registry = OperationTypeRegistry(ledger, custodian)
        await registry.load()
        workflow = TemporalWorkflow(ledger, registry, custodian)
        store = SignedTransactionStore(MemoryStorageBackend(), clock=ledger.clock)
        relay = MetaTxRelay(ledger, registry, workflow, store, clock=ledger.clock)
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]])

        first = MultisigAggregator(service, workflow, relay)
        authorization = await first.request(tx, owner.address)
        assert authorization.operation_type == renamed.type_id
        first.close()

        second = MultisigAggregator(service, workflow, relay)
        assert (await second.tracking(tx)).timelock_tx_id == authorization.tx_id
        ledger.advance(TIME_LOCK_MINUTES * 60)
        record = await second.approve(tx, owner.address)
        second.close()

        assert record.status == TxStatus.COMPLETED
        assert ledger.safe(safe_address).nonce == 1


class TestMetaTxPath:

    @pytest.mark.asyncio
    async def test_sign_then_broadcast_executes_safe_tx(
        self, aggregator, ledger, safe_address, safe_owners, owner, broadcaster, store, custodian
    ):
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]], nonce=0)

        authorization = await aggregator.sign(tx, owner)
        assert authorization.operation_id == "temp_0"
        assert await store.get(custodian, "temp_0") is not None

        tracking = await aggregator.tracking(tx)
        assert tracking.meta_tx_signed
        assert not tracking.meta_tx_broadcast

        record = await aggregator.broadcast(tx, broadcaster.address)

        assert record.status == TxStatus.COMPLETED
        assert ledger.safe(safe_address).nonce == 1
        assert await store.get(custodian, "temp_0") is None
        tracking = await aggregator.tracking(tx)
        assert tracking.meta_tx_broadcast
        assert tracking.meta_tx_signed

    @pytest.mark.asyncio
    async def test_discard(self, aggregator, safe_owners, owner, store, custodian):
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]], nonce=4)
        await aggregator.sign(tx, owner)

        await aggregator.discard(tx, owner.address)

        assert await store.get(custodian, "temp_4") is None
        assert not (await aggregator.tracking(tx)).meta_tx_signed

    @pytest.mark.asyncio
    async def test_store_change_requests_refresh(self, aggregator, workflow, safe_owners, owner):
        tx = pending_tx([Confirmation(s.address, sig("aa")) for s in safe_owners[:2]])
        workflow.refresh_event.clear()
        await aggregator.sign(tx, owner)
        assert workflow.refresh_event.is_set()

    @pytest.mark.asyncio
    async def test_clear_all_requests_refresh(self, aggregator, workflow, store):
        workflow.refresh_event.clear()
        await store.clear_all()
        assert workflow.refresh_event.is_set()

    @pytest.mark.asyncio
    async def test_namespace_reset_requests_refresh(self, service, ledger, registry, workflow):
        backend = MemoryStorageBackend({"dapp_signed_transactions": "{not json"})
        store = SignedTransactionStore(backend, clock=ledger.clock)
        relay = MetaTxRelay(ledger, registry, workflow, store, clock=ledger.clock)
        aggregator = MultisigAggregator(service, workflow, relay)
        workflow.refresh_event.clear()

        assert await relay.pending_signatures() == []
        assert workflow.refresh_event.is_set()
        aggregator.close()


class TestProposeAndPoll:

    @pytest.mark.asyncio
    async def test_propose(self, aggregator, ledger, safe_address, owner, httpx_mock):
        httpx_mock.add_response(method="POST", url=LIST_URL, status_code=201)

        safe_tx_hash = await aggregator.propose(TARGET, 1000, "0x", owner, origin="guardian")

        body = json.loads(httpx_mock.get_request().content)
        assert body["contractTransactionHash"] == safe_tx_hash
        assert body["sender"] == owner.address
        assert body["nonce"] == 0
        assert body["value"] == "1000"
        assert body["data"] is None

        expected = compute_safe_tx_hash(
            safe_address, ledger.chain_id, pending_tx([], value=1000, safe_tx_hash=safe_tx_hash)
        )
        assert expected == safe_tx_hash

    @pytest.mark.asyncio
    async def test_safe_tx_hash_depends_on_nonce(self, safe_address, ledger):
        first = compute_safe_tx_hash(safe_address, ledger.chain_id, pending_tx([], nonce=0))
        second = compute_safe_tx_hash(safe_address, ledger.chain_id, pending_tx([], nonce=1))
        assert first != second
        assert len(Web3.to_bytes(hexstr=first)) == 32

    @pytest.mark.asyncio
    async def test_poll_until_stopped(self, aggregator, httpx_mock):
        httpx_mock.add_response(url=LIST_URL, json={"results": [service_json(0, [])]})
        stop = asyncio.Event()
        updates = []

        async def on_update(pending):
            updates.append(pending)
            stop.set()

        await asyncio.wait_for(aggregator.poll(30, stop, on_update=on_update), timeout=5)

        assert len(updates) == 1
        assert [tx.nonce for tx in updates[0]] == [0]
