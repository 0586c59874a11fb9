"""
Tests for guardian_workflow.workflow.

Tests cover:
- Request -> wait -> approve/cancel lifecycle
- Role gating with fresh role reads
- Terminal immutability
- Minimum cancel hold
- Capability preconditions
- Meta-transaction approve/cancel through the workflow
- History reads and release polling
"""
from __future__ import annotations

import asyncio

import pytest

from guardian_workflow.exceptions import (
    AlreadyTerminalError,
    InvalidSignatureError,
    NotBroadcasterError,
    NotFoundError,
    PreconditionFailedError,
    RoleDeniedError,
    TooEarlyError,
)
from guardian_workflow.meta_tx import MetaTxAction
from guardian_workflow.registry import (
    BROADCASTER_UPDATE,
    EXEC_SAFE_TX,
    OWNERSHIP_TRANSFER,
    RECOVERY_UPDATE,
)
from guardian_workflow.workflow import OperationRecord, TxStatus

from conftest import TIME_LOCK_MINUTES

NEW_BROADCASTER = "0x000000000000000000000000000000000000beef"
MINUTE = 60


def safe_payload(operation: int = 0):
    return {
        "to": "0x000000000000000000000000000000000000dEaD",
        "value": 0,
        "data": "0x",
        "operation": operation,
        "safe_tx_gas": 0,
        "base_gas": 0,
        "gas_price": 0,
        "gas_token": "0x0000000000000000000000000000000000000000",
        "refund_receiver": "0x0000000000000000000000000000000000000000",
        "signatures": "0x" + "ab" * 130,
    }


class TestOperationRecord:

    def test_effective_status(self):
        record = OperationRecord.from_ledger({
            "txId": 1,
            "operationType": BROADCASTER_UPDATE.type_id,
            "requester": NEW_BROADCASTER,
            "target": NEW_BROADCASTER,
            "createdAt": 100,
            "releaseTime": 200,
            "status": "PENDING",
        })
        assert record.effective_status(199) == TxStatus.PENDING
        assert record.effective_status(200) == TxStatus.READY
        assert record.seconds_until_release(150) == 50
        assert record.seconds_until_release(500) == 0
        assert record.execution_payload == "0x"


class TestTimeLock:

    @pytest.mark.asyncio
    async def test_request_creates_pending_record(self, workflow, ledger, owner):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)

        assert record.tx_id == 1
        assert record.status == TxStatus.PENDING
        assert record.requester == owner.address
        assert record.created_at == ledger.now
        assert record.release_time == ledger.now + TIME_LOCK_MINUTES * MINUTE
        assert await workflow.effective_status(record) == TxStatus.PENDING

    @pytest.mark.asyncio
    async def test_approve_only_after_release(self, workflow, ledger, owner):
        """1440-minute lock: too early at 1000 minutes, completes at 1441."""
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)

        ledger.advance(1000 * MINUTE)
        with pytest.raises(TooEarlyError) as exc_info:
            await workflow.approve(record.tx_id, owner.address)
        assert exc_info.value.details["seconds_remaining"] == 440 * MINUTE
        assert (await workflow.get_record(record.tx_id)).status == TxStatus.PENDING

        ledger.advance(441 * MINUTE)
        assert await workflow.effective_status(await workflow.get_record(record.tx_id)) == TxStatus.READY
        approved = await workflow.approve(record.tx_id, owner.address)

        assert approved.status == TxStatus.COMPLETED
        assert (await workflow.broadcaster()).lower() == NEW_BROADCASTER

    @pytest.mark.asyncio
    async def test_terminal_records_are_immutable(self, workflow, ledger, owner):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        ledger.advance(TIME_LOCK_MINUTES * MINUTE)
        await workflow.approve(record.tx_id, owner.address)

        with pytest.raises(AlreadyTerminalError):
            await workflow.approve(record.tx_id, owner.address)
        with pytest.raises(AlreadyTerminalError):
            await workflow.cancel(record.tx_id, owner.address)

    @pytest.mark.asyncio
    async def test_unknown_record(self, workflow, owner):
        with pytest.raises(NotFoundError):
            await workflow.approve(99, owner.address)

    @pytest.mark.asyncio
    async def test_ownership_transfer_by_recovery(self, workflow, ledger, owner, recovery):
        record = await workflow.request(OWNERSHIP_TRANSFER, None, recovery.address)
        ledger.advance(TIME_LOCK_MINUTES * MINUTE)
        await workflow.approve(record.tx_id, recovery.address)
        assert await workflow.owner() == recovery.address


class TestRoles:

    @pytest.mark.asyncio
    async def test_request_requires_role(self, workflow, owner, outsider):
        with pytest.raises(RoleDeniedError) as exc_info:
            await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, outsider.address)
        assert exc_info.value.details["required_roles"] == ["owner"]

        with pytest.raises(RoleDeniedError):
            await workflow.request(OWNERSHIP_TRANSFER, None, owner.address)

    @pytest.mark.asyncio
    async def test_roles_are_read_fresh(self, workflow, ledger, custodian, owner, outsider):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        ledger.advance(TIME_LOCK_MINUTES * MINUTE)

        ledger.custodian(custodian).owner = outsider.address
        with pytest.raises(RoleDeniedError):
            await workflow.approve(record.tx_id, owner.address)
        approved = await workflow.approve(record.tx_id, outsider.address)
        assert approved.status == TxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_verify_broadcaster(self, workflow, broadcaster, owner):
        assert await workflow.verify_broadcaster(broadcaster.address.lower()) == broadcaster.address
        with pytest.raises(NotBroadcasterError):
            await workflow.verify_broadcaster(owner.address)


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_single_phase_cannot_be_requested(self, workflow, owner):
        with pytest.raises(PreconditionFailedError):
            await workflow.request(RECOVERY_UPDATE, {"new_recovery": NEW_BROADCASTER}, owner.address)

    @pytest.mark.asyncio
    async def test_delegate_call_needs_capability(self, workflow, ledger, custodian, owner):
        with pytest.raises(PreconditionFailedError):
            await workflow.request(EXEC_SAFE_TX, safe_payload(operation=1), owner.address)
        assert await workflow.pending() == []

        ledger.custodian(custodian).delegated_call_enabled = True
        record = await workflow.request(EXEC_SAFE_TX, safe_payload(operation=1), owner.address)
        assert record.status == TxStatus.PENDING


class TestCancel:

    @pytest.mark.asyncio
    async def test_minimum_hold(self, workflow, ledger, owner):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)

        ledger.advance(30 * MINUTE)
        with pytest.raises(TooEarlyError):
            await workflow.cancel(record.tx_id, owner.address)

        ledger.advance(31 * MINUTE)
        cancelled = await workflow.cancel(record.tx_id, owner.address)
        assert cancelled.status == TxStatus.CANCELLED
        assert (await workflow.broadcaster()).lower() != NEW_BROADCASTER

    @pytest.mark.asyncio
    async def test_cancel_role(self, workflow, ledger, owner, recovery):
        record = await workflow.request(OWNERSHIP_TRANSFER, None, recovery.address)
        ledger.advance(2 * 60 * MINUTE)
        with pytest.raises(RoleDeniedError):
            await workflow.cancel(record.tx_id, owner.address)
        assert (await workflow.cancel(record.tx_id, recovery.address)).status == TxStatus.CANCELLED


class TestMetaTransactions:

    @pytest.mark.asyncio
    async def test_meta_approve_before_release(self, workflow, relay, owner, broadcaster):
        """A signed approval stands in for the wait."""
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        entry = await relay.sign_existing(record.tx_id, MetaTxAction.APPROVE, owner)

        approved = await workflow.approve_via_meta_transaction(entry.meta_transaction(), broadcaster.address)
        assert approved.status == TxStatus.COMPLETED
        assert await workflow.signer_nonce(owner.address) == 1

    @pytest.mark.asyncio
    async def test_meta_cancel(self, workflow, relay, owner, broadcaster):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        entry = await relay.sign_existing(record.tx_id, MetaTxAction.CANCEL, owner)

        cancelled = await workflow.cancel_via_meta_transaction(entry.meta_transaction(), broadcaster.address)
        assert cancelled.status == TxStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_action_mismatch(self, workflow, relay, owner, broadcaster):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        entry = await relay.sign_existing(record.tx_id, MetaTxAction.CANCEL, owner)
        with pytest.raises(InvalidSignatureError):
            await workflow.approve_via_meta_transaction(entry.meta_transaction(), broadcaster.address)

    @pytest.mark.asyncio
    async def test_only_broadcaster_submits(self, workflow, relay, owner):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        entry = await relay.sign_existing(record.tx_id, MetaTxAction.APPROVE, owner)
        with pytest.raises(NotBroadcasterError):
            await workflow.approve_via_meta_transaction(entry.meta_transaction(), owner.address)
        assert (await workflow.get_record(record.tx_id)).status == TxStatus.PENDING

    @pytest.mark.asyncio
    async def test_single_phase_recovery_update(self, workflow, relay, owner, broadcaster, outsider):
        entry = await relay.sign_new(RECOVERY_UPDATE, {"new_recovery": outsider.address}, owner)
        record = await workflow.request_and_approve_single_phase(
            entry.meta_transaction(), broadcaster.address
        )
        assert record.status == TxStatus.COMPLETED
        assert record.created_at == record.release_time
        assert await workflow.recovery() == outsider.address


class TestReads:

    @pytest.mark.asyncio
    async def test_history_pending_completed(self, workflow, ledger, owner):
        first = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        await workflow.request(EXEC_SAFE_TX, safe_payload(), owner.address)
        ledger.advance(TIME_LOCK_MINUTES * MINUTE)
        await workflow.approve(first.tx_id, owner.address)

        history = await workflow.history(1, 2)
        assert [r.tx_id for r in history] == [1, 2]
        assert [r.tx_id for r in await workflow.pending()] == [2]
        assert [r.tx_id for r in await workflow.completed()] == [1]

        with pytest.raises(ValueError):
            await workflow.history(3, 1)

    @pytest.mark.asyncio
    async def test_wait_until_release(self, workflow, ledger, owner):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)

        task = asyncio.create_task(workflow.wait_until_release(record.tx_id, poll_interval=0.01))
        await asyncio.sleep(0.02)
        assert not task.done()

        ledger.advance(TIME_LOCK_MINUTES * MINUTE)
        released = await asyncio.wait_for(task, timeout=2)
        assert released.tx_id == record.tx_id

    @pytest.mark.asyncio
    async def test_wait_until_release_timeout(self, workflow, owner):
        record = await workflow.request(BROADCASTER_UPDATE, {"new_broadcaster": NEW_BROADCASTER}, owner.address)
        with pytest.raises(asyncio.TimeoutError):
            await workflow.wait_until_release(record.tx_id, poll_interval=0.01, timeout=0.05)
