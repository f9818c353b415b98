"""
Tests for the send (withdrawal) request lifecycle.

Covers:
1. Create: validation, lock, pending rows, internal-transfer detection
2. Create: persistence failure after the lock is compensated
3. Admin approve / reject state machine
4. Execute: internal transfer, external payout success and failure
5. Mark sent manually
6. Fee estimation with static fallback
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from walletcore.core.exceptions import InsufficientBalance, InvalidAmount, InvalidState, LedgerError, NotFound, OperationFailed
from walletcore.models.reconciliation import ReconciliationIncident
from walletcore.models.transaction import Transaction, TransactionType, TransactionStatus
from walletcore.models.withdrawal import WithdrawalRequest, WithdrawalStatus, ProcessingType
from walletcore.services import withdrawals
from walletcore.services.gateway import WithdrawResult, FeeEstimate, GatewayError
from walletcore.services.ledger import BalanceLedger

from conftest import create_user, fund, create_deployment, add_deposit_address

ADDRESS = "TQ1external000000000000000000000000"


async def _setup(test_db, balance="100", **deployment):
    async with test_db() as session:
        sender = await create_user(session, "sender@example.com")
        admin = await create_user(session, "admin@example.com")
        await fund(session, sender, balance)
        deployment_id = await create_deployment(session, **deployment)
    return sender, admin, deployment_id


async def _balance(test_db, user_id, asset="USDT"):
    async with test_db() as session:
        return await BalanceLedger(session).get_balance(user_id, asset)


async def _request(test_db, request_id):
    async with test_db() as session:
        return await session.get(WithdrawalRequest, request_id)


async def _create(test_db, sender, amount="40", address=ADDRESS):
    async with test_db() as session:
        request = await withdrawals.create_send_request(session, sender, "USDT_TRC20", address, amount)
        return request.id


async def _approve(test_db, request_id, admin):
    async with test_db() as session:
        return await withdrawals.admin_approve(session, request_id, admin)


# ---------------------------------------------------------------------------
# 1. Create
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_locks_funds_and_writes_pending_rows(test_db):
    sender, _, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")

    state = await _balance(test_db, sender)
    assert state.balance == Decimal("100")
    assert state.locked_balance == Decimal("40")

    async with test_db() as session:
        request = await session.get(WithdrawalRequest, request_id)
        tx = await session.get(Transaction, request.transaction_id)
    assert request.status == WithdrawalStatus.pending
    assert request.is_internal_transfer is False
    assert tx.type == TransactionType.withdrawal
    assert tx.status == TransactionStatus.pending
    assert Decimal(str(tx.amount)) == Decimal("40")


@pytest.mark.asyncio
async def test_create_rejects_more_than_available(test_db):
    sender, _, _ = await _setup(test_db, balance="100")
    await _create(test_db, sender, "70")
    with pytest.raises(InsufficientBalance) as exc:
        await _create(test_db, sender, "40")
    assert exc.value.to_dict()["available"] == 30.0

    state = await _balance(test_db, sender)
    assert state.locked_balance == Decimal("70")


@pytest.mark.asyncio
async def test_create_validates_minimum_and_deployment(test_db):
    sender, _, _ = await _setup(test_db, min_withdrawal=Decimal("10"))
    with pytest.raises(InvalidAmount):
        await _create(test_db, sender, "5")
    with pytest.raises(InvalidAmount):
        await _create(test_db, sender, "-5")
    async with test_db() as session:
        with pytest.raises(NotFound):
            await withdrawals.create_send_request(session, sender, "NOPE", ADDRESS, "20")

    async with test_db() as session:
        count = len(list(await session.scalars(select(WithdrawalRequest))))
    assert count == 0
    assert (await _balance(test_db, sender)).locked_balance == Decimal("0")


@pytest.mark.asyncio
async def test_create_rejects_disabled_deployment(test_db):
    sender, _, _ = await _setup(test_db, withdrawal_enabled=False)
    with pytest.raises(LedgerError):
        await _create(test_db, sender, "20")


@pytest.mark.asyncio
async def test_create_detects_internal_transfer(test_db):
    sender, _, deployment_id = await _setup(test_db)
    async with test_db() as session:
        recipient = await create_user(session, "recipient@example.com")
        await add_deposit_address(session, recipient, deployment_id, "TQ1recipient")

    request_id = await _create(test_db, sender, "25", address="TQ1recipient")
    request = await _request(test_db, request_id)
    assert request.is_internal_transfer is True
    assert request.recipient_user_id == recipient


# ---------------------------------------------------------------------------
# 2. Compensation when persisting the request fails
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_persist_failure_after_lock_restores_balance(test_db):
    """Lock succeeds, inserting the rows fails -> lock released, no rows left."""
    sender, _, _ = await _setup(test_db)
    with patch(
        "walletcore.services.withdrawals._persist_request",
        AsyncMock(side_effect=RuntimeError("insert failed")),
    ):
        with pytest.raises(OperationFailed):
            await _create(test_db, sender, "40")

    state = await _balance(test_db, sender)
    assert state.balance == Decimal("100")
    assert state.locked_balance == Decimal("0")
    async with test_db() as session:
        assert list(await session.scalars(select(WithdrawalRequest))) == []
        assert list(await session.scalars(select(ReconciliationIncident))) == []


@pytest.mark.asyncio
async def test_failed_compensation_records_incident(test_db):
    sender, _, _ = await _setup(test_db)
    with (
        patch(
            "walletcore.services.withdrawals._persist_request",
            AsyncMock(side_effect=RuntimeError("insert failed")),
        ),
        patch.object(BalanceLedger, "unlock", AsyncMock(side_effect=RuntimeError("db down"))),
    ):
        with pytest.raises(OperationFailed):
            await _create(test_db, sender, "40")

    async with test_db() as session:
        incidents = list(await session.scalars(select(ReconciliationIncident)))
    assert len(incidents) == 1
    assert incidents[0].operation == "send_request"
    assert incidents[0].step == "unlock"
    assert incidents[0].user_id == sender
    assert Decimal(str(incidents[0].amount)) == Decimal("40")


# ---------------------------------------------------------------------------
# 3. Approve / reject
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_admin_approve_moves_to_admin_approved_once(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender)
    approved = await _approve(test_db, request_id, admin)
    assert approved.status == WithdrawalStatus.admin_approved
    assert approved.admin_approved_by == admin

    with pytest.raises(InvalidState):
        await _approve(test_db, request_id, admin)


@pytest.mark.asyncio
async def test_reject_releases_lock_and_fails_transaction(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")
    async with test_db() as session:
        rejected = await withdrawals.reject(session, request_id, admin, "Address looks wrong")

    assert rejected.status == WithdrawalStatus.rejected
    assert rejected.rejection_reason == "Address looks wrong"
    state = await _balance(test_db, sender)
    assert state.balance == Decimal("100")
    assert state.locked_balance == Decimal("0")
    async with test_db() as session:
        tx = await session.get(Transaction, rejected.transaction_id)
    assert tx.status == TransactionStatus.failed

    async with test_db() as session:
        with pytest.raises(InvalidState):
            await withdrawals.reject(session, request_id, admin, "again")


@pytest.mark.asyncio
async def test_reject_reverts_status_when_unlock_fails(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")
    with patch.object(BalanceLedger, "unlock", AsyncMock(side_effect=InvalidState("Unlock amount exceeds locked balance"))):
        async with test_db() as session:
            with pytest.raises(InvalidState):
                await withdrawals.reject(session, request_id, admin, "nope")

    request = await _request(test_db, request_id)
    assert request.status == WithdrawalStatus.pending


# ---------------------------------------------------------------------------
# 4. Execute
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_execute_requires_admin_approval(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender)
    async with test_db() as session:
        with pytest.raises(InvalidState):
            await withdrawals.execute(session, request_id, admin)
    assert (await _request(test_db, request_id)).status == WithdrawalStatus.pending


@pytest.mark.asyncio
async def test_execute_internal_transfer_moves_funds(test_db):
    sender, admin, deployment_id = await _setup(test_db)
    async with test_db() as session:
        recipient = await create_user(session, "recipient@example.com")
        await add_deposit_address(session, recipient, deployment_id, "TQ1recipient")
    request_id = await _create(test_db, sender, "25", address="TQ1recipient")
    await _approve(test_db, request_id, admin)

    with patch("walletcore.services.withdrawals.gateway.withdraw", AsyncMock()) as mock_withdraw:
        async with test_db() as session:
            done = await withdrawals.execute(session, request_id, admin)
    mock_withdraw.assert_not_called()

    assert done.status == WithdrawalStatus.completed
    assert done.processing_type == ProcessingType.automatic
    sender_state = await _balance(test_db, sender)
    recipient_state = await _balance(test_db, recipient)
    assert sender_state.balance == Decimal("75")
    assert sender_state.locked_balance == Decimal("0")
    assert recipient_state.balance == Decimal("25")
    # conservation across both users
    assert sender_state.balance + recipient_state.balance == Decimal("100")

    async with test_db() as session:
        deposit = await session.scalar(
            select(Transaction).where(Transaction.user_id == recipient, Transaction.type == TransactionType.deposit)
        )
    assert deposit.status == TransactionStatus.completed
    assert deposit.meta["sender_user_id"] == sender


@pytest.mark.asyncio
async def test_internal_transfer_credit_failure_refunds_sender(test_db):
    sender, admin, deployment_id = await _setup(test_db)
    async with test_db() as session:
        recipient = await create_user(session, "recipient@example.com")
        await add_deposit_address(session, recipient, deployment_id, "TQ1recipient")
    request_id = await _create(test_db, sender, "25", address="TQ1recipient")
    await _approve(test_db, request_id, admin)

    original_credit = BalanceLedger.credit

    async def credit(self, user_id, asset, amount):
        if user_id == recipient:
            raise RuntimeError("recipient row unavailable")
        return await original_credit(self, user_id, asset, amount)

    with patch.object(BalanceLedger, "credit", credit):
        async with test_db() as session:
            with pytest.raises(OperationFailed):
                await withdrawals.execute(session, request_id, admin)

    assert (await _request(test_db, request_id)).status == WithdrawalStatus.failed
    sender_state = await _balance(test_db, sender)
    assert sender_state.balance == Decimal("100")
    assert sender_state.locked_balance == Decimal("0")
    assert (await _balance(test_db, recipient)).balance == Decimal("0")


@pytest.mark.asyncio
async def test_execute_external_success_burns_lock(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")
    await _approve(test_db, request_id, admin)

    result = WithdrawResult(success=True, tx_hash="0xabc", fee=Decimal("1.5"))
    with patch("walletcore.services.withdrawals.gateway.withdraw", AsyncMock(return_value=result)) as mock_withdraw:
        async with test_db() as session:
            done = await withdrawals.execute(session, request_id, admin)
    mock_withdraw.assert_awaited_once_with("USDT_TRX", ADDRESS, Decimal("40"))

    assert done.status == WithdrawalStatus.completed
    assert done.tx_hash == "0xabc"
    assert done.sent_at is not None
    state = await _balance(test_db, sender)
    assert state.balance == Decimal("60")
    assert state.locked_balance == Decimal("0")
    async with test_db() as session:
        tx = await session.get(Transaction, done.transaction_id)
    assert tx.status == TransactionStatus.completed
    assert Decimal(str(tx.network_fee)) == Decimal("1.5")


@pytest.mark.asyncio
@pytest.mark.parametrize("gateway_call", [
    AsyncMock(return_value=WithdrawResult(success=False, error="insufficient hot wallet")),
    AsyncMock(side_effect=GatewayError("timeout")),
])
async def test_execute_external_failure_unlocks_and_fails(test_db, gateway_call):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")
    await _approve(test_db, request_id, admin)

    with patch("walletcore.services.withdrawals.gateway.withdraw", gateway_call):
        async with test_db() as session:
            done = await withdrawals.execute(session, request_id, admin)

    assert done.status == WithdrawalStatus.failed
    state = await _balance(test_db, sender)
    assert state.balance == Decimal("100")
    assert state.locked_balance == Decimal("0")
    async with test_db() as session:
        tx = await session.get(Transaction, done.transaction_id)
    assert tx.status == TransactionStatus.failed


@pytest.mark.asyncio
async def test_execute_cannot_run_twice(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")
    await _approve(test_db, request_id, admin)
    result = WithdrawResult(success=True, tx_hash="0xabc")
    with patch("walletcore.services.withdrawals.gateway.withdraw", AsyncMock(return_value=result)):
        async with test_db() as session:
            await withdrawals.execute(session, request_id, admin)
        async with test_db() as session:
            with pytest.raises(InvalidState):
                await withdrawals.execute(session, request_id, admin)
    assert (await _balance(test_db, sender)).balance == Decimal("60")


# ---------------------------------------------------------------------------
# 5. Mark sent manually
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mark_sent_manual_completes_and_burns_lock(test_db):
    sender, admin, _ = await _setup(test_db)
    request_id = await _create(test_db, sender, "40")
    await _approve(test_db, request_id, admin)
    async with test_db() as session:
        done = await withdrawals.mark_sent_manual(session, request_id, admin, "0xmanual")

    assert done.status == WithdrawalStatus.completed
    assert done.processing_type == ProcessingType.manual
    assert done.tx_hash == "0xmanual"
    state = await _balance(test_db, sender)
    assert state.balance == Decimal("60")
    assert state.locked_balance == Decimal("0")


# ---------------------------------------------------------------------------
# 6. Fee estimation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_estimate_fee_uses_gateway(test_db):
    sender, _, _ = await _setup(test_db)
    with patch(
        "walletcore.services.withdrawals.gateway.estimate_fee",
        AsyncMock(return_value=FeeEstimate(fee=Decimal("0.8"), currency="USDT_TRX")),
    ):
        async with test_db() as session:
            estimate = await withdrawals.estimate_fee(session, sender, "USDT_TRC20", ADDRESS, "40")
    assert estimate == {"fee": Decimal("0.8"), "currency": "USDT_TRX", "source": "gateway"}


@pytest.mark.asyncio
async def test_estimate_fee_falls_back_to_static_fee(test_db):
    sender, _, _ = await _setup(test_db, withdrawal_fee=Decimal("2"))
    with patch(
        "walletcore.services.withdrawals.gateway.estimate_fee",
        AsyncMock(side_effect=GatewayError("down")),
    ):
        async with test_db() as session:
            estimate = await withdrawals.estimate_fee(session, sender, "USDT_TRC20", ADDRESS, "40")
    assert estimate["source"] == "network"
    assert estimate["fee"] == Decimal("2")
