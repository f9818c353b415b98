"""
Send (withdrawal) request lifecycle.

    pending -> admin_approved -> processing -> completed | failed
    pending | admin_approved -> rejected

Funds are locked when the request is created and stay locked until the
request reaches a terminal state: `completed` burns the lock
(unlock deduct=True), `failed`/`rejected` release it (unlock deduct=False).
Every status change is a compare-and-set on the current status, so two
admins acting on the same request cannot both win.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from walletcore.core.exceptions import LedgerError, InsufficientBalance, InvalidAmount, InvalidState, NotFound, OperationFailed
from walletcore.models.token import TokenDeployment, DepositAddress
from walletcore.models.transaction import Transaction, TransactionType, TransactionStatus
from walletcore.models.withdrawal import WithdrawalRequest, WithdrawalStatus, ProcessingType
from walletcore.services import gateway
from walletcore.services.ledger import BalanceLedger, parse_amount
from walletcore.services.reconciliation import compensate, record_incident

logger = logging.getLogger(__name__)

REJECTABLE = (WithdrawalStatus.pending, WithdrawalStatus.admin_approved)


async def get_deployment(db: AsyncSession, symbol: str) -> TokenDeployment:
    deployment = await db.scalar(
        select(TokenDeployment).where(TokenDeployment.symbol == symbol, TokenDeployment.is_active == True)
    )
    if not deployment:
        raise NotFound("Invalid token deployment")
    return deployment


async def _validate_send(db: AsyncSession, user_id: int, symbol: str, amount) -> tuple[TokenDeployment, Decimal]:
    amount = parse_amount(amount)
    deployment = await get_deployment(db, symbol)
    if not deployment.withdrawal_enabled:
        raise LedgerError(f"Withdrawals are currently disabled for {deployment.network}")
    if deployment.min_withdrawal and amount < Decimal(str(deployment.min_withdrawal)):
        raise InvalidAmount(f"Minimum withdrawal is {deployment.min_withdrawal} {deployment.asset}")
    state = await BalanceLedger(db).get_balance(user_id, deployment.asset)
    if state.available < amount:
        raise InsufficientBalance(state.available, amount, state.locked_balance)
    return deployment, amount


async def detect_internal_transfer(db: AsyncSession, user_id: int, asset: str, to_address: str) -> Optional[int]:
    """Return the recipient's user id when `to_address` is another user's deposit address for `asset`."""
    return await db.scalar(
        select(DepositAddress.user_id)
        .join(TokenDeployment, TokenDeployment.id == DepositAddress.deployment_id)
        .where(
            DepositAddress.address == to_address,
            DepositAddress.user_id != user_id,
            TokenDeployment.asset == asset,
        )
        .limit(1)
    )


async def estimate_fee(db: AsyncSession, user_id: int, symbol: str, to_address: str, amount) -> dict:
    deployment, amount = await _validate_send(db, user_id, symbol, amount)
    static_fee = Decimal(str(deployment.withdrawal_fee or 0))
    if deployment.gateway_currency:
        try:
            estimate = await gateway.estimate_fee(deployment.gateway_currency, to_address, amount)
            return {"fee": estimate.fee, "currency": estimate.currency, "source": "gateway"}
        except gateway.GatewayError as e:
            logger.error("Fee estimation failed for %s, using static fee: %s", symbol, e)
    return {"fee": static_fee, "currency": deployment.asset, "source": "network"}


async def _persist_request(
    db: AsyncSession,
    user_id: int,
    deployment: TokenDeployment,
    to_address: str,
    amount: Decimal,
    recipient_user_id: Optional[int],
) -> WithdrawalRequest:
    """Insert the pending transaction and its request in one commit."""
    tx = Transaction(
        user_id=user_id,
        type=TransactionType.withdrawal,
        amount=amount,
        status=TransactionStatus.pending,
        asset=deployment.asset,
        to_address=to_address,
        network_fee=deployment.withdrawal_fee or 0,
        meta={"deployment": deployment.symbol, "network": deployment.network},
    )
    db.add(tx)
    await db.flush()
    request = WithdrawalRequest(
        transaction_id=tx.id,
        user_id=user_id,
        asset=deployment.asset,
        deployment_symbol=deployment.symbol,
        amount=amount,
        to_address=to_address,
        status=WithdrawalStatus.pending,
        is_internal_transfer=recipient_user_id is not None,
        recipient_user_id=recipient_user_id,
    )
    db.add(request)
    await db.commit()
    return request


async def create_send_request(db: AsyncSession, user_id: int, symbol: str, to_address: str, amount) -> WithdrawalRequest:
    to_address = (to_address or "").strip()
    if not to_address:
        raise LedgerError("Destination address is required")
    deployment, amount = await _validate_send(db, user_id, symbol, amount)
    asset, deployment_symbol = deployment.asset, deployment.symbol
    recipient_user_id = await detect_internal_transfer(db, user_id, asset, to_address)

    ledger = BalanceLedger(db)
    await ledger.lock(user_id, asset, amount)

    try:
        request = await _persist_request(db, user_id, deployment, to_address, amount, recipient_user_id)
    except Exception as e:
        await db.rollback()
        logger.error("Failed to persist send request for user %s: %s", user_id, e)
        await compensate(
            db, "send_request", "unlock",
            lambda: ledger.unlock(user_id, asset, amount, deduct=False),
            user_id=user_id, asset=asset, amount=amount,
            context={"to_address": to_address, "deployment": deployment_symbol},
        )
        raise OperationFailed()

    logger.info(
        "Send request created: request=%s tx=%s user=%s %s %s internal=%s",
        request.id, request.transaction_id, user_id, amount, deployment_symbol, request.is_internal_transfer,
    )
    return request


async def _get_request(db: AsyncSession, request_id: int) -> WithdrawalRequest:
    request = await db.get(WithdrawalRequest, request_id, populate_existing=True)
    if not request:
        raise NotFound("Withdrawal request not found")
    # detached snapshot: ledger rollbacks must not expire it mid-operation
    db.expunge(request)
    return request


async def _transition(db: AsyncSession, request_id: int, from_states, to_state: WithdrawalStatus, **values) -> bool:
    result = await db.execute(
        update(WithdrawalRequest)
        .where(WithdrawalRequest.id == request_id, WithdrawalRequest.status.in_(from_states))
        .values(status=to_state, **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _ensure_locked(db: AsyncSession, request: WithdrawalRequest) -> None:
    state = await BalanceLedger(db).get_balance(request.user_id, request.asset)
    if state.locked_balance < Decimal(str(request.amount)):
        raise InvalidState("Insufficient locked balance for this withdrawal")


async def admin_approve(db: AsyncSession, request_id: int, admin_id: int) -> WithdrawalRequest:
    request = await _get_request(db, request_id)
    if request.status != WithdrawalStatus.pending:
        raise InvalidState("Request is not pending")
    await _ensure_locked(db, request)
    now = datetime.now(timezone.utc)
    if not await _transition(
        db, request_id, [WithdrawalStatus.pending], WithdrawalStatus.admin_approved,
        admin_approved_by=admin_id, admin_approved_at=now,
    ):
        raise InvalidState("Request is not pending")
    logger.info("Send approved by admin: request=%s admin=%s", request_id, admin_id)
    return await _get_request(db, request_id)


async def _update_transaction(db: AsyncSession, transaction_id: int, **values) -> None:
    await db.execute(
        update(Transaction).where(Transaction.id == transaction_id).values(**values)
        .execution_options(synchronize_session=False)
    )


async def reject(db: AsyncSession, request_id: int, admin_id: int, reason: str) -> WithdrawalRequest:
    request = await _get_request(db, request_id)
    original = request.status
    if original not in REJECTABLE:
        raise InvalidState("Request cannot be rejected from current status")
    now = datetime.now(timezone.utc)
    if not await _transition(
        db, request_id, [original], WithdrawalStatus.rejected,
        rejection_reason=reason, approved_by=admin_id, approved_at=now,
    ):
        raise InvalidState("Request cannot be rejected from current status")

    amount = Decimal(str(request.amount))
    try:
        await BalanceLedger(db).unlock(request.user_id, request.asset, amount, deduct=False)
    except Exception as e:
        logger.error("Failed to unlock balance for rejected request %s: %s", request_id, e)
        reverted = await compensate(
            db, "reject_send", "revert_status",
            lambda: _transition(db, request_id, [WithdrawalStatus.rejected], original),
            user_id=request.user_id, asset=request.asset, amount=amount,
            context={"request_id": request_id},
        )
        if isinstance(e, LedgerError) and reverted:
            raise
        raise OperationFailed()

    await _update_transaction(
        db, request.transaction_id,
        status=TransactionStatus.failed, notes=f"Your withdrawal was declined: {reason}",
    )
    await db.commit()
    logger.info("Send rejected: request=%s admin=%s reason=%s", request_id, admin_id, reason)
    return await _get_request(db, request_id)


async def _finish(
    db: AsyncSession,
    request: WithdrawalRequest,
    status: WithdrawalStatus,
    tx_status: TransactionStatus,
    tx_values: Optional[dict] = None,
    **values,
) -> WithdrawalRequest:
    await db.execute(
        update(WithdrawalRequest)
        .where(WithdrawalRequest.id == request.id, WithdrawalRequest.status == WithdrawalStatus.processing)
        .values(status=status, **values)
        .execution_options(synchronize_session=False)
    )
    await _update_transaction(db, request.transaction_id, status=tx_status, **(tx_values or {}))
    await db.commit()
    return await _get_request(db, request.id)


async def _start_processing(db: AsyncSession, request_id: int, admin_id: int) -> WithdrawalRequest:
    request = await _get_request(db, request_id)
    if request.status != WithdrawalStatus.admin_approved:
        raise InvalidState(f"Request cannot be processed from status: {request.status.value}")
    await _ensure_locked(db, request)
    now = datetime.now(timezone.utc)
    if not await _transition(
        db, request_id, [WithdrawalStatus.admin_approved], WithdrawalStatus.processing,
        approved_by=admin_id, approved_at=now,
    ):
        raise InvalidState("Request is already being processed")
    return await _get_request(db, request_id)


async def _back_to_approved(db: AsyncSession, request: WithdrawalRequest, error: Exception):
    """The lock could not be burned, so nothing moved: undo `processing`."""
    reverted = await compensate(
        db, "process_send", "revert_status",
        lambda: _transition(db, request.id, [WithdrawalStatus.processing], WithdrawalStatus.admin_approved),
        user_id=request.user_id, asset=request.asset, amount=request.amount,
        context={"request_id": request.id},
    )
    if isinstance(error, LedgerError) and reverted:
        raise error
    raise OperationFailed()


async def _settle_internal(
    db: AsyncSession, request: WithdrawalRequest, processing_type: ProcessingType, tx_hash: Optional[str],
) -> WithdrawalRequest:
    ledger = BalanceLedger(db)
    amount = Decimal(str(request.amount))
    try:
        await ledger.unlock(request.user_id, request.asset, amount, deduct=True)
    except Exception as e:
        logger.error("Failed to burn sender lock for request %s: %s", request.id, e)
        await _back_to_approved(db, request, e)

    try:
        await ledger.credit(request.recipient_user_id, request.asset, amount)
    except Exception as e:
        logger.error("Failed to credit recipient for request %s: %s", request.id, e)
        await compensate(
            db, "internal_transfer", "refund_sender",
            lambda: ledger.credit(request.user_id, request.asset, amount),
            user_id=request.user_id, asset=request.asset, amount=amount,
            context={"request_id": request.id, "recipient_user_id": request.recipient_user_id},
        )
        await _finish(
            db, request, WithdrawalStatus.failed, TransactionStatus.failed,
            tx_values={"notes": "Internal transfer failed"},
            processing_type=processing_type,
        )
        raise OperationFailed()

    now = datetime.now(timezone.utc)
    tx_hash = tx_hash or f"internal_transfer_{request.id}"
    db.add(Transaction(
        user_id=request.recipient_user_id,
        type=TransactionType.deposit,
        amount=amount,
        status=TransactionStatus.completed,
        asset=request.asset,
        to_address=request.to_address,
        tx_hash=tx_hash,
        completed_at=now,
        meta={
            "internal_transfer": True,
            "sender_user_id": request.user_id,
            "sender_transaction_id": request.transaction_id,
        },
    ))
    logger.info("Internal transfer completed: request=%s recipient=%s", request.id, request.recipient_user_id)
    return await _finish(
        db, request, WithdrawalStatus.completed, TransactionStatus.completed,
        tx_values={"completed_at": now, "tx_hash": tx_hash},
        processing_type=processing_type, sent_at=now, tx_hash=tx_hash,
    )


async def _settle_external(db: AsyncSession, request: WithdrawalRequest) -> WithdrawalRequest:
    ledger = BalanceLedger(db)
    amount = Decimal(str(request.amount))
    deployment = await get_deployment(db, request.deployment_symbol)
    currency = deployment.gateway_currency or deployment.symbol

    try:
        result = await gateway.withdraw(currency, request.to_address, amount)
    except gateway.GatewayError as e:
        result = gateway.WithdrawResult(success=False, error=str(e))

    if not result.success:
        logger.error("Gateway payout failed for request %s: %s", request.id, result.error)
        released = await compensate(
            db, "external_withdrawal", "unlock",
            lambda: ledger.unlock(request.user_id, request.asset, amount, deduct=False),
            user_id=request.user_id, asset=request.asset, amount=amount,
            context={"request_id": request.id, "gateway_error": result.error},
        )
        finished = await _finish(
            db, request, WithdrawalStatus.failed, TransactionStatus.failed,
            tx_values={"notes": f"Failed to send via gateway: {result.error}"},
            processing_type=ProcessingType.automatic,
        )
        if not released:
            raise OperationFailed()
        return finished

    try:
        await ledger.unlock(request.user_id, request.asset, amount, deduct=True)
    except Exception as e:
        # the payout already left the platform; the request still completes
        await record_incident(
            db, "external_withdrawal", "burn_lock", f"{type(e).__name__}: {e}",
            user_id=request.user_id, asset=request.asset, amount=amount,
            context={"request_id": request.id, "tx_hash": result.tx_hash},
        )

    now = datetime.now(timezone.utc)
    logger.info("External payout sent: request=%s tx_hash=%s", request.id, result.tx_hash)
    tx_values = {"completed_at": now, "tx_hash": result.tx_hash}
    if result.fee is not None:
        tx_values["network_fee"] = result.fee
    return await _finish(
        db, request, WithdrawalStatus.completed, TransactionStatus.completed,
        tx_values=tx_values,
        processing_type=ProcessingType.automatic, sent_at=now, tx_hash=result.tx_hash,
    )


async def execute(db: AsyncSession, request_id: int, admin_id: int) -> WithdrawalRequest:
    """admin_approved -> processing -> completed | failed."""
    request = await _start_processing(db, request_id, admin_id)
    if request.is_internal_transfer and request.recipient_user_id:
        return await _settle_internal(db, request, ProcessingType.automatic, None)
    return await _settle_external(db, request)


async def mark_sent_manual(db: AsyncSession, request_id: int, admin_id: int, tx_hash: Optional[str] = None) -> WithdrawalRequest:
    """The payout was made off-platform; settle the ledger as if it had been executed."""
    request = await _start_processing(db, request_id, admin_id)
    if request.is_internal_transfer and request.recipient_user_id:
        return await _settle_internal(db, request, ProcessingType.manual, tx_hash)

    amount = Decimal(str(request.amount))
    try:
        await BalanceLedger(db).unlock(request.user_id, request.asset, amount, deduct=True)
    except Exception as e:
        logger.error("Failed to burn lock for manual send %s: %s", request_id, e)
        await _back_to_approved(db, request, e)

    now = datetime.now(timezone.utc)
    logger.info("Send marked as sent manually: request=%s admin=%s tx_hash=%s", request_id, admin_id, tx_hash)
    return await _finish(
        db, request, WithdrawalStatus.completed, TransactionStatus.completed,
        tx_values={"completed_at": now, "tx_hash": tx_hash},
        processing_type=ProcessingType.manual, sent_at=now, tx_hash=tx_hash,
    )


async def list_user_requests(db: AsyncSession, user_id: int, limit: int = 50) -> list[WithdrawalRequest]:
    return list(await db.scalars(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.user_id == user_id)
        .order_by(WithdrawalRequest.id.desc())
        .limit(limit)
    ))


async def list_open_requests(db: AsyncSession) -> list[WithdrawalRequest]:
    return list(await db.scalars(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.status.in_(REJECTABLE))
        .order_by(WithdrawalRequest.id)
    ))
