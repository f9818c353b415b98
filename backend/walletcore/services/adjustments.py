"""Manual balance corrections made from the admin back-office."""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from walletcore.core.exceptions import OperationFailed
from walletcore.models.transaction import Transaction, TransactionType, TransactionStatus
from walletcore.services.ledger import BalanceLedger, BalanceState, parse_amount
from walletcore.services.reconciliation import compensate

logger = logging.getLogger(__name__)


async def adjust_balance(
    db: AsyncSession,
    admin_id: int,
    user_id: int,
    asset: str,
    amount,
    direction: str,
    reason: Optional[str] = None,
) -> BalanceState:
    amount = parse_amount(amount)
    ledger = BalanceLedger(db)
    if direction == "credit":
        state = await ledger.credit(user_id, asset, amount)
        reverse = lambda: ledger.debit(user_id, asset, amount)
    else:
        state = await ledger.debit(user_id, asset, amount)
        reverse = lambda: ledger.credit(user_id, asset, amount)

    try:
        db.add(Transaction(
            user_id=user_id,
            type=TransactionType.admin_adjustment,
            amount=amount,
            status=TransactionStatus.completed,
            asset=asset,
            notes=reason,
            completed_at=datetime.now(timezone.utc),
            meta={"direction": direction, "admin_id": admin_id},
        ))
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error("Failed to record balance adjustment for user %s: %s", user_id, e)
        await compensate(
            db, "admin_adjustment", f"reverse_{direction}", reverse,
            user_id=user_id, asset=asset, amount=amount, context={"admin_id": admin_id},
        )
        raise OperationFailed()

    logger.info(
        "Balance adjusted by admin %s: user=%s %s %s %s reason=%s",
        admin_id, user_id, direction, amount, asset, reason,
    )
    return state
