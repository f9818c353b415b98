from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from walletcore.database import get_db
from walletcore.core.deps import get_current_user
from walletcore.models.user import User
from walletcore.models.balance import Balance
from walletcore.models.transaction import Transaction, TransactionType
from walletcore.services.ledger import BalanceState

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


def _tx_dict(tx: Transaction) -> dict:
    return {
        "id": tx.id,
        "type": tx.type,
        "amount": float(tx.amount),
        "status": tx.status,
        "asset": tx.asset,
        "to_address": tx.to_address,
        "tx_hash": tx.tx_hash,
        "network_fee": float(tx.network_fee) if tx.network_fee is not None else None,
        "notes": tx.notes,
        "metadata": tx.meta or {},
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
        "completed_at": tx.completed_at.isoformat() if tx.completed_at else None,
    }


@router.get("")
async def get_wallet(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    balances = list(await db.scalars(
        select(Balance).where(Balance.user_id == user.id).order_by(Balance.asset)
    ))
    result = []
    for b in balances:
        state = BalanceState(Decimal(str(b.balance or 0)), Decimal(str(b.locked_balance or 0)))
        result.append({"asset": b.asset, **{k: float(v) for k, v in state.to_dict().items()}})
    return result


@router.get("/transactions")
async def list_transactions(
    type: Optional[TransactionType] = None,
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = select(Transaction).where(Transaction.user_id == user.id)
    if type is not None:
        query = query.where(Transaction.type == type)
    txs = await db.scalars(query.order_by(Transaction.id.desc()).limit(limit))
    return [_tx_dict(tx) for tx in txs]
