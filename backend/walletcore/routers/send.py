from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from walletcore.database import get_db
from walletcore.core.deps import get_current_user
from walletcore.models.user import User
from walletcore.models.withdrawal import WithdrawalRequest
from walletcore.schemas.send import SendRequest
from walletcore.services import withdrawals

router = APIRouter(prefix="/api/send", tags=["send"])


def request_dict(r: WithdrawalRequest) -> dict:
    return {
        "id": r.id,
        "transaction_id": r.transaction_id,
        "user_id": r.user_id,
        "asset": r.asset,
        "deployment_symbol": r.deployment_symbol,
        "amount": float(r.amount),
        "to_address": r.to_address,
        "status": r.status,
        "is_internal_transfer": bool(r.is_internal_transfer),
        "recipient_user_id": r.recipient_user_id,
        "processing_type": r.processing_type,
        "rejection_reason": r.rejection_reason,
        "tx_hash": r.tx_hash,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "admin_approved_at": r.admin_approved_at.isoformat() if r.admin_approved_at else None,
        "sent_at": r.sent_at.isoformat() if r.sent_at else None,
    }


@router.post("/estimate-fee")
async def estimate_fee(
    body: SendRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    estimate = await withdrawals.estimate_fee(db, user.id, body.deployment_symbol, body.to_address, body.amount)
    return {
        "fee": float(estimate["fee"]),
        "currency": estimate["currency"],
        "source": estimate["source"],
    }


@router.post("/request", status_code=201)
async def create_request(
    body: SendRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    request = await withdrawals.create_send_request(
        db, user.id, body.deployment_symbol, body.to_address, body.amount,
    )
    return {
        "message": "Send request submitted for approval",
        "request": request_dict(request),
    }


@router.get("/requests")
async def list_requests(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    requests = await withdrawals.list_user_requests(db, user.id)
    return [request_dict(r) for r in requests]
