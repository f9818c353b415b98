from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from walletcore.database import get_db
from walletcore.core.deps import require_admin, require_super_admin
from walletcore.core.rate_limit import rate_limited
from walletcore.models.user import User
from walletcore.models.withdrawal import WithdrawalStatus
from walletcore.models.reconciliation import ReconciliationIncident, IncidentStatus
from walletcore.schemas.admin import AdjustBalanceRequest, CreateTraderRequest
from walletcore.schemas.send import RejectRequest, MarkSentRequest
from walletcore.services import withdrawals, copy_trading
from walletcore.services.adjustments import adjust_balance
from walletcore.services.copy_trade_tick import run_tick
from walletcore.services.reconciliation import list_incidents, resolve_incident
from walletcore.routers.send import request_dict
from walletcore.routers.copy_trade import trader_dict

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _incident_dict(i: ReconciliationIncident) -> dict:
    return {
        "id": i.id,
        "operation": i.operation,
        "step": i.step,
        "user_id": i.user_id,
        "asset": i.asset,
        "amount": float(i.amount) if i.amount is not None else None,
        "error": i.error,
        "context": i.context or {},
        "status": i.status,
        "created_at": i.created_at.isoformat() if i.created_at else None,
        "resolved_at": i.resolved_at.isoformat() if i.resolved_at else None,
        "resolved_by": i.resolved_by,
    }


# ---------------------------------------------------------------------------
# Sends
# ---------------------------------------------------------------------------

@router.get("/sends/pending")
async def list_pending_sends(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return [request_dict(r) for r in await withdrawals.list_open_requests(db)]


@router.post("/sends/{request_id}/admin-approve")
async def admin_approve_send(
    request_id: int,
    admin: User = Depends(rate_limited("send_admin_approve")),
    db: AsyncSession = Depends(get_db),
):
    request = await withdrawals.admin_approve(db, request_id, admin.id)
    return {"message": "Send approved, awaiting final approval", "request": request_dict(request)}


@router.post("/sends/{request_id}/reject")
async def reject_send(
    request_id: int,
    body: RejectRequest,
    admin: User = Depends(rate_limited("send_reject")),
    db: AsyncSession = Depends(get_db),
):
    request = await withdrawals.reject(db, request_id, admin.id, body.reason)
    return {"message": "Send rejected, funds returned to user", "request": request_dict(request)}


@router.post("/sends/{request_id}/super-admin-approve")
async def super_admin_approve_send(
    request_id: int,
    admin: User = Depends(rate_limited("send_execute", require_super_admin)),
    db: AsyncSession = Depends(get_db),
):
    request = await withdrawals.execute(db, request_id, admin.id)
    if request.status == WithdrawalStatus.failed:
        raise HTTPException(502, "Failed to send via gateway; funds returned to user")
    return {"message": "Send completed", "request": request_dict(request)}


@router.post("/sends/{request_id}/mark-sent-manual")
async def mark_send_manual(
    request_id: int,
    body: MarkSentRequest,
    admin: User = Depends(rate_limited("send_mark_manual")),
    db: AsyncSession = Depends(get_db),
):
    request = await withdrawals.mark_sent_manual(db, request_id, admin.id, body.tx_hash)
    return {"message": "Send marked as sent", "request": request_dict(request)}


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------

@router.post("/adjust-balance")
async def adjust_user_balance(
    body: AdjustBalanceRequest,
    admin: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    if not await db.get(User, body.user_id):
        raise HTTPException(404, "User not found")
    state = await adjust_balance(db, admin.id, body.user_id, body.asset, body.amount, body.direction, body.reason)
    return {"user_id": body.user_id, "asset": body.asset, **{k: float(v) for k, v in state.to_dict().items()}}


# ---------------------------------------------------------------------------
# Copy trading
# ---------------------------------------------------------------------------

@router.get("/traders")
async def list_traders(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return [trader_dict(t) for t in await copy_trading.list_traders(db)]


@router.post("/traders", status_code=201)
async def create_trader(
    body: CreateTraderRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if body.historical_roi_min > body.historical_roi_max:
        raise HTTPException(400, "historical_roi_min must not exceed historical_roi_max")
    trader = await copy_trading.create_trader(db, **body.model_dump())
    return trader_dict(trader)


@router.post("/copy-trade/tick")
async def trigger_tick(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return await run_tick(db)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@router.get("/reconciliation")
async def get_incidents(
    status: Optional[IncidentStatus] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return [_incident_dict(i) for i in await list_incidents(db, status)]


@router.post("/reconciliation/{incident_id}/resolve")
async def resolve(
    incident_id: int,
    admin: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    incident = await resolve_incident(db, incident_id, admin.id)
    return _incident_dict(incident)
