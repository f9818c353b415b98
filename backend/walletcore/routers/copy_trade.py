from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from walletcore.database import get_db
from walletcore.core.deps import get_current_user, require_copy_trade_enabled
from walletcore.models.user import User
from walletcore.models.copy_trade import Trader, CopyPosition, PositionStatus
from walletcore.schemas.copy_trade import StartCopyRequest, StopCopyRequest, WaitlistRequest, ClaimRequest
from walletcore.services import copy_trading

router = APIRouter(
    prefix="/api/copy-trade",
    tags=["copy-trade"],
    dependencies=[Depends(require_copy_trade_enabled)],
)


def trader_dict(t: Trader) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "risk_level": t.risk_level,
        "historical_roi_min": float(t.historical_roi_min),
        "historical_roi_max": float(t.historical_roi_max),
        "max_drawdown": float(t.max_drawdown),
        "max_copiers": t.max_copiers,
        "current_copiers": t.current_copiers,
        "remaining_capacity": copy_trading.remaining_capacity(t),
        "aum_usdt": float(t.aum_usdt or 0),
        "performance_fee_percent": float(t.performance_fee_percent or 0),
    }


def position_dict(p: CopyPosition) -> dict:
    return {
        "id": p.id,
        "trader_id": p.trader_id,
        "allocation_usdt": float(p.allocation_usdt),
        "current_pnl": float(p.current_pnl or 0),
        "daily_pnl_rate": float(p.daily_pnl_rate or 0),
        "status": p.status,
        "started_at": p.started_at.isoformat() if p.started_at else None,
        "stopped_at": p.stopped_at.isoformat() if p.stopped_at else None,
        "final_pnl": float(p.final_pnl) if p.final_pnl is not None else None,
        "performance_fee_paid": float(p.performance_fee_paid) if p.performance_fee_paid is not None else None,
    }


@router.get("/traders")
async def list_traders(db: AsyncSession = Depends(get_db)):
    return [trader_dict(t) for t in await copy_trading.list_traders(db)]


@router.post("/start", status_code=201)
async def start_copy(
    body: StartCopyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    position = await copy_trading.start_copy(db, user.id, body.trader_id, body.amount)
    return position_dict(position)


@router.post("/stop")
async def stop_copy(
    body: StopCopyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    position = await copy_trading.stop_copy(db, user.id, body.position_id)
    return {**position_dict(position), "payout": float(copy_trading.stop_payout(position))}


@router.get("/positions")
async def list_positions(
    status: Optional[PositionStatus] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return [position_dict(p) for p in await copy_trading.list_positions(db, user.id, status)]


@router.post("/waitlist/join", status_code=201)
async def join_waitlist(
    body: WaitlistRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    entry = await copy_trading.join_waitlist(db, user.id, body.trader_id)
    return {"trader_id": entry.trader_id, "status": entry.status, "position_in_queue": entry.position_in_queue}


@router.post("/waitlist/leave")
async def leave_waitlist(
    body: WaitlistRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await copy_trading.leave_waitlist(db, user.id, body.trader_id)
    return {"message": "Removed from waitlist"}


@router.get("/claim/{token}")
async def claim_info(token: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    info = await copy_trading.claim_info(db, token)
    return {
        "trader": trader_dict(info["trader"]),
        "expires_at": info["expires_at"].isoformat(),
        "seconds_remaining": info["seconds_remaining"],
        "remaining_capacity": info["remaining_capacity"],
    }


@router.post("/claim/{token}", status_code=201)
async def claim_spot(
    token: str,
    body: ClaimRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    position = await copy_trading.claim_waitlist(db, user.id, token, body.amount)
    return position_dict(position)
