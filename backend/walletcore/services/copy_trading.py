"""
Copy-trading positions: start, claim from waitlist, stop.

Opening a position debits the allocation from the user's USDT balance first,
then writes the position, the trader's counters and the audit transaction in
one commit. The trader counters are bumped with a conditional UPDATE
(`current_copiers < max_copiers`) inside that same commit, so concurrent
claimants can never push a trader past capacity. If that commit fails the
allocation is credited back.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from sqlalchemy import select, update, delete, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from walletcore.config import settings
from walletcore.core.exceptions import (
    LedgerError, CapacityFilled, ClaimExpired, DuplicatePosition, InvalidState, NotFound, OperationFailed,
)
from walletcore.models.copy_trade import (
    Trader, CopyPosition, PositionStatus, TraderWaitlist, WaitlistStatus,
)
from walletcore.models.transaction import Transaction, TransactionType, TransactionStatus
from walletcore.services.ledger import BalanceLedger, parse_amount, QUANT
from walletcore.services.pnl_simulator import initialize_simulation_params, daily_pnl_rate, as_utc
from walletcore.services.reconciliation import compensate

logger = logging.getLogger(__name__)

OPEN_WAITLIST = (WaitlistStatus.waiting, WaitlistStatus.notified)
STOP_ATTEMPTS = 3


def _clock() -> datetime:
    return datetime.now(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now else _clock()


async def list_traders(db: AsyncSession) -> list[Trader]:
    return list(await db.scalars(
        select(Trader).where(Trader.is_active == True).order_by(Trader.id)
    ))


async def get_trader(db: AsyncSession, trader_id: int) -> Trader:
    trader = await db.scalar(
        select(Trader)
        .where(Trader.id == trader_id, Trader.is_active == True)
        .execution_options(populate_existing=True)
    )
    if not trader:
        raise NotFound("Trader not found")
    return trader


async def create_trader(db: AsyncSession, **fields) -> Trader:
    trader = Trader(**fields)
    db.add(trader)
    await db.commit()
    await db.refresh(trader)
    logger.info("Trader created: id=%s name=%s max_copiers=%s", trader.id, trader.name, trader.max_copiers)
    return trader


def remaining_capacity(trader: Trader) -> int:
    return max(0, trader.max_copiers - trader.current_copiers)


async def _has_active_position(db: AsyncSession, user_id: int, trader_id: int) -> bool:
    found = await db.scalar(
        select(CopyPosition.id).where(
            CopyPosition.user_id == user_id,
            CopyPosition.trader_id == trader_id,
            CopyPosition.status == PositionStatus.active,
        )
    )
    return found is not None


async def _persist_position(
    db: AsyncSession,
    user_id: int,
    trader: Trader,
    amount: Decimal,
    now: datetime,
    waitlist_entry_id: Optional[int],
    claim_started: Optional[datetime] = None,
) -> CopyPosition:
    result = await db.execute(
        update(Trader)
        .where(Trader.id == trader.id, Trader.is_active == True, Trader.current_copiers < Trader.max_copiers)
        .values(current_copiers=Trader.current_copiers + 1, aum_usdt=Trader.aum_usdt + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CapacityFilled()

    if waitlist_entry_id is not None:
        # the claim window is re-checked at commit time, not just when the claim began
        checked_at = now + (_clock() - claim_started) if claim_started else now
        claimed = await db.execute(
            update(TraderWaitlist)
            .where(
                TraderWaitlist.id == waitlist_entry_id,
                TraderWaitlist.status == WaitlistStatus.notified,
                TraderWaitlist.claim_expires_at > checked_at,
            )
            .values(status=WaitlistStatus.claimed, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            entry = await db.get(TraderWaitlist, waitlist_entry_id, populate_existing=True)
            if entry is not None and (
                entry.status == WaitlistStatus.expired
                or entry.claim_expires_at is None
                or as_utc(entry.claim_expires_at) <= checked_at
            ):
                raise ClaimExpired()
            raise InvalidState("Claim is no longer valid")

    params = initialize_simulation_params(
        trader.historical_roi_min, trader.historical_roi_max, trader.risk_level, trader.max_drawdown, float(amount),
    )
    rate = daily_pnl_rate(float(amount), trader.historical_roi_min, trader.historical_roi_max)
    position = CopyPosition(
        user_id=user_id,
        trader_id=trader.id,
        allocation_usdt=amount,
        current_pnl=Decimal("0"),
        daily_pnl_rate=Decimal(str(rate)).quantize(QUANT, rounding=ROUND_DOWN),
        simulation_params=params.to_dict(),
        status=PositionStatus.active,
        version=0,
        started_at=now,
    )
    db.add(position)
    db.add(Transaction(
        user_id=user_id,
        type=TransactionType.copy_trade_start,
        amount=amount,
        status=TransactionStatus.completed,
        asset=settings.USDT_ASSET,
        completed_at=now,
        meta={"trader_id": trader.id, "trader_name": trader.name, "waitlist_entry_id": waitlist_entry_id},
    ))
    await db.commit()
    return position


async def _open_position(
    db: AsyncSession,
    user_id: int,
    trader: Trader,
    amount: Decimal,
    now: datetime,
    waitlist_entry_id: Optional[int] = None,
    claim_started: Optional[datetime] = None,
) -> CopyPosition:
    asset = settings.USDT_ASSET
    trader_id = trader.id
    ledger = BalanceLedger(db)
    await ledger.debit(user_id, asset, amount)

    try:
        position = await _persist_position(db, user_id, trader, amount, now, waitlist_entry_id, claim_started)
    except Exception as e:
        await db.rollback()
        if not isinstance(e, LedgerError):
            logger.error("Failed to open copy position user=%s trader=%s: %s", user_id, trader_id, e)
        refunded = await compensate(
            db, "start_copy", "refund_allocation",
            lambda: ledger.credit(user_id, asset, amount),
            user_id=user_id, asset=asset, amount=amount,
            context={"trader_id": trader_id, "waitlist_entry_id": waitlist_entry_id},
        )
        if not refunded:
            raise OperationFailed()
        if isinstance(e, LedgerError):
            logger.warning("Copy start rejected after debit, refunded: user=%s trader=%s %s", user_id, trader_id, e)
            raise
        if isinstance(e, IntegrityError):
            # partial unique index on active (user, trader)
            raise DuplicatePosition()
        raise OperationFailed()

    logger.info(
        "Copy position opened: position=%s user=%s trader=%s allocation=%s",
        position.id, user_id, trader_id, amount,
    )
    return position


async def start_copy(db: AsyncSession, user_id: int, trader_id: int, amount, now: Optional[datetime] = None) -> CopyPosition:
    amount = parse_amount(amount)
    trader = await get_trader(db, trader_id)
    if trader.current_copiers >= trader.max_copiers:
        raise CapacityFilled(remaining=0)
    if await _has_active_position(db, user_id, trader_id):
        raise DuplicatePosition()
    return await _open_position(db, user_id, trader, amount, _now(now))


async def _get_claim(db: AsyncSession, token: str, now: datetime) -> TraderWaitlist:
    entry = await db.scalar(
        select(TraderWaitlist)
        .where(TraderWaitlist.claim_token == token)
        .execution_options(populate_existing=True)
    )
    if not entry or entry.status not in (WaitlistStatus.notified, WaitlistStatus.expired):
        raise NotFound("Invalid or already used claim token")
    if entry.status == WaitlistStatus.expired or entry.claim_expires_at is None or now >= as_utc(entry.claim_expires_at):
        raise ClaimExpired()
    return entry


async def claim_info(db: AsyncSession, token: str, now: Optional[datetime] = None) -> dict:
    now = _now(now)
    entry = await _get_claim(db, token, now)
    trader = await get_trader(db, entry.trader_id)
    expires_at = as_utc(entry.claim_expires_at)
    return {
        "trader": trader,
        "user_id": entry.user_id,
        "expires_at": expires_at,
        "seconds_remaining": int((expires_at - now).total_seconds()),
        "remaining_capacity": remaining_capacity(trader),
    }


async def claim_waitlist(
    db: AsyncSession, user_id: int, token: str, amount, now: Optional[datetime] = None,
) -> CopyPosition:
    """Take a freed slot with a time-boxed claim token."""
    amount = parse_amount(amount)
    started = _clock()
    now = _now(now)
    entry = await _get_claim(db, token, now)
    if entry.user_id != user_id:
        raise NotFound("Invalid or already used claim token")
    trader = await get_trader(db, entry.trader_id)
    if trader.current_copiers >= trader.max_copiers:
        logger.warning("Claim for trader %s lost the race: trader is full", trader.id)
        raise CapacityFilled("Another user claimed this spot first", remaining=0)
    if await _has_active_position(db, user_id, trader.id):
        raise DuplicatePosition()
    return await _open_position(db, user_id, trader, amount, now, waitlist_entry_id=entry.id, claim_started=started)


def _settlement(position: CopyPosition, fee_percent) -> tuple[Decimal, Decimal, Decimal]:
    """(final_pnl, performance_fee, payout). Losses beyond the allocation are absorbed."""
    allocation = Decimal(str(position.allocation_usdt))
    pnl = Decimal(str(position.current_pnl or 0)).quantize(QUANT, rounding=ROUND_DOWN)
    fee = Decimal("0")
    fee_percent = Decimal(str(fee_percent or 0))
    if pnl > 0 and fee_percent > 0:
        fee = (pnl * fee_percent / 100).quantize(QUANT, rounding=ROUND_DOWN)
    payout = max(Decimal("0"), allocation + pnl - fee)
    return pnl, fee, payout


def stop_payout(position: CopyPosition) -> Decimal:
    allocation = Decimal(str(position.allocation_usdt))
    final_pnl = Decimal(str(position.final_pnl or 0))
    fee = Decimal(str(position.performance_fee_paid or 0))
    return max(Decimal("0"), allocation + final_pnl - fee)


async def _get_position(db: AsyncSession, user_id: int, position_id: int) -> CopyPosition:
    position = await db.scalar(
        select(CopyPosition)
        .where(CopyPosition.id == position_id, CopyPosition.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    if not position:
        raise NotFound("Position not found")
    # detached snapshot: ledger rollbacks must not expire it mid-operation
    db.expunge(position)
    return position


async def _freeze_position(db: AsyncSession, position: CopyPosition, now: datetime) -> Optional[tuple]:
    """Mark the position stopped at its current version. None if a tick got there first."""
    trader = await db.get(Trader, position.trader_id)
    pnl, fee, payout = _settlement(position, trader.performance_fee_percent if trader else 0)
    allocation = Decimal(str(position.allocation_usdt))
    result = await db.execute(
        update(CopyPosition)
        .where(
            CopyPosition.id == position.id,
            CopyPosition.status == PositionStatus.active,
            CopyPosition.version == position.version,
        )
        .values(
            status=PositionStatus.stopped,
            stopped_at=now,
            current_pnl=pnl,
            final_pnl=pnl,
            performance_fee_paid=fee,
            version=CopyPosition.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return None
    await db.execute(
        update(Trader)
        .where(Trader.id == position.trader_id)
        .values(
            current_copiers=case((Trader.current_copiers > 0, Trader.current_copiers - 1), else_=0),
            aum_usdt=Trader.aum_usdt - allocation,
            lifetime_earnings_usdt=Trader.lifetime_earnings_usdt + fee,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return pnl, fee, payout


async def _revert_stop(db: AsyncSession, position: CopyPosition, fee: Decimal) -> None:
    allocation = Decimal(str(position.allocation_usdt))
    result = await db.execute(
        update(CopyPosition)
        .where(CopyPosition.id == position.id, CopyPosition.status == PositionStatus.stopped)
        .values(
            status=PositionStatus.active,
            stopped_at=None,
            final_pnl=None,
            performance_fee_paid=None,
            version=CopyPosition.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidState("Position is no longer stopped")
    await db.execute(
        update(Trader)
        .where(Trader.id == position.trader_id)
        .values(
            current_copiers=Trader.current_copiers + 1,
            aum_usdt=Trader.aum_usdt + allocation,
            lifetime_earnings_usdt=Trader.lifetime_earnings_usdt - fee,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def stop_copy(db: AsyncSession, user_id: int, position_id: int, now: Optional[datetime] = None) -> CopyPosition:
    """Freeze P&L, release the trader slot and pay out max(0, allocation + pnl - fee)."""
    now = _now(now)
    settled = None
    for _ in range(STOP_ATTEMPTS):
        position = await _get_position(db, user_id, position_id)
        if position.status != PositionStatus.active:
            raise InvalidState("Position is not active")
        settled = await _freeze_position(db, position, now)
        if settled is not None:
            break
        logger.info("Position %s changed during stop, retrying", position_id)
    if settled is None:
        raise InvalidState("Position is being updated, please retry")

    pnl, fee, payout = settled
    asset = settings.USDT_ASSET
    if payout > 0:
        ledger = BalanceLedger(db)
        try:
            await ledger.credit(user_id, asset, payout)
        except Exception as e:
            logger.error("Failed to credit stop payout for position %s: %s", position_id, e)
            await compensate(
                db, "stop_copy", "revert_stop",
                lambda: _revert_stop(db, position, fee),
                user_id=user_id, asset=asset, amount=payout,
                context={"position_id": position_id, "final_pnl": pnl},
            )
            raise OperationFailed()

    db.add(Transaction(
        user_id=user_id,
        type=TransactionType.copy_trade_stop,
        amount=payout,
        status=TransactionStatus.completed,
        asset=asset,
        completed_at=now,
        meta={
            "position_id": position_id,
            "trader_id": position.trader_id,
            "allocation": str(position.allocation_usdt),
            "final_pnl": str(pnl),
            "performance_fee": str(fee),
        },
    ))
    await db.commit()
    logger.info(
        "Copy position stopped: position=%s user=%s final_pnl=%s fee=%s payout=%s",
        position_id, user_id, pnl, fee, payout,
    )
    return await _get_position(db, user_id, position_id)


async def list_positions(db: AsyncSession, user_id: int, status: Optional[PositionStatus] = None) -> list[CopyPosition]:
    query = select(CopyPosition).where(CopyPosition.user_id == user_id).order_by(CopyPosition.id.desc())
    if status is not None:
        query = query.where(CopyPosition.status == status)
    return list(await db.scalars(query.execution_options(populate_existing=True)))


async def join_waitlist(db: AsyncSession, user_id: int, trader_id: int) -> TraderWaitlist:
    trader = await get_trader(db, trader_id)
    if trader.current_copiers < trader.max_copiers:
        raise InvalidState("Trader has open slots, start copying directly", remaining=remaining_capacity(trader))
    if await _has_active_position(db, user_id, trader_id):
        raise DuplicatePosition()
    existing = await db.scalar(
        select(TraderWaitlist.id).where(
            TraderWaitlist.user_id == user_id,
            TraderWaitlist.trader_id == trader_id,
            TraderWaitlist.status.in_(OPEN_WAITLIST),
        )
    )
    if existing:
        raise InvalidState("Already on the waitlist for this trader")

    ahead = await db.scalar(
        select(func.count(TraderWaitlist.id)).where(
            TraderWaitlist.trader_id == trader_id,
            TraderWaitlist.status == WaitlistStatus.waiting,
        )
    )
    entry = TraderWaitlist(
        user_id=user_id,
        trader_id=trader_id,
        status=WaitlistStatus.waiting,
        position_in_queue=(ahead or 0) + 1,
    )
    db.add(entry)
    await db.commit()
    logger.info("Waitlist joined: user=%s trader=%s position=%s", user_id, trader_id, entry.position_in_queue)
    return entry


async def leave_waitlist(db: AsyncSession, user_id: int, trader_id: int) -> None:
    result = await db.execute(
        delete(TraderWaitlist)
        .where(
            TraderWaitlist.user_id == user_id,
            TraderWaitlist.trader_id == trader_id,
            TraderWaitlist.status.in_(OPEN_WAITLIST),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("Not on the waitlist for this trader")
    await db.commit()
    logger.info("Waitlist left: user=%s trader=%s", user_id, trader_id)
