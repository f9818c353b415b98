"""
Periodic copy-trading tick: advance P&L, hand freed slots to the waitlist,
expire unclaimed slots. Runs at most once per 5-minute bucket across all
instances (Redis SET NX on the bucket key).
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from walletcore.config import settings
from walletcore.core.redis import get_redis
from walletcore.database import AsyncSessionLocal
from walletcore.models.copy_trade import Trader, CopyPosition, PositionStatus, TraderWaitlist, WaitlistStatus
from walletcore.models.notification import Notification
from walletcore.services.ledger import QUANT
from walletcore.services.pnl_simulator import (
    SimulationParams, advance, bucket_start, initialize_simulation_params, as_utc,
)

logger = logging.getLogger(__name__)

TICK_LOCK_TTL = 600


async def claim_bucket(now: datetime) -> bool:
    """True for the first caller in this bucket, on any instance."""
    redis = await get_redis()
    key = f"copy_trade:tick:{bucket_start(now).isoformat()}"
    return bool(await redis.set(key, "1", nx=True, ex=TICK_LOCK_TTL))


def _params_for(row) -> SimulationParams:
    if row.simulation_params:
        return SimulationParams.from_dict(row.simulation_params)
    return initialize_simulation_params(
        row.historical_roi_min, row.historical_roi_max, row.risk_level,
        row.max_drawdown, float(row.allocation_usdt),
    )


async def advance_positions(db: AsyncSession, now: datetime) -> int:
    # plain rows: a rollback on one position must not expire the rest
    rows = (await db.execute(
        select(
            CopyPosition.id, CopyPosition.trader_id, CopyPosition.allocation_usdt, CopyPosition.current_pnl,
            CopyPosition.simulation_params, CopyPosition.started_at, CopyPosition.version,
            Trader.historical_roi_min, Trader.historical_roi_max, Trader.risk_level, Trader.max_drawdown,
        )
        .join(Trader, Trader.id == CopyPosition.trader_id)
        .where(CopyPosition.status == PositionStatus.active)
        .order_by(CopyPosition.id)
    )).all()

    updated = 0
    for position in rows:
        try:
            params = _params_for(position)
            new_pnl, momentum = advance(
                float(position.allocation_usdt),
                float(position.current_pnl or 0),
                params,
                position.started_at,
                position.trader_id,
                now,
            )
            params.momentum = momentum
            result = await db.execute(
                update(CopyPosition)
                .where(
                    CopyPosition.id == position.id,
                    CopyPosition.status == PositionStatus.active,
                    CopyPosition.version == position.version,
                )
                .values(
                    current_pnl=Decimal(str(new_pnl)).quantize(QUANT, rounding=ROUND_HALF_UP),
                    simulation_params=params.to_dict(),
                    version=CopyPosition.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                updated += 1
            else:
                # stopped or touched concurrently; the next tick picks it up
                logger.debug("Skipped PnL update for position %s", position.id)
        except Exception as e:
            await db.rollback()
            logger.error("PnL tick error for position %s: %s", position.id, e)
    return updated


async def notify_waitlist(db: AsyncSession, now: datetime) -> int:
    traders = list(await db.scalars(
        select(Trader).where(Trader.is_active == True, Trader.current_copiers < Trader.max_copiers)
    ))
    notified = 0
    for trader in traders:
        outstanding = await db.scalar(
            select(func.count(TraderWaitlist.id)).where(
                TraderWaitlist.trader_id == trader.id,
                TraderWaitlist.status == WaitlistStatus.notified,
                TraderWaitlist.claim_expires_at > now,
            )
        )
        slots = trader.max_copiers - trader.current_copiers - (outstanding or 0)
        if slots <= 0:
            continue
        entries = list(await db.scalars(
            select(TraderWaitlist)
            .where(TraderWaitlist.trader_id == trader.id, TraderWaitlist.status == WaitlistStatus.waiting)
            .order_by(TraderWaitlist.position_in_queue, TraderWaitlist.id)
            .limit(slots)
        ))
        expires_at = now + timedelta(hours=settings.CLAIM_WINDOW_HOURS)
        for entry in entries:
            entry.status = WaitlistStatus.notified
            entry.claim_token = uuid.uuid4().hex
            entry.claim_expires_at = expires_at
            entry.notified_at = now
            db.add(Notification(
                user_id=entry.user_id,
                type="copy_trade_slot",
                title=f"A spot opened up with {trader.name}",
                body=(
                    f"You can now copy {trader.name}. Claim your spot within "
                    f"{settings.CLAIM_WINDOW_HOURS} hours using token {entry.claim_token}."
                ),
            ))
            notified += 1
        await db.commit()
        if entries:
            logger.info("Waitlist notified: trader=%s users=%s", trader.id, [e.user_id for e in entries])
    return notified


async def expire_claims(db: AsyncSession, now: datetime) -> int:
    result = await db.execute(
        update(TraderWaitlist)
        .where(TraderWaitlist.status == WaitlistStatus.notified, TraderWaitlist.claim_expires_at <= now)
        .values(status=WaitlistStatus.expired)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def run_tick(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    now = as_utc(now) if now else datetime.now(timezone.utc)
    bucket = bucket_start(now).isoformat()
    if not await claim_bucket(now):
        logger.info("Copy-trade tick for bucket %s already ran", bucket)
        return {"bucket": bucket, "skipped": True}

    expired = await expire_claims(db, now)
    positions = await advance_positions(db, now)
    notified = await notify_waitlist(db, now)
    logger.info(
        "Copy-trade tick %s: positions=%s notified=%s expired=%s", bucket, positions, notified, expired,
    )
    return {"bucket": bucket, "skipped": False, "positions": positions, "notified": notified, "expired": expired}


def seconds_until_next_tick(now: datetime, interval: int) -> float:
    """Time to the next interval boundary, so wake-ups stay aligned to buckets."""
    epoch = now.timestamp()
    return interval - (epoch % interval)


async def copy_trade_tick_loop():
    while True:
        try:
            async with AsyncSessionLocal() as db:
                await run_tick(db)
        except Exception as e:
            logger.error("Copy-trade tick error: %s", e)
        await asyncio.sleep(seconds_until_next_tick(datetime.now(timezone.utc), settings.COPY_TRADE_TICK_SECONDS))
