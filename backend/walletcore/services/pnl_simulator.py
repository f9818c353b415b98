"""
Copy-trading P&L simulator.

Position value follows geometric Brownian motion with mean reversion toward
the trader's target trajectory:

    change = drift + volatility*Z + mean_reversion + momentum

Z is a standard normal seeded only by (trader id, 5-minute bucket), so every
copier of a trader sees the same shock in the same window and any tick can be
replayed. Results are bounded below by the trader's max drawdown and a single
tick can never move more than 5% of the allocation.

Everything here is pure: no I/O, no wall clock, no global random state.
"""
import hashlib
import math
import random
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Tuple

TICK_SECONDS = 300
TICKS_PER_DAY = 288
DT = 1 / TICKS_PER_DAY

# daily standard deviation by trader risk level
VOLATILITY_MAP = {
    "low": 0.008,
    "medium": 0.015,
    "high": 0.025,
}
DEFAULT_VOLATILITY = 0.015
DEFAULT_MAX_DRAWDOWN = 0.20

MEAN_REVERSION_STRENGTH = 0.1
MOMENTUM_DECAY = 0.95
MOMENTUM_SHOCK_WEIGHT = 0.3
MOMENTUM_IMPACT = 0.5
FLOOR_BOUNCE_MAX = 0.01     # fraction of allocation
MAX_TICK_CHANGE = 0.05      # fraction of allocation


@dataclass
class SimulationParams:
    target_monthly_roi: float
    daily_drift: float
    daily_volatility: float
    max_drawdown_usdt: float    # negative: the P&L floor
    momentum: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationParams":
        return cls(
            target_monthly_roi=float(data["target_monthly_roi"]),
            daily_drift=float(data["daily_drift"]),
            daily_volatility=float(data["daily_volatility"]),
            max_drawdown_usdt=float(data["max_drawdown_usdt"]),
            momentum=float(data.get("momentum", 0.0)),
        )


def _risk_key(risk_level) -> str:
    return getattr(risk_level, "value", risk_level) or "medium"


def monthly_roi_target(roi_min: float, roi_max: float) -> float:
    return (float(roi_min) + float(roi_max)) / 2


def daily_pnl_rate(allocation: float, roi_min: float, roi_max: float) -> float:
    """Display-only linear estimate of daily P&L."""
    return allocation * ((monthly_roi_target(roi_min, roi_max) / 100) / 30)


def initialize_simulation_params(
    roi_min: float,
    roi_max: float,
    risk_level,
    max_drawdown: Optional[float],
    allocation: float,
) -> SimulationParams:
    target = monthly_roi_target(roi_min, roi_max)
    drawdown = float(max_drawdown) if max_drawdown else DEFAULT_MAX_DRAWDOWN
    return SimulationParams(
        target_monthly_roi=target,
        daily_drift=math.pow(1 + target / 100, 1 / 30) - 1,
        daily_volatility=VOLATILITY_MAP.get(_risk_key(risk_level), DEFAULT_VOLATILITY),
        max_drawdown_usdt=-(float(allocation) * drawdown),
        momentum=0.0,
    )


def as_utc(ts: datetime) -> datetime:
    # naive timestamps (e.g. read back from SQLite) are UTC
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def bucket_start(now: datetime) -> datetime:
    """Floor a timestamp to its 5-minute bucket (UTC)."""
    epoch = int(as_utc(now).timestamp())
    return datetime.fromtimestamp(epoch - epoch % TICK_SECONDS, tz=timezone.utc)


def _seeded_rng(trader_id, now: datetime, salt: str) -> random.Random:
    seed = f"{trader_id}_{bucket_start(now).isoformat()}_{salt}"
    digest = hashlib.sha256(seed.encode()).digest()
    return random.Random(int.from_bytes(digest[:8], "big"))


def trader_shock(trader_id, now: datetime) -> float:
    """Standard normal via Box-Muller, identical for a trader within one bucket."""
    rng = _seeded_rng(trader_id, now, "shock")
    u1 = 1.0 - rng.random()     # (0, 1], keeps log finite
    u2 = rng.random()
    return math.sqrt(-2 * math.log(u1)) * math.cos(2 * math.pi * u2)


def floor_bounce(trader_id, now: datetime, allocation: float) -> float:
    return _seeded_rng(trader_id, now, "bounce").random() * allocation * FLOOR_BOUNCE_MAX


def expected_pnl(allocation: float, target_monthly_roi: float, days_elapsed: float) -> float:
    return allocation * (math.pow(1 + target_monthly_roi / 100, days_elapsed / 30) - 1)


def advance(
    allocation: float,
    current_pnl: float,
    params: SimulationParams,
    started_at: datetime,
    trader_id,
    now: datetime,
    momentum: Optional[float] = None,
    shock: Optional[float] = None,
) -> Tuple[float, float]:
    """Advance one 5-minute tick. Returns (new_pnl, new_momentum).

    `momentum` defaults to `params.momentum`; `shock` overrides the seeded
    trader shock and exists for calibration.
    """
    allocation = float(allocation)
    current_pnl = float(current_pnl)
    if momentum is None:
        momentum = params.momentum
    z = trader_shock(trader_id, now) if shock is None else float(shock)

    current_value = allocation + current_pnl
    days_elapsed = max(0.0, (as_utc(now) - as_utc(started_at)).total_seconds() / 86400)

    drift = params.daily_drift * current_value * DT
    volatility = params.daily_volatility * current_value * math.sqrt(DT) * z
    deviation = current_pnl - expected_pnl(allocation, params.target_monthly_roi, days_elapsed)
    mean_reversion = -deviation * MEAN_REVERSION_STRENGTH * DT

    new_momentum = max(-1.0, min(1.0, momentum * MOMENTUM_DECAY + MOMENTUM_SHOCK_WEIGHT * z))
    momentum_tilt = new_momentum * params.daily_volatility * current_value * DT * MOMENTUM_IMPACT

    new_pnl = current_pnl + drift + volatility + mean_reversion + momentum_tilt

    floor = params.max_drawdown_usdt
    if new_pnl < floor:
        new_pnl = floor + floor_bounce(trader_id, now, allocation)

    max_change = allocation * MAX_TICK_CHANGE
    change = new_pnl - current_pnl
    if abs(change) > max_change:
        new_pnl = current_pnl + math.copysign(max_change, change)

    return new_pnl, new_momentum
