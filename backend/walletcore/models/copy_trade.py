from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime, Enum, JSON, ForeignKey, Index, text,
)
from sqlalchemy.sql import func
import enum
from walletcore.database import Base

class RiskLevel(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"

class PositionStatus(str, enum.Enum):
    active = "active"
    stopped = "stopped"

class WaitlistStatus(str, enum.Enum):
    waiting = "waiting"
    notified = "notified"
    claimed = "claimed"
    expired = "expired"

class Trader(Base):
    __tablename__ = "traders"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    risk_level = Column(Enum(RiskLevel), default=RiskLevel.medium, nullable=False)
    historical_roi_min = Column(Numeric(10, 4), nullable=False, default=0)
    historical_roi_max = Column(Numeric(10, 4), nullable=False, default=0)
    max_drawdown = Column(Numeric(5, 4), nullable=False, default=0.20)   # fraction of allocation
    max_copiers = Column(Integer, nullable=False, default=100)
    current_copiers = Column(Integer, nullable=False, default=0)
    aum_usdt = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    performance_fee_percent = Column(Numeric(5, 2), nullable=False, default=0)
    lifetime_earnings_usdt = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class CopyPosition(Base):
    __tablename__ = "copy_positions"
    __table_args__ = (
        # at most one active position per (user, trader)
        Index(
            "uq_copy_positions_active",
            "user_id", "trader_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    trader_id = Column(Integer, ForeignKey("traders.id"), nullable=False, index=True)
    allocation_usdt = Column(Numeric(precision=20, scale=8), nullable=False)
    current_pnl = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    daily_pnl_rate = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    simulation_params = Column(JSON, default=dict)
    status = Column(Enum(PositionStatus), default=PositionStatus.active, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    stopped_at = Column(DateTime(timezone=True), nullable=True)
    final_pnl = Column(Numeric(precision=20, scale=8), nullable=True)
    performance_fee_paid = Column(Numeric(precision=20, scale=8), nullable=True)

class TraderWaitlist(Base):
    __tablename__ = "trader_waitlist"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    trader_id = Column(Integer, ForeignKey("traders.id"), nullable=False, index=True)
    status = Column(Enum(WaitlistStatus), default=WaitlistStatus.waiting, nullable=False)
    position_in_queue = Column(Integer, nullable=False, default=1)
    claim_token = Column(String(64), unique=True, nullable=True)
    claim_expires_at = Column(DateTime(timezone=True), nullable=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
