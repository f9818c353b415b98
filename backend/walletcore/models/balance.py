from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from walletcore.database import Base

class Balance(Base):
    """One row per (user, asset). Written only through BalanceLedger."""
    __tablename__ = "balances"
    __table_args__ = (
        UniqueConstraint("user_id", "asset", name="uq_balances_user_asset"),
        CheckConstraint("balance >= 0", name="ck_balances_balance_non_negative"),
        CheckConstraint("locked_balance >= 0", name="ck_balances_locked_non_negative"),
        CheckConstraint("locked_balance <= balance", name="ck_balances_locked_within_balance"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    asset = Column(String(20), nullable=False)
    balance = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    locked_balance = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
