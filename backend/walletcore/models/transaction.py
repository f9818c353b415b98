from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, JSON, ForeignKey
from sqlalchemy.sql import func
import enum
from walletcore.database import Base

class TransactionType(str, enum.Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    swap = "swap"
    earn_claim = "earn_claim"
    earn_invest = "earn_invest"
    copy_trade_start = "copy_trade_start"
    copy_trade_stop = "copy_trade_stop"
    admin_adjustment = "admin_adjustment"

class TransactionStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Enum(TransactionType), nullable=False)
    amount = Column(Numeric(precision=20, scale=8), nullable=False)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.pending, nullable=False)
    asset = Column(String(20), nullable=False)
    to_address = Column(String(128), nullable=True)
    tx_hash = Column(String(128), nullable=True)
    network_fee = Column(Numeric(precision=20, scale=8), nullable=True)
    notes = Column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
