from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
import enum
from walletcore.database import Base

class WithdrawalStatus(str, enum.Enum):
    pending = "pending"
    admin_approved = "admin_approved"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    rejected = "rejected"

class ProcessingType(str, enum.Enum):
    automatic = "automatic"
    manual = "manual"

class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    asset = Column(String(20), nullable=False)
    deployment_symbol = Column(String(40), nullable=False)
    amount = Column(Numeric(precision=20, scale=8), nullable=False)
    to_address = Column(String(128), nullable=False)
    status = Column(Enum(WithdrawalStatus), default=WithdrawalStatus.pending, nullable=False)
    is_internal_transfer = Column(Boolean, default=False)
    recipient_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    processing_type = Column(Enum(ProcessingType), nullable=True)
    rejection_reason = Column(String(500), nullable=True)
    admin_approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    admin_approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    tx_hash = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
