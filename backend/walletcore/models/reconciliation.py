from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, JSON, ForeignKey
from sqlalchemy.sql import func
import enum
from walletcore.database import Base

class IncidentStatus(str, enum.Enum):
    open = "open"
    resolved = "resolved"

class ReconciliationIncident(Base):
    """A compensating step that failed; funds need a manual fix."""
    __tablename__ = "reconciliation_incidents"

    id = Column(Integer, primary_key=True)
    operation = Column(String(50), nullable=False)
    step = Column(String(50), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    asset = Column(String(20), nullable=True)
    amount = Column(Numeric(precision=20, scale=8), nullable=True)
    error = Column(String(1000), nullable=False)
    context = Column(JSON, default=dict)
    status = Column(Enum(IncidentStatus), default=IncidentStatus.open, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
