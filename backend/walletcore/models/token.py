from sqlalchemy import Column, Integer, String, Numeric, Boolean, ForeignKey
from walletcore.database import Base

class TokenDeployment(Base):
    """An asset on a specific network, e.g. USDT_TRC20 -> (USDT, TRC20)."""
    __tablename__ = "token_deployments"

    id = Column(Integer, primary_key=True)
    symbol = Column(String(40), unique=True, nullable=False)
    asset = Column(String(20), nullable=False)
    network = Column(String(40), nullable=False)
    withdrawal_enabled = Column(Boolean, default=True)
    min_withdrawal = Column(Numeric(precision=20, scale=8), nullable=True)
    withdrawal_fee = Column(Numeric(precision=20, scale=8), default=0)
    gateway_currency = Column(String(40), nullable=True)
    is_active = Column(Boolean, default=True)

class DepositAddress(Base):
    __tablename__ = "deposit_addresses"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    deployment_id = Column(Integer, ForeignKey("token_deployments.id"), nullable=False)
    address = Column(String(128), nullable=False, index=True)
