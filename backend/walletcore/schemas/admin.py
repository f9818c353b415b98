from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field
from walletcore.models.copy_trade import RiskLevel


class AdjustBalanceRequest(BaseModel):
    user_id: int
    asset: str = Field(min_length=1, max_length=20)
    amount: Decimal
    direction: Literal["credit", "debit"]
    reason: Optional[str] = Field(default=None, max_length=500)


class CreateTraderRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    risk_level: RiskLevel = RiskLevel.medium
    historical_roi_min: Decimal = Field(ge=-100)
    historical_roi_max: Decimal = Field(ge=-100)
    max_drawdown: Decimal = Field(default=Decimal("0.20"), gt=0, le=1)
    max_copiers: int = Field(default=100, gt=0)
    performance_fee_percent: Decimal = Field(default=Decimal("0"), ge=0, lt=100)
