from decimal import Decimal
from pydantic import BaseModel


class StartCopyRequest(BaseModel):
    trader_id: int
    amount: Decimal


class StopCopyRequest(BaseModel):
    position_id: int


class WaitlistRequest(BaseModel):
    trader_id: int


class ClaimRequest(BaseModel):
    amount: Decimal
