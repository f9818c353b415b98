from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class SendRequest(BaseModel):
    deployment_symbol: str = Field(min_length=1, max_length=40)
    to_address: str = Field(min_length=1, max_length=128)
    amount: Decimal


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class MarkSentRequest(BaseModel):
    tx_hash: Optional[str] = Field(default=None, max_length=128)
