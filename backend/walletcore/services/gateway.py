"""
Payout gateway client used to execute external withdrawals.
Plisio-style REST API authenticated with an api_key query parameter.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import httpx
from walletcore.config import settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    pass


@dataclass
class WithdrawResult:
    success: bool
    tx_hash: Optional[str] = None
    fee: Optional[Decimal] = None
    error: Optional[str] = None


@dataclass
class FeeEstimate:
    fee: Decimal
    currency: str


def _check_configured():
    if not settings.GATEWAY_API_KEY:
        raise GatewayError("GATEWAY_API_KEY not configured")


async def withdraw(currency: str, address: str, amount: Decimal) -> WithdrawResult:
    """
    Send `amount` of `currency` to `address`.
    Gateway-side rejections come back as WithdrawResult(success=False);
    transport problems raise GatewayError.
    """
    _check_configured()
    params = {
        "api_key": settings.GATEWAY_API_KEY,
        "psys_cid": currency,
        "to": address,
        "amount": str(amount),
        "type": "cash_out",
        "feePlan": "normal",
    }
    try:
        async with httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT) as client:
            resp = await client.get(f"{settings.GATEWAY_BASE_URL}/operations/withdraw", params=params)
    except httpx.HTTPError as e:
        raise GatewayError(f"Gateway request failed: {e}") from e

    if resp.status_code != 200:
        logger.error("[Gateway] withdraw HTTP %s: %s", resp.status_code, resp.text)
        return WithdrawResult(success=False, error=f"HTTP {resp.status_code}")

    body = resp.json()
    if body.get("status") != "success":
        message = (body.get("data") or {}).get("message") or "withdrawal rejected"
        logger.error("[Gateway] withdraw rejected: %s", message)
        return WithdrawResult(success=False, error=message)

    data = body.get("data") or {}
    fee = data.get("fee")
    return WithdrawResult(
        success=True,
        tx_hash=data.get("id") or data.get("tx_url"),
        fee=Decimal(str(fee)) if fee is not None else None,
    )


async def estimate_fee(currency: str, address: str, amount: Decimal) -> FeeEstimate:
    """Raises GatewayError on any failure; callers fall back to the static fee."""
    _check_configured()
    params = {
        "api_key": settings.GATEWAY_API_KEY,
        "addresses": address,
        "amounts": str(amount),
        "feePlan": "normal",
    }
    try:
        async with httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT) as client:
            resp = await client.get(f"{settings.GATEWAY_BASE_URL}/operations/fee/{currency}", params=params)
    except httpx.HTTPError as e:
        raise GatewayError(f"Gateway request failed: {e}") from e

    if resp.status_code != 200:
        raise GatewayError(f"Fee estimate failed: {resp.status_code} {resp.text}")
    body = resp.json()
    if body.get("status") != "success":
        raise GatewayError(f"Fee estimate rejected: {body}")
    data = body.get("data") or {}
    return FeeEstimate(fee=Decimal(str(data.get("fee", "0"))), currency=data.get("currency") or currency)
