"""
Tests for the payout gateway client. All network calls are mocked; no real
HTTP requests are made.
"""
import httpx
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from walletcore.services.gateway import GatewayError, withdraw, estimate_fee


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_response(status_code: int, json_data: dict) -> MagicMock:
    """Return a mock httpx.Response with .status_code and .json()."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.text = str(json_data)
    return resp


def _patched_client(mock_client_cls, mock_get):
    mock_client = AsyncMock()
    mock_client.get = mock_get
    mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)


def _configure(mock_settings, api_key="test_key"):
    mock_settings.GATEWAY_API_KEY = api_key
    mock_settings.GATEWAY_BASE_URL = "https://gateway.test/api/v1"
    mock_settings.GATEWAY_TIMEOUT = 5.0


# ---------------------------------------------------------------------------
# withdraw
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_withdraw_success_returns_hash_and_fee():
    mock_get = AsyncMock(return_value=_make_response(200, {
        "status": "success",
        "data": {"id": "tx-123", "fee": "1.25"},
    }))
    with (
        patch("walletcore.services.gateway.settings") as mock_settings,
        patch("httpx.AsyncClient") as mock_client_cls,
    ):
        _configure(mock_settings)
        _patched_client(mock_client_cls, mock_get)
        result = await withdraw("USDT_TRX", "TQ1abc", Decimal("40"))

    assert result.success is True
    assert result.tx_hash == "tx-123"
    assert result.fee == Decimal("1.25")

    url = mock_get.call_args.args[0]
    params = mock_get.call_args.kwargs["params"]
    assert url == "https://gateway.test/api/v1/operations/withdraw"
    assert params["api_key"] == "test_key"
    assert params["psys_cid"] == "USDT_TRX"
    assert params["to"] == "TQ1abc"
    assert params["amount"] == "40"


@pytest.mark.asyncio
async def test_withdraw_rejected_by_gateway_is_not_success():
    mock_get = AsyncMock(return_value=_make_response(200, {
        "status": "error",
        "data": {"message": "Not enough funds"},
    }))
    with (
        patch("walletcore.services.gateway.settings") as mock_settings,
        patch("httpx.AsyncClient") as mock_client_cls,
    ):
        _configure(mock_settings)
        _patched_client(mock_client_cls, mock_get)
        result = await withdraw("USDT_TRX", "TQ1abc", Decimal("40"))

    assert result.success is False
    assert result.error == "Not enough funds"


@pytest.mark.asyncio
async def test_withdraw_http_error_status_is_not_success():
    mock_get = AsyncMock(return_value=_make_response(503, {"error": "maintenance"}))
    with (
        patch("walletcore.services.gateway.settings") as mock_settings,
        patch("httpx.AsyncClient") as mock_client_cls,
    ):
        _configure(mock_settings)
        _patched_client(mock_client_cls, mock_get)
        result = await withdraw("USDT_TRX", "TQ1abc", Decimal("40"))

    assert result.success is False
    assert result.error == "HTTP 503"


@pytest.mark.asyncio
async def test_withdraw_transport_error_raises():
    mock_get = AsyncMock(side_effect=httpx.ConnectTimeout("timed out"))
    with (
        patch("walletcore.services.gateway.settings") as mock_settings,
        patch("httpx.AsyncClient") as mock_client_cls,
    ):
        _configure(mock_settings)
        _patched_client(mock_client_cls, mock_get)
        with pytest.raises(GatewayError):
            await withdraw("USDT_TRX", "TQ1abc", Decimal("40"))


@pytest.mark.asyncio
async def test_withdraw_without_api_key_raises():
    with patch("walletcore.services.gateway.settings") as mock_settings:
        _configure(mock_settings, api_key="")
        with pytest.raises(GatewayError, match="not configured"):
            await withdraw("USDT_TRX", "TQ1abc", Decimal("40"))


# ---------------------------------------------------------------------------
# estimate_fee
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_estimate_fee_parses_fee():
    mock_get = AsyncMock(return_value=_make_response(200, {
        "status": "success",
        "data": {"fee": "0.8", "currency": "USDT_TRX"},
    }))
    with (
        patch("walletcore.services.gateway.settings") as mock_settings,
        patch("httpx.AsyncClient") as mock_client_cls,
    ):
        _configure(mock_settings)
        _patched_client(mock_client_cls, mock_get)
        estimate = await estimate_fee("USDT_TRX", "TQ1abc", Decimal("40"))

    assert estimate.fee == Decimal("0.8")
    assert estimate.currency == "USDT_TRX"
    assert mock_get.call_args.args[0] == "https://gateway.test/api/v1/operations/fee/USDT_TRX"


@pytest.mark.asyncio
async def test_estimate_fee_failure_raises():
    mock_get = AsyncMock(return_value=_make_response(500, {"error": "boom"}))
    with (
        patch("walletcore.services.gateway.settings") as mock_settings,
        patch("httpx.AsyncClient") as mock_client_cls,
    ):
        _configure(mock_settings)
        _patched_client(mock_client_cls, mock_get)
        with pytest.raises(GatewayError):
            await estimate_fee("USDT_TRX", "TQ1abc", Decimal("40"))
