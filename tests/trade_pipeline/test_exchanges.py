"""
Exchange Client Tests.

============================================================
PURPOSE
============================================================
Per-exchange request signing, status normalization and
error mapping. Transport is mocked at ExchangeClient._send.

TEST CATEGORIES:
- Symbol tests: pair resolution, quantity formatting
- Signing tests: HMAC layouts
- Client tests: placement, status, error codes
- Factory tests

============================================================
"""

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import pytest

from trade_pipeline.config import CentralizedConfig
from trade_pipeline.tokens import USDC, WETH
from trade_pipeline.types import OrderSide, FillState, VenueError
from trade_pipeline.venues.exchanges import (
    BinanceClient,
    BybitClient,
    CoinbaseClient,
    OKXClient,
    CexCredentials,
    CexOrderResult,
    ExchangeClientFactory,
    code_for_http_status,
    resolve_exchange_symbol,
    format_quantity,
)
from trade_pipeline.venues.exchanges import binance, bybit, okx


CREDS = CexCredentials(api_key="api-key-1", secret="api-secret-1", passphrase="pass")


# ============================================================
# SYMBOL TESTS
# ============================================================

class TestSymbolResolution:
    """Tests for resolve_exchange_symbol and format_quantity."""

    @pytest.mark.parametrize("exchange,symbol", [
        ("binance", "ETHUSDC"),
        ("coinbase", "ETH-USDC"),
        ("bybit", "ETHUSDC"),
        ("okx", "ETH-USDC"),
    ])
    def test_buy_eth_with_usdc(self, exchange, symbol):
        resolved = resolve_exchange_symbol(exchange, USDC.address, WETH.address)
        assert resolved.symbol == symbol
        assert resolved.side == OrderSide.BUY
        assert resolved.quantity_token == "USDC"

    def test_sell_eth_for_usdc(self):
        resolved = resolve_exchange_symbol("binance", WETH.address.lower(), USDC.address)
        assert resolved.side == OrderSide.SELL
        assert resolved.quantity_token == "ETH"

    def test_unsupported_pair(self):
        with pytest.raises(VenueError) as exc_info:
            resolve_exchange_symbol("binance", USDC.address, "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb")
        assert exc_info.value.code == "VAL_UNSUPPORTED_PAIR"

    def test_unsupported_exchange(self):
        with pytest.raises(VenueError) as exc_info:
            resolve_exchange_symbol("kraken", USDC.address, WETH.address)
        assert exc_info.value.code == "VAL_UNSUPPORTED_EXCHANGE"

    def test_usdc_quantity_truncates_to_cents(self):
        assert format_quantity(1_234_567, USDC.address) == "1.23"

    def test_eth_quantity_truncates_to_eight_places(self):
        assert format_quantity(123_456_789_999_999_999, WETH.address) == "0.12345678"


# ============================================================
# SIGNING TESTS
# ============================================================

class TestRequestSigning:
    """Tests for exchange signature layouts."""

    def test_binance_reference_vector(self):
        """Example from the Binance signed-endpoint documentation."""
        secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
        query = (
            "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1"
            "&price=0.1&recvWindow=5000&timestamp=1499827319559"
        )
        assert binance.sign_query(secret, query) == (
            "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"
        )

    def test_okx_signs_timestamp_method_path_body(self):
        signature = okx.sign_message("s3cret", "2024-01-01T00:00:00.000Z", "post", "/api/v5/trade/order", "{}")
        expected = base64.b64encode(hmac.new(
            b"s3cret",
            b"2024-01-01T00:00:00.000ZPOST/api/v5/trade/order{}",
            hashlib.sha256,
        ).digest()).decode()
        assert signature == expected

    def test_bybit_signs_timestamp_key_window_payload(self):
        signature = bybit.sign_payload("s3cret", "1700000000000", "key", "5000", "category=spot")
        expected = hmac.new(
            b"s3cret", b"1700000000000key5000category=spot", hashlib.sha256,
        ).hexdigest()
        assert signature == expected

    def test_credentials_repr_masks_key(self):
        text = repr(CexCredentials(api_key="abcdefghijkl", secret="top-secret"))
        assert "top-secret" not in text
        assert "abcdefghijkl" not in text

    def test_credentials_accept_both_spellings(self):
        creds = CexCredentials.from_dict({"api_key": "k", "apiSecret": "s"})
        assert (creds.api_key, creds.secret) == ("k", "s")


# ============================================================
# RESULT / ERROR TESTS
# ============================================================

class TestOrderResult:
    """Tests for CexOrderResult.to_fill_report."""

    def test_filled(self):
        report = CexOrderResult("1", "filled", "0.2", "2500").to_fill_report()
        assert report.state == FillState.FILLED
        assert report.filled_quantity == "0.2"
        assert report.average_price == "2500"

    @pytest.mark.parametrize("status", ["cancelled", "rejected"])
    def test_cancelled(self, status):
        assert CexOrderResult("1", status).to_fill_report().state == FillState.CANCELLED

    @pytest.mark.parametrize("status", ["new", "partially_filled", "unknown"])
    def test_still_open(self, status):
        assert CexOrderResult("1", status).to_fill_report().state == FillState.OPEN


class TestHttpStatusCodes:
    """Tests for code_for_http_status."""

    @pytest.mark.parametrize("http_status,code", [
        (429, "RTE_LIMIT"),
        (418, "RTE_LIMIT"),
        (401, "AUT_INVALID_KEY"),
        (403, "AUT_INVALID_KEY"),
        (502, "VEN_SERVER_ERROR"),
        (400, "VEN_ORDER_REJECTED"),
    ])
    def test_mapping(self, http_status, code):
        assert code_for_http_status(http_status) == code


# ============================================================
# CLIENT TESTS
# ============================================================

class TestBinanceClient:
    """Tests for BinanceClient."""

    @pytest.mark.asyncio
    async def test_market_buy_spends_quote_quantity(self):
        client = BinanceClient("https://api.binance.test")
        response = {
            "orderId": 28,
            "status": "FILLED",
            "executedQty": "0.2",
            "cummulativeQuoteQty": "500",
        }
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))) as send:
            result = await client.place_market_order(CREDS, "ETHUSDC", OrderSide.BUY, "500.00")

        method, path, headers = send.await_args.args
        assert method == "POST"
        assert "quoteOrderQty=500.00" in path
        assert "&signature=" in path
        assert headers == {"X-MBX-APIKEY": "api-key-1"}
        assert result.order_id == "28"
        assert result.status == "filled"
        assert result.avg_price == "2500"

    @pytest.mark.asyncio
    async def test_market_sell_uses_base_quantity(self):
        client = BinanceClient("https://api.binance.test")
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, {"orderId": 1, "status": "NEW"}))) as send:
            result = await client.place_market_order(CREDS, "ETHUSDC", OrderSide.SELL, "0.20000000")

        assert "quantity=0.20000000" in send.await_args.args[1]
        assert result.status == "new"
        assert result.avg_price is None

    @pytest.mark.asyncio
    async def test_client_order_id_is_sent(self):
        client = BinanceClient("https://api.binance.test")
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, {"orderId": 1, "status": "NEW"}))) as send:
            await client.place_market_order(CREDS, "ETHUSDC", OrderSide.BUY, "5.00", client_order_id="abc123")

        assert "newClientOrderId=abc123" in send.await_args.args[1]

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_terminal(self):
        client = BinanceClient("https://api.binance.test")
        response = {"code": -2010, "msg": "Account has insufficient balance for requested action."}
        with patch.object(client, "_send", new=AsyncMock(return_value=(400, response))):
            with pytest.raises(VenueError) as exc_info:
                await client.place_market_order(CREDS, "ETHUSDC", OrderSide.BUY, "500.00")

        assert exc_info.value.code == "VAL_INSUFFICIENT_BALANCE"
        assert not exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        client = BinanceClient("https://api.binance.test")
        with patch.object(client, "_send", new=AsyncMock(return_value=(429, {"code": -1003}))):
            with pytest.raises(VenueError) as exc_info:
                await client.get_order_status(CREDS, "28", "ETHUSDC")

        assert exc_info.value.code == "RTE_LIMIT"
        assert exc_info.value.is_retryable


class TestOKXClient:
    """Tests for OKXClient."""

    @pytest.mark.asyncio
    async def test_buy_targets_quote_currency(self):
        client = OKXClient("https://okx.test")
        response = {"code": "0", "data": [{"ordId": "555", "sCode": "0"}]}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))) as send:
            result = await client.place_market_order(CREDS, "ETH-USDC", OrderSide.BUY, "100.00")

        _, path, headers, body = send.await_args.args
        assert path == "/api/v5/trade/order"
        assert json.loads(body)["tgtCcy"] == "quote_ccy"
        assert headers["OK-ACCESS-PASSPHRASE"] == "pass"
        assert result.order_id == "555"

    @pytest.mark.asyncio
    async def test_client_order_id_is_sent(self):
        client = OKXClient("https://okx.test")
        response = {"code": "0", "data": [{"ordId": "555", "sCode": "0"}]}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))) as send:
            await client.place_market_order(CREDS, "ETH-USDC", OrderSide.BUY, "100.00", client_order_id="abc123")

        assert json.loads(send.await_args.args[3])["clOrdId"] == "abc123"

    @pytest.mark.asyncio
    async def test_order_level_error_code(self):
        client = OKXClient("https://okx.test")
        response = {"code": "1", "data": [{"sCode": "51008", "sMsg": "Insufficient balance"}]}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))):
            with pytest.raises(VenueError) as exc_info:
                await client.place_market_order(CREDS, "ETH-USDC", OrderSide.BUY, "100.00")

        assert exc_info.value.code == "VAL_INSUFFICIENT_BALANCE"

    @pytest.mark.asyncio
    async def test_status_normalized(self):
        client = OKXClient("https://okx.test")
        response = {"code": "0", "data": [{"ordId": "555", "state": "filled", "accFillSz": "0.04", "avgPx": "2501.1"}]}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))):
            result = await client.get_order_status(CREDS, "555", "ETH-USDC")

        assert result.status == "filled"
        assert result.avg_price == "2501.1"


class TestBybitClient:
    """Tests for BybitClient."""

    @pytest.mark.asyncio
    async def test_status_query_is_signed(self):
        client = BybitClient("https://bybit.test", recv_window="10000")
        response = {"retCode": 0, "result": {"list": [
            {"orderId": "9", "orderStatus": "Filled", "cumExecQty": "0.1", "avgPrice": "2400"},
        ]}}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))) as send:
            result = await client.get_order_status(CREDS, "9", "ETHUSDC")

        _, path, headers, _ = send.await_args.args
        assert path.startswith("/v5/order/realtime?")
        assert headers["X-BAPI-RECV-WINDOW"] == "10000"
        assert result.status == "filled"
        assert result.avg_price == "2400"

    @pytest.mark.asyncio
    async def test_unmapped_failure_is_rejection(self):
        client = BybitClient("https://bybit.test")
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, {"retCode": 99999, "retMsg": "nope"}))):
            with pytest.raises(VenueError) as exc_info:
                await client.place_market_order(CREDS, "ETHUSDC", OrderSide.BUY, "10.00")

        assert exc_info.value.code == "VEN_ORDER_REJECTED"


class TestCoinbaseClient:
    """Tests for CoinbaseClient."""

    @pytest.mark.asyncio
    async def test_buy_uses_quote_size(self):
        client = CoinbaseClient("https://coinbase.test")
        response = {"success": True, "success_response": {"order_id": "cb-1"}}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))) as send:
            result = await client.place_market_order(CREDS, "ETH-USDC", OrderSide.BUY, "25.00")

        body = json.loads(send.await_args.args[3])
        assert body["order_configuration"]["market_market_ioc"] == {"quote_size": "25.00"}
        assert result.order_id == "cb-1"

    @pytest.mark.asyncio
    async def test_client_order_id_is_reused(self):
        client = CoinbaseClient("https://coinbase.test")
        response = {"success": True, "success_response": {"order_id": "cb-1"}}
        with patch.object(client, "_send", new=AsyncMock(return_value=(200, response))) as send:
            await client.place_market_order(CREDS, "ETH-USDC", OrderSide.BUY, "25.00", client_order_id="abc123")
            await client.place_market_order(CREDS, "ETH-USDC", OrderSide.BUY, "25.00", client_order_id="abc123")

        ids = {json.loads(call.args[3])["client_order_id"] for call in send.await_args_list}
        assert ids == {"abc123"}


# ============================================================
# FACTORY TESTS
# ============================================================

class TestExchangeClientFactory:
    """Tests for ExchangeClientFactory."""

    def test_supported_exchanges(self):
        assert ExchangeClientFactory.supported_exchanges() == ["binance", "bybit", "coinbase", "okx"]

    def test_clients_are_cached(self):
        factory = ExchangeClientFactory(CentralizedConfig())
        assert factory.get("binance") is factory.get("BINANCE")
        assert isinstance(factory.get("okx"), OKXClient)

    def test_unknown_exchange(self):
        with pytest.raises(VenueError) as exc_info:
            ExchangeClientFactory(CentralizedConfig()).get("kraken")
        assert exc_info.value.code == "VAL_UNSUPPORTED_EXCHANGE"

    @pytest.mark.asyncio
    async def test_close_all_forgets_clients(self):
        factory = ExchangeClientFactory(CentralizedConfig())
        first = factory.get("bybit")
        await factory.close_all()
        assert factory.get("bybit") is not first
