"""
Venue and Signer Tests.

============================================================
PURPOSE
============================================================
On-chain venue steps, the EIP-712 signer and the order-book
client's error mapping, with network calls mocked.

TEST CATEGORIES:
- Signer tests: recoverable signatures, order struct
- On-chain venue tests: quote snapshot, poll mapping
- Order-book client tests: status codes, response checks

============================================================
"""

from unittest.mock import AsyncMock, patch

import pytest
from eth_account import Account

from trade_pipeline.signing import OrderSigner, build_order
from trade_pipeline.types import (
    Authorization,
    CredentialError,
    FillState,
    SigningError,
    TradeStatus,
    VenueError,
)
from trade_pipeline.venues import CowClient, OnChainVenue


# ============================================================
# SIGNER TESTS
# ============================================================

class TestOrderSigner:
    """Tests for OrderSigner."""

    def test_signature_recovers_owner(self, config, wallet, private_key, snapshot_for):
        signer = OrderSigner(config.onchain)
        snapshot = snapshot_for(wallet.address)

        authorization = signer.sign(private_key, snapshot)

        assert authorization.scheme == "eip712"
        assert authorization.owner == wallet.address
        recovered = Account.recover_message(
            signer.typed_message(snapshot),
            signature=authorization.signature,
        )
        assert recovered == wallet.address

    def test_signature_covers_amounts(self, config, wallet, private_key, snapshot_for):
        signer = OrderSigner(config.onchain)
        first = signer.sign(private_key, snapshot_for(wallet.address, buy_amount=10))
        second = signer.sign(private_key, snapshot_for(wallet.address, buy_amount=11))
        assert first.signature != second.signature

    def test_build_order_types(self, wallet, snapshot_for):
        order = build_order(snapshot_for(wallet.address.lower()))
        assert order["receiver"] == wallet.address
        assert isinstance(order["sellAmount"], int)
        assert order["feeAmount"] == 0
        assert order["kind"] == "sell"

    def test_build_order_missing_field(self, wallet, snapshot_for):
        snapshot = snapshot_for(wallet.address)
        del snapshot["buyAmount"]
        with pytest.raises(SigningError):
            build_order(snapshot)


# ============================================================
# ON-CHAIN VENUE TESTS
# ============================================================

class TestOnChainVenue:
    """Tests for OnChainVenue."""

    @pytest.mark.asyncio
    async def test_quote_snapshot_is_signable(self, onchain_venue, agent, make_trade, wallet, cow_client):
        quote = await onchain_venue.quote(make_trade(), agent)

        assert quote.buy_amount == int(quote.snapshot["buyAmount"])
        assert quote.fee_amount == 1_500_000
        assert quote.snapshot["feeAmount"] == "0"
        assert quote.snapshot["quoteFeeAmount"] == "1500000"
        assert quote.snapshot["receiver"] == wallet.address
        build_order(quote.snapshot)

        sell_token, buy_token, amount, owner = cow_client.quote.await_args.args
        assert owner == wallet.address

    @pytest.mark.asyncio
    async def test_authorize_without_key(self, onchain_venue, agent, make_trade, wallet, snapshot_for):
        agent.encrypted_private_key = None
        trade = make_trade(TradeStatus.QUOTED, quote_snapshot=snapshot_for(wallet.address))

        with pytest.raises(CredentialError) as exc_info:
            await onchain_venue.authorize(trade, agent)
        assert exc_info.value.code == "CFG_MISSING_WALLET"

    @pytest.mark.asyncio
    async def test_authorize_checks_allowance_then_signs(
        self, onchain_venue, agent, make_trade, wallet, snapshot_for, allowance,
    ):
        trade = make_trade(TradeStatus.QUOTED, quote_snapshot=snapshot_for(wallet.address))

        authorization = await onchain_venue.authorize(trade, agent)

        allowance.ensure_allowance.assert_awaited_once()
        assert authorization.owner == wallet.address
        assert authorization.signature.startswith("0x")

    @pytest.mark.asyncio
    async def test_authorize_refuses_expired_quote(
        self, onchain_venue, agent, make_trade, wallet, snapshot_for, allowance, secret_store,
    ):
        snapshot = {**snapshot_for(wallet.address), "validTo": 1_600_000_000}
        trade = make_trade(TradeStatus.QUOTED, quote_snapshot=snapshot)

        with patch.object(secret_store, "reveal") as reveal:
            with pytest.raises(VenueError) as exc_info:
                await onchain_venue.authorize(trade, agent)

        assert exc_info.value.code == "VAL_QUOTE_EXPIRED"
        assert not exc_info.value.is_retryable
        reveal.assert_not_called()
        allowance.ensure_allowance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_valid_to_is_checked_against_clock(
        self, config, cow_client, allowance, secret_store, agent, make_trade, wallet, snapshot_for,
    ):
        venue = OnChainVenue(
            client=cow_client,
            signer=OrderSigner(config.onchain),
            allowance=allowance,
            secrets=secret_store,
            app_data=config.onchain.app_data,
            clock=lambda: 1_900_000_000,
        )
        trade = make_trade(TradeStatus.SIGNED, quote_snapshot=snapshot_for(wallet.address))

        with pytest.raises(VenueError) as exc_info:
            await venue.submit(trade, agent, Authorization("eip712", "0xsig", wallet.address))

        assert exc_info.value.code == "VAL_QUOTE_EXPIRED"
        cow_client.submit_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_requires_signature(self, onchain_venue, agent, make_trade, wallet, snapshot_for):
        trade = make_trade(TradeStatus.SIGNED, quote_snapshot=snapshot_for(wallet.address))
        with pytest.raises(VenueError) as exc_info:
            await onchain_venue.submit(trade, agent, Authorization("eip712"))
        assert exc_info.value.code == "VAL_INVALID_ORDER"

    @pytest.mark.asyncio
    async def test_submit_sends_quoted_fields_only(
        self, onchain_venue, agent, make_trade, wallet, snapshot_for, cow_client,
    ):
        trade = make_trade(TradeStatus.SIGNED, quote_snapshot=snapshot_for(wallet.address))

        submitted = await onchain_venue.submit(trade, agent, Authorization("eip712", "0xsig", wallet.address))

        order, signature, scheme = cow_client.submit_order.await_args.args
        assert "quoteFeeAmount" not in order
        assert order["from"] == wallet.address
        assert signature == "0xsig"
        assert submitted.metadata == {"orderUid": submitted.order_id}

    @pytest.mark.parametrize("response,state", [
        ({"status": "fulfilled", "executedSellAmount": "10", "executedBuyAmount": "20"}, FillState.FILLED),
        ({"status": "traded"}, FillState.FILLED),
        ({"status": "expired"}, FillState.EXPIRED),
        ({"status": "cancelled"}, FillState.EXPIRED),
        ({"status": "open", "invalidated": True}, FillState.EXPIRED),
        ({"status": "open"}, FillState.OPEN),
        ({"status": "presignaturePending"}, FillState.OPEN),
    ])
    @pytest.mark.asyncio
    async def test_poll_mapping(self, onchain_venue, make_trade, cow_client, response, state):
        cow_client.get_order.return_value = response
        trade = make_trade(TradeStatus.SUBMITTED, signed_payload={"orderUid": "0xuid"})

        report = await onchain_venue.poll_status(trade)

        assert report.state == state
        cow_client.get_order.assert_awaited_with("0xuid")

    @pytest.mark.asyncio
    async def test_poll_executed_amounts(self, onchain_venue, make_trade, cow_client):
        cow_client.get_order.return_value = {
            "status": "fulfilled",
            "executedSellAmount": "1000000",
            "executedBuyAmount": "333333333333333",
        }
        report = await onchain_venue.poll_status(
            make_trade(TradeStatus.SUBMITTED, signed_payload={"orderUid": "0xuid"})
        )
        assert report.executed_sell_amount == 1_000_000
        assert report.executed_buy_amount == 333_333_333_333_333

    @pytest.mark.asyncio
    async def test_poll_without_uid(self, onchain_venue, make_trade):
        with pytest.raises(VenueError):
            await onchain_venue.poll_status(make_trade(TradeStatus.SUBMITTED))


# ============================================================
# ORDER-BOOK CLIENT TESTS
# ============================================================

class TestCowClient:
    """Tests for CowClient."""

    @pytest.mark.parametrize("http_status,rejection,code", [
        (429, "VEN_QUOTE_FAILED", "RTE_LIMIT"),
        (503, "VEN_ORDER_REJECTED", "VEN_SERVER_ERROR"),
        (400, "VEN_QUOTE_FAILED", "VEN_QUOTE_FAILED"),
        (400, "VEN_ORDER_REJECTED", "VEN_ORDER_REJECTED"),
    ])
    def test_status_codes(self, http_status, rejection, code):
        assert CowClient._code_for(http_status, rejection) == code

    @pytest.mark.asyncio
    async def test_quote_without_buy_amount(self, config):
        client = CowClient(config.onchain)
        with patch.object(client, "_request", new=AsyncMock(return_value={"quote": {"sellAmount": "1"}})):
            with pytest.raises(VenueError) as exc_info:
                await client.quote("0xa", "0xb", 1, "0xc")
        assert exc_info.value.code == "VEN_BAD_RESPONSE"
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_quote_request_body(self, config):
        client = CowClient(config.onchain)
        request = AsyncMock(return_value={"quote": {"buyAmount": "5", "validTo": 1}})
        with patch.object(client, "_request", new=request):
            quote = await client.quote("0xa", "0xb", 1000, "0xowner")

        method, path, body = request.await_args.args
        assert (method, path) == ("POST", "/quote")
        assert body["sellAmountBeforeFee"] == "1000"
        assert body["kind"] == "sell"
        assert body["from"] == "0xowner"
        assert quote["buyAmount"] == "5"

    @pytest.mark.asyncio
    async def test_submit_returns_uid_string(self, config):
        client = CowClient(config.onchain)
        with patch.object(client, "_request", new=AsyncMock(return_value="0xuid")) as request:
            uid = await client.submit_order({"sellToken": "0xa"}, "0xsig")

        body = request.await_args.args[2]
        assert body["signature"] == "0xsig"
        assert body["signingScheme"] == "eip712"
        assert uid == "0xuid"
