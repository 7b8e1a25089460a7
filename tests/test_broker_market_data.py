"""
Tests for backend/app/broker.py and backend/app/market_data.py

HTTP is exercised through httpx.MockTransport; nothing leaves the process.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from broker import (
    BrokerClient,
    BrokerSession,
    OrderErr,
    OrderOk,
    SessionExpired,
    SessionOk,
    format_order,
    parse_order_response,
    validate_order,
)
from market_data import MarketDataClient, MarketDataError, QuoteErr, QuoteOk, parse_candles, parse_quote

from conftest import NIFTY_CE


def _quote_payload(symbol=NIFTY_CE, lp=142.5, tt=1750400000):
    return {
        "s": "ok",
        "d": [{
            "n": symbol,
            "s": "ok",
            "v": {"lp": lp, "open_price": 130, "high_price": 150, "low_price": 128, "volume": 91500, "tt": tt},
        }],
    }


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TestBrokerSession:

    def test_missing_token_is_expired(self):
        check = BrokerSession(client_id="XY1234-100", access_token="").check()
        assert isinstance(check, SessionExpired)
        assert check.reason == "no access token"

    def test_expiry_in_past(self):
        session = BrokerSession("XY1234-100", "tok", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert isinstance(session.check(), SessionExpired)

    def test_valid_session(self, session):
        check = session.check()
        assert isinstance(check, SessionOk)
        assert session.authorization == "XY1234-100:token-abcdef"

    def test_from_config_parses_naive_expiry_as_utc(self):
        session = BrokerSession.from_config({
            "broker_client_id": " XY1234-100 ",
            "broker_access_token": "tok",
            "broker_token_expires_at": "2030-01-01T00:00:00",
        })
        assert session.client_id == "XY1234-100"
        assert session.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_from_config_ignores_bad_expiry(self):
        session = BrokerSession.from_config({"broker_access_token": "tok", "broker_token_expires_at": "soon"})
        assert session.expires_at is None


# ---------------------------------------------------------------------------
# Order formatting
# ---------------------------------------------------------------------------


class TestOrderFormat:

    def test_market_buy_payload(self):
        order = format_order(NIFTY_CE, 75, "BUY", order_tag="t1")
        assert order == {
            "symbol": NIFTY_CE,
            "qty": 75,
            "type": 2,
            "side": 1,
            "productType": "INTRADAY",
            "limitPrice": 0,
            "stopPrice": 0,
            "validity": "DAY",
            "disclosedQty": 0,
            "offlineOrder": False,
            "orderTag": "t1",
        }
        assert validate_order(order) == []

    def test_limit_sell_keeps_price(self):
        order = format_order(NIFTY_CE, 75, "sell", order_type="LIMIT", limit_price=160.0)
        assert order["type"] == 1
        assert order["side"] == -1
        assert order["limitPrice"] == 160.0
        assert order["orderTag"].startswith("hmasell")

    def test_validation_collects_every_problem(self):
        order = format_order("", 0, "HOLD", order_type="LIMIT", limit_price=0)
        errors = validate_order(order)
        assert "Symbol is required" in errors
        assert "Quantity must be greater than 0" in errors
        assert "Invalid order side" in errors
        assert "Limit price is required for limit orders" in errors

    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"s": "ok", "id": "25062000012345"}, OrderOk("25062000012345")),
            ({"s": "error", "code": -50, "message": "Invalid symbol"}, OrderErr(-50, "Invalid symbol")),
            ({"s": "error"}, OrderErr(-1, "order rejected")),
            ("garbage", OrderErr(-1, "malformed broker response")),
        ],
    )
    def test_parse_order_response(self, payload, expected):
        assert parse_order_response(payload) == expected


# ---------------------------------------------------------------------------
# BrokerClient
# ---------------------------------------------------------------------------


class TestBrokerClient:

    @pytest.mark.asyncio
    async def test_place_order_posts_with_authorization(self, session):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"s": "ok", "id": "ORD-9"})

        client = BrokerClient("http://proxy.local/", transport=httpx.MockTransport(handler))
        result = await client.place_order(session, format_order(NIFTY_CE, 75, "BUY"))
        await client.aclose()

        assert result == OrderOk("ORD-9")
        assert seen["url"] == "http://proxy.local/api/orders"
        assert seen["auth"] == session.authorization
        assert seen["body"]["qty"] == 75

    @pytest.mark.asyncio
    async def test_expired_session_never_sends(self):
        def handler(request):
            raise AssertionError("request must not be sent")

        client = BrokerClient("http://proxy.local", transport=httpx.MockTransport(handler))
        result = await client.place_order(BrokerSession("id", ""), format_order(NIFTY_CE, 75, "BUY"))
        assert isinstance(result, OrderErr)
        assert result.code == 401

    @pytest.mark.asyncio
    async def test_invalid_order_rejected_locally(self, session):
        client = BrokerClient("http://proxy.local", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        result = await client.place_order(session, format_order(NIFTY_CE, 0, "BUY"))
        assert result.code == 400

    @pytest.mark.asyncio
    async def test_transport_error_becomes_order_err(self, session):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = BrokerClient("http://proxy.local", transport=httpx.MockTransport(handler))
        result = await client.place_order(session, format_order(NIFTY_CE, 75, "BUY"))
        assert isinstance(result, OrderErr)
        assert result.code == -1


# ---------------------------------------------------------------------------
# Quote / candle parsing
# ---------------------------------------------------------------------------


class TestParsing:

    def test_parse_quote_ok(self):
        result = parse_quote(NIFTY_CE, _quote_payload())
        assert isinstance(result, QuoteOk)
        quote = result.quote
        assert quote.last_price == 142.5
        assert quote.timestamp == 1750400000.0
        assert (quote.open, quote.high, quote.low) == (130.0, 150.0, 128.0)
        assert quote.volume == 91500.0

    @pytest.mark.parametrize(
        "payload",
        [
            {"s": "error", "code": -300, "message": "bad symbol"},
            {"s": "ok", "d": []},
            {"s": "ok", "d": [{"n": NIFTY_CE, "v": {}}]},
            {"s": "ok", "d": [{"n": NIFTY_CE, "v": {"lp": 0}}]},
        ],
    )
    def test_parse_quote_errors(self, payload):
        assert isinstance(parse_quote(NIFTY_CE, payload), QuoteErr)

    def test_parse_candles_sorted_and_skips_bad_rows(self):
        payload = {"s": "ok", "candles": [
            [300, 1, 2, 0.5, 1.5, 10],
            [100, 1, 2, 0.5, 1.1],
            ["x", 1, 2, 3, 4, 5],
            [200, 1, 2, 0.5, 1.3, 10],
        ]}
        samples = parse_candles(payload)
        assert [s.timestamp for s in samples] == [100.0, 200.0, 300.0]
        assert samples[0].volume == 0.0


# ---------------------------------------------------------------------------
# MarketDataClient
# ---------------------------------------------------------------------------


class TestMarketDataClient:

    @pytest.mark.asyncio
    async def test_latest_quote(self, session):
        def handler(request):
            assert request.url.path == "/api/market-data/quotes"
            assert request.url.params["symbols"] == NIFTY_CE
            return httpx.Response(200, json=_quote_payload(lp=150.0))

        client = MarketDataClient("http://proxy.local", transport=httpx.MockTransport(handler))
        quote = await client.get_latest_quote(session, NIFTY_CE)
        await client.aclose()
        assert quote.last_price == 150.0

    @pytest.mark.asyncio
    async def test_http_error_raises_market_data_error(self, session):
        client = MarketDataClient("http://proxy.local", transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        with pytest.raises(MarketDataError):
            await client.get_latest_quote(session, NIFTY_CE)

    @pytest.mark.asyncio
    async def test_expired_session_raises(self):
        client = MarketDataClient("http://proxy.local", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        with pytest.raises(MarketDataError, match="session invalid"):
            await client.get_latest_quote(BrokerSession("id", ""), NIFTY_CE)

    @pytest.mark.asyncio
    async def test_history_limited_to_latest(self, session):
        candles = [[1000 + i, 1, 1, 1, 100 + i, 5] for i in range(10)]

        def handler(request):
            assert request.url.path == "/api/market-data/historical"
            assert request.url.params["resolution"] == "5"
            return httpx.Response(200, json={"s": "ok", "candles": candles})

        client = MarketDataClient("http://proxy.local", transport=httpx.MockTransport(handler))
        samples = await client.get_history(session, NIFTY_CE, limit=3)
        assert [s.close for s in samples] == [107.0, 108.0, 109.0]
