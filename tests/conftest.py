"""
Shared test fixtures for the monitor backend.

Provides:
- backend/app on sys.path (flat module layout, same as the server runs with)
- In-memory key-value store and a trade log on a fixed clock
- Fake market data / broker collaborators
- MonitorEntry factory
"""

import asyncio
import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend', 'app'))

from broker import BrokerSession, OrderErr, OrderOk  # noqa: E402
from database import InMemoryKeyValueStore  # noqa: E402
from market_data import MarketDataError, Quote  # noqa: E402
from trade_log import TradeLogStore  # noqa: E402
from trade_state_machine import MonitorEntry  # noqa: E402

NIFTY_CE = "NSE:NIFTY25JUN24550CE"
NIFTY_PE = "NSE:NIFTY25JUN24550PE"
BANKNIFTY_CE = "NSE:NIFTYBANK25JUN52000CE"

# 2025-06-20 10:30 IST
FIXED_NOW = datetime(2025, 6, 20, 5, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class HANG:
    """Marker: the quote call never returns."""


class FakeMarketData:
    """Scripted quotes per symbol. Items are prices, exceptions, or HANG."""

    def __init__(self):
        self.scripts: dict[str, list] = {}
        self.history: dict[str, list] = {}
        self.calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}
        self._ts = 1_750_000_000.0
        # One candle per quote at the default 5-minute resolution
        self.step = 300.0

    def script(self, symbol, *items):
        self.scripts.setdefault(symbol, []).extend(items)

    async def get_latest_quote(self, session, symbol):
        self.calls.append(symbol)
        gate = self.gates.get(symbol)
        if gate is not None:
            await gate.wait()
        queue = self.scripts.get(symbol) or []
        if not queue:
            raise MarketDataError(f"{symbol}: no scripted quote")
        item = queue.pop(0)
        if item is HANG:
            await asyncio.sleep(3600)
        if isinstance(item, Exception):
            raise item
        self._ts += self.step
        return Quote(
            symbol=symbol, last_price=float(item), timestamp=self._ts,
            open=float(item), high=float(item), low=float(item), close=float(item), volume=0.0,
        )

    async def get_history(self, session, symbol, resolution="5", limit=100):
        return self.history.get(symbol, [])[-limit:]

    async def aclose(self):
        pass


class FakeBroker:
    def __init__(self, result=None):
        self.result = result or OrderOk("ORD-1")
        self.orders: list[dict] = []

    async def place_order(self, session, order):
        self.orders.append(order)
        return self.result

    async def aclose(self):
        pass


class FailingStore(InMemoryKeyValueStore):
    """Reads work, writes fail."""

    async def set(self, key, value):
        raise OSError("disk full")

    async def delete(self, key):
        raise OSError("disk full")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def trade_log(kv, clock):
    return TradeLogStore(kv, retention_days=60, clock=clock)


@pytest.fixture
def market_data():
    return FakeMarketData()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def session():
    return BrokerSession(client_id="XY1234-100", access_token="token-abcdef")


@pytest.fixture
def paper_mode(monkeypatch):
    import config
    monkeypatch.setitem(config.config, "trading_mode", "paper")
    monkeypatch.setitem(config.config, "seed_history_on_add", False)
    monkeypatch.setitem(config.config, "fetch_timeout_seconds", 0.2)


def _make_entry(symbol=NIFTY_CE, contract_type="CE", lots=1, target_points=50, stop_loss_points=30, **kwargs):
    return MonitorEntry(
        symbol=symbol,
        contract_type=contract_type,
        lots=lots,
        target_points=target_points,
        stop_loss_points=stop_loss_points,
        **kwargs,
    )


@pytest.fixture
def make_entry():
    return _make_entry


__all__ = ["FakeMarketData", "FakeBroker", "FailingStore", "HANG", "OrderErr"]
