"""Market data client for the broker proxy (quotes + history).

Quote shape:   {"s": "ok", "d": [{"n": sym, "s": "ok", "v": {"lp", "open_price", ...}}]}
History shape: {"s": "ok", "candles": [[epoch, o, h, l, c, v], ...]}
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from broker import BrokerSession, SessionExpired
from indicators import PriceSample

logger = logging.getLogger(__name__)


class MarketDataError(Exception):
    """Quote/history fetch failed for one symbol."""


@dataclass(frozen=True)
class Quote:
    symbol: str
    last_price: float
    timestamp: float
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class QuoteOk:
    quote: Quote


@dataclass(frozen=True)
class QuoteErr:
    code: int
    message: str


def _code(payload: dict) -> int:
    try:
        return int(payload.get("code"))
    except (TypeError, ValueError):
        return -1


def parse_quote(symbol: str, payload: dict[str, Any]) -> Union[QuoteOk, QuoteErr]:
    if not isinstance(payload, dict):
        return QuoteErr(-1, "malformed response")
    if payload.get("s") != "ok":
        return QuoteErr(_code(payload), str(payload.get("message") or "quote request failed"))
    rows = payload.get("d") or []
    row = next((r for r in rows if isinstance(r, dict) and r.get("n") == symbol), None)
    if row is None and len(rows) == 1 and isinstance(rows[0], dict):
        row = rows[0]
    if row is None or row.get("s") not in (None, "ok"):
        return QuoteErr(404, f"no quote for {symbol}")

    v = row.get("v") or {}
    try:
        ltp = float(v["lp"])
    except (KeyError, TypeError, ValueError):
        return QuoteErr(422, f"quote for {symbol} has no last price")
    if ltp <= 0:
        return QuoteErr(422, f"non-positive last price for {symbol}: {ltp}")

    def _f(key, default):
        try:
            return float(v.get(key))
        except (TypeError, ValueError):
            return default

    return QuoteOk(Quote(
        symbol=symbol,
        last_price=ltp,
        timestamp=_f("tt", time.time()),
        open=_f("open_price", ltp),
        high=_f("high_price", ltp),
        low=_f("low_price", ltp),
        close=_f("prev_close_price", ltp),
        volume=_f("volume", 0.0),
    ))


def parse_candles(payload: dict[str, Any]) -> list[PriceSample]:
    """Ascending PriceSamples from a history payload; malformed rows are skipped."""
    if not isinstance(payload, dict):
        return []
    if payload.get("s") not in (None, "ok") and not payload.get("success"):
        return []
    samples = []
    for row in payload.get("candles") or []:
        try:
            ts, o, h, l, c = (float(x) for x in row[:5])
            vol = float(row[5]) if len(row) > 5 else 0.0
        except (TypeError, ValueError, IndexError):
            continue
        samples.append(PriceSample(timestamp=ts, open=o, high=h, low=l, close=c, volume=vol))
    samples.sort(key=lambda s: s.timestamp)
    return samples


class MarketDataClient:
    def __init__(self, base_url: str, timeout: float = 2.5, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=2.0),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, session: BrokerSession, path: str, params: dict) -> dict:
        check = session.check()
        if isinstance(check, SessionExpired):
            raise MarketDataError(f"session invalid: {check.reason}")
        try:
            resp = await self._get_client().get(
                self.base_url + path,
                params=params,
                headers={"Authorization": session.authorization},
            )
            resp.raise_for_status()
            return resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as e:
            raise MarketDataError(f"{path} failed: {e}") from e

    async def get_latest_quote(self, session: BrokerSession, symbol: str) -> Quote:
        """Latest quote for one symbol. Raises MarketDataError."""
        payload = await self._get(session, "/api/market-data/quotes", {"symbols": symbol})
        result = parse_quote(symbol, payload)
        if isinstance(result, QuoteErr):
            raise MarketDataError(f"{symbol}: {result.message} (code={result.code})")
        return result.quote

    async def get_history(
        self,
        session: BrokerSession,
        symbol: str,
        resolution: str = "5",
        limit: int = 100,
        lookback_days: int = 5,
    ) -> list[PriceSample]:
        """Last `limit` candles (ascending) for seeding the indicator window."""
        now = int(time.time())
        params = {
            "symbol": symbol,
            "resolution": str(resolution),
            "date_format": "0",
            "range_from": str(now - lookback_days * 86400),
            "range_to": str(now),
            "cont_flag": "1",
        }
        payload = await self._get(session, "/api/market-data/historical", params)
        samples = parse_candles(payload)
        logger.debug(f"[MDS] {symbol} history: {len(samples)} candles (limit {limit})")
        return samples[-int(limit):] if limit else samples
