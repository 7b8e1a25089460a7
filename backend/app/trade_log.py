"""TradeLogStore: append-only, date-bucketed trade history with retention.

Buckets are keyed by IST calendar date and persisted one KV key per day
(trade_log:YYYY-MM-DD), newest entry first inside a bucket. Statistics are
always derived from the buckets, never stored.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from database import KeyValueStore
from utils import ist_date_key, parse_date_key, to_ist

logger = logging.getLogger(__name__)

BUCKET_PREFIX = "trade_log:"
EXPORT_VERSION = 1

ACTIONS = ("BUY", "SELL")
STATUSES = ("PENDING", "COMPLETED", "REJECTED")
MODES = ("PAPER", "LIVE")


@dataclass(frozen=True)
class TradeLogEntry:
    id: str
    timestamp: datetime
    symbol: str
    action: str
    quantity: int
    price: float
    order_type: str
    status: str
    pnl: Optional[float]
    remarks: str
    trading_mode: str

    @property
    def is_realized(self) -> bool:
        """Counts towards win rate / average: has a pnl and was not rejected."""
        return self.pnl is not None and self.status != "REJECTED"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TradeLogEntry":
        pnl = data.get("pnl")
        entry = cls(
            id=str(data["id"]),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            symbol=str(data["symbol"]),
            action=str(data["action"]).upper(),
            quantity=int(data["quantity"]),
            price=float(data["price"]),
            order_type=str(data.get("order_type") or "MARKET").upper(),
            status=str(data.get("status") or "COMPLETED").upper(),
            pnl=float(pnl) if pnl is not None else None,
            remarks=str(data.get("remarks") or ""),
            trading_mode=str(data.get("trading_mode") or "PAPER").upper(),
        )
        if entry.action not in ACTIONS:
            raise ValueError(f"Invalid action {entry.action!r}")
        if entry.status not in STATUSES:
            raise ValueError(f"Invalid status {entry.status!r}")
        return entry


def _new_id(ts: datetime) -> str:
    return f"trade_{int(ts.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


class TradeLogStore:
    def __init__(
        self,
        store: KeyValueStore,
        retention_days: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.retention_days = int(retention_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._buckets: dict[str, list[TradeLogEntry]] = {}
        self._lock = asyncio.Lock()

    # ── load / persist ───────────────────────────────────────────────────────

    async def load(self) -> int:
        """Read every persisted bucket into memory. Returns the entry count."""
        buckets: dict[str, list[TradeLogEntry]] = {}
        try:
            for key in await self.store.keys(BUCKET_PREFIX):
                raw = await self.store.get(key) or []
                buckets[key[len(BUCKET_PREFIX):]] = [TradeLogEntry.from_dict(item) for item in raw]
        except Exception as e:
            logger.warning(f"[TRADELOG] Load failed, continuing with in-memory log only: {e}")
            return 0
        self._buckets = buckets
        await self.retention_sweep()
        total = sum(len(v) for v in self._buckets.values())
        logger.info(f"[TRADELOG] Loaded {total} entries across {len(self._buckets)} days")
        return total

    async def _persist_bucket(self, date_key: str) -> None:
        try:
            entries = self._buckets.get(date_key)
            if entries:
                await self.store.set(BUCKET_PREFIX + date_key, [e.to_dict() for e in entries])
            else:
                await self.store.delete(BUCKET_PREFIX + date_key)
        except Exception as e:
            logger.warning(f"[TRADELOG] Persist failed for {date_key}; entry kept in memory only: {e}")

    # ── writes ───────────────────────────────────────────────────────────────

    async def append(
        self,
        *,
        symbol: str,
        action: str,
        quantity: int,
        price: float,
        order_type: str = "MARKET",
        status: str = "COMPLETED",
        pnl: Optional[float] = None,
        remarks: str = "",
        trading_mode: str = "PAPER",
        timestamp: Optional[datetime] = None,
    ) -> TradeLogEntry:
        """Write a new entry into today's bucket. Appends are serialized."""
        async with self._lock:
            ts = timestamp or self._clock()
            entry = TradeLogEntry.from_dict({
                "id": _new_id(ts),
                "timestamp": ts.isoformat(),
                "symbol": symbol,
                "action": action,
                "quantity": quantity,
                "price": price,
                "order_type": order_type,
                "status": status,
                "pnl": pnl,
                "remarks": remarks,
                "trading_mode": trading_mode,
            })
            date_key = ist_date_key(ts)
            self._buckets.setdefault(date_key, []).insert(0, entry)
            await self.retention_sweep()
            await self._persist_bucket(date_key)
        logger.info(
            f"[TRADELOG] {entry.action} {entry.symbol} qty={entry.quantity} @ {entry.price} "
            f"| {entry.remarks} | status={entry.status} mode={entry.trading_mode}"
            + (f" | pnl={entry.pnl:.2f}" if entry.pnl is not None else "")
        )
        return entry

    async def retention_sweep(self, today=None) -> list[str]:
        """Drop whole buckets dated strictly before today - retention_days."""
        today = today or to_ist(self._clock()).date()
        cutoff = today - timedelta(days=self.retention_days)
        expired = [k for k in self._buckets if parse_date_key(k) < cutoff]
        for key in expired:
            del self._buckets[key]
            await self._persist_bucket(key)
        if expired:
            logger.info(f"[TRADELOG] Retention sweep removed {len(expired)} day(s) before {cutoff}")
        return expired

    async def clear(self) -> int:
        async with self._lock:
            removed = sum(len(v) for v in self._buckets.values())
            keys = list(self._buckets)
            self._buckets = {}
            for key in keys:
                await self._persist_bucket(key)
        logger.info(f"[TRADELOG] Cleared {removed} entries")
        return removed

    # ── reads ────────────────────────────────────────────────────────────────

    def dates(self) -> list[str]:
        """Bucket keys, most recent first."""
        return sorted(self._buckets, reverse=True)

    def query(self, date: Optional[str] = None, action: Optional[str] = None) -> list[TradeLogEntry]:
        """Entries for one date, or all dates flattened most-recent-first."""
        if date is not None:
            entries = list(self._buckets.get(date, []))
        else:
            entries = [e for key in self.dates() for e in self._buckets[key]]
        if action:
            action = action.upper()
            entries = [e for e in entries if e.action == action]
        return entries

    def stats(self) -> dict:
        today_key = ist_date_key(self._clock())
        today = self._buckets.get(today_key, [])
        every = self.query()
        realized = [e for e in every if e.is_realized]
        wins = [e for e in realized if e.pnl > 0]

        def _pnl(entries):
            return sum(e.pnl or 0.0 for e in entries if e.status != "REJECTED")

        return {
            "today_trades": len(today),
            "today_pnl": round(_pnl(today), 2),
            "total_trades": len(every),
            "total_pnl": round(_pnl(every), 2),
            "win_rate": round(len(wins) / len(realized) * 100, 2) if realized else 0,
            "avg_pnl": round(sum(e.pnl for e in realized) / len(realized), 2) if realized else 0,
        }

    # ── backup ───────────────────────────────────────────────────────────────

    def export(self) -> dict:
        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "logs": {key: [e.to_dict() for e in self._buckets[key]] for key in self.dates()},
        }

    async def import_logs(self, data: dict) -> dict:
        """Replace the whole store with an exported payload.

        Accepts the export() shape or a bare {date: [entries]} mapping. The
        payload is fully parsed before anything is replaced.
        """
        logs = data.get("logs") if isinstance(data, dict) and "logs" in data else data
        if not isinstance(logs, dict):
            raise ValueError("Import payload must map dates to entry lists")

        parsed: dict[str, list[TradeLogEntry]] = {}
        for key, items in logs.items():
            parse_date_key(key)
            if not isinstance(items, list):
                raise ValueError(f"Bucket {key} is not a list")
            parsed[key] = [TradeLogEntry.from_dict(item) for item in items]

        async with self._lock:
            touched = set(self._buckets) | set(parsed)
            self._buckets = {k: v for k, v in parsed.items() if v}
            expired = await self.retention_sweep()
            for key in sorted(touched):
                await self._persist_bucket(key)
        imported = sum(len(v) for v in self._buckets.values())
        logger.info(f"[TRADELOG] Imported {imported} entries across {len(self._buckets)} days")
        return {"imported": imported, "days": len(self._buckets), "expired_days": len(expired)}
