"""MonitorCoordinator: owns the monitored set and drives every entry per tick.

Responsibilities (this file only):
  - Add / remove / clear / re-arm monitored entries (one per symbol + CE/PE)
  - Persist the monitored set after every change, restore it on startup
  - tick(): fetch each symbol's quote concurrently (bounded timeout), fold it
    into its current candle, update the HMA when a candle closes, detect the
    crossover, drive its TradeStateMachine
  - Write one trade log entry per state transition; in LIVE mode place the
    order first and mark the entry REJECTED if the broker refuses it
  - Poll loop with market-hours gating; pauses itself when the set is empty

What this does NOT do:
  - Persist indicator or trade state (rebuilt from fresh data after restart)
  - Retry a failed fetch (the next tick does)
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from broker import BrokerClient, BrokerSession, OrderErr, format_order
from config import config
from crossover import Crossover, detect_crossover
from database import KeyValueStore
from indicators import CandleBuilder, IndicatorEngine, resolution_seconds
from indices import lot_size
from market_data import MarketDataClient, MarketDataError
from trade_log import TradeLogStore
from trade_state_machine import MonitorEntry, TradeEvent, TradeStateMachine
from utils import is_market_open

logger = logging.getLogger(__name__)

MONITORED_KEY = "monitored_symbols"


class MonitorError(Exception):
    pass


class DuplicateSymbolError(MonitorError):
    pass


class UnknownEntryError(MonitorError):
    pass


@dataclass
class _Slot:
    entry: MonitorEntry
    machine: TradeStateMachine
    candles: CandleBuilder
    previous_price: Optional[float] = None
    last_tick_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self, indicator: dict) -> dict:
        return {
            **self.machine.to_dict(),
            "hma": indicator,
            "previous_price": self.previous_price,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_error": self.last_error,
        }


class MonitorCoordinator:
    def __init__(
        self,
        market_data: MarketDataClient,
        trade_log: TradeLogStore,
        store: KeyValueStore,
        broker: Optional[BrokerClient] = None,
        session_provider: Optional[Callable[[], BrokerSession]] = None,
        hma_period: Optional[int] = None,
        market_open_fn: Callable[[], bool] = is_market_open,
        on_tick: Optional[Callable[[list], Awaitable[None]]] = None,
    ) -> None:
        self.market_data = market_data
        self.trade_log = trade_log
        self.store = store
        self.broker = broker
        self.session_provider = session_provider or (lambda: BrokerSession.from_config(config))
        self.indicators = IndicatorEngine(hma_period or int(config.get("hma_period", 55)))
        self.market_open_fn = market_open_fn
        self.on_tick = on_tick

        self._slots: dict[str, _Slot] = {}
        self._enabled = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self.tick_count = 0

    # ── read ──────────────────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        """True while the poll loop is running."""
        return self._task is not None and not self._task.done()

    @property
    def is_paused(self) -> bool:
        return self._enabled and not self._slots

    @property
    def trading_mode(self) -> str:
        return str(config.get("trading_mode", "paper")).upper()

    def entries(self) -> list[MonitorEntry]:
        return [slot.entry for slot in self._slots.values()]

    def snapshot(self) -> list[dict]:
        return [slot.to_dict(self.indicators.to_dict(key)) for key, slot in self._slots.items()]

    def get(self, entry_id: str) -> dict:
        slot = self._slots.get(entry_id)
        if slot is None:
            raise UnknownEntryError(f"No monitored entry {entry_id}")
        return slot.to_dict(self.indicators.to_dict(entry_id))

    # ── membership ───────────────────────────────────────────────────────────

    async def add_symbol(self, entry: MonitorEntry, persist: bool = True) -> MonitorEntry:
        for slot in self._slots.values():
            if slot.entry.key == entry.key:
                raise DuplicateSymbolError(
                    f"{entry.symbol} {entry.contract_type} is already being monitored"
                )
        if entry.id in self._slots:
            raise DuplicateSymbolError(f"Entry id {entry.id} already exists")

        slot = _Slot(
            entry=entry,
            machine=TradeStateMachine(entry, lot_size(entry.symbol)),
            candles=CandleBuilder(resolution_seconds(config.get("history_resolution", "5"))),
        )
        self._slots[entry.id] = slot
        self.indicators.ensure(entry.id)
        logger.info(
            f"[MONITOR] Added {entry.symbol} {entry.contract_type} | lots={entry.lots} "
            f"lot_size={slot.machine.lot_size} target={entry.target_points} sl={entry.stop_loss_points} "
            f"| Total={len(self._slots)}"
        )

        if persist:
            await self._persist()
        if config.get("seed_history_on_add", False):
            await self._seed(slot)
        if self._enabled and not self.is_active:
            self._spawn()
        return entry

    async def remove_symbol(self, entry_id: str) -> MonitorEntry:
        slot = self._slots.pop(entry_id, None)
        if slot is None:
            raise UnknownEntryError(f"No monitored entry {entry_id}")
        self.indicators.drop(entry_id)
        logger.info(f"[MONITOR] Removed {slot.entry.symbol} {slot.entry.contract_type} | Total={len(self._slots)}")
        await self._persist()
        if not self._slots:
            logger.info("[MONITOR] Monitored set empty, pausing poll loop")
            self._wakeup.set()
        return slot.entry

    async def clear_all(self) -> int:
        removed = len(self._slots)
        self._slots.clear()
        self.indicators.clear()
        await self._persist()
        self._wakeup.set()
        logger.info(f"[MONITOR] Cleared {removed} monitored entries, pausing poll loop")
        return removed

    def rearm(self, entry_id: str) -> bool:
        """Start a fresh WAITING cycle for an entry that hit target or stop-loss."""
        slot = self._slots.get(entry_id)
        if slot is None:
            raise UnknownEntryError(f"No monitored entry {entry_id}")
        return slot.machine.restart()

    # ── persistence ──────────────────────────────────────────────────────────

    async def _persist(self) -> bool:
        payload = {
            "symbols": [slot.entry.to_dict() for slot in self._slots.values()],
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.store.set(MONITORED_KEY, payload)
            return True
        except Exception as e:
            logger.warning(f"[MONITOR] Could not persist monitored set; it may not survive a restart: {e}")
            return False

    async def restore(self) -> int:
        """Re-add the persisted monitored set. Trade state starts over in WAITING."""
        try:
            payload = await self.store.get(MONITORED_KEY) or {}
        except Exception as e:
            logger.warning(f"[MONITOR] Could not read persisted monitored set: {e}")
            return 0

        restored = 0
        for item in payload.get("symbols") or []:
            try:
                await self.add_symbol(MonitorEntry.from_dict(item), persist=False)
                restored += 1
            except (KeyError, TypeError, ValueError, MonitorError) as e:
                logger.warning(f"[MONITOR] Skipping persisted entry {item!r}: {e}")
        logger.info(f"[MONITOR] Restored {restored} monitored entries")
        return restored

    async def _seed(self, slot: _Slot) -> None:
        hma = self.indicators.ensure(slot.entry.id)
        try:
            samples = await asyncio.wait_for(
                self.market_data.get_history(
                    self.session_provider(),
                    slot.entry.symbol,
                    resolution=str(config.get("history_resolution", "5")),
                    limit=hma.capacity + 1,
                ),
                timeout=float(config.get("fetch_timeout_seconds", 3.0)) * 2,
            )
        except (asyncio.TimeoutError, MarketDataError) as e:
            logger.warning(f"[MONITOR] History seed failed for {slot.entry.symbol}: {e}")
            return
        if self._slots.get(slot.entry.id) is not slot:
            return
        # The still-forming candle is rebuilt from live ticks instead
        if samples and samples[-1].timestamp + slot.candles.interval > time.time():
            samples = samples[:-1]
        samples = samples[-hma.capacity:]
        self.indicators.seed(slot.entry.id, samples)
        if samples:
            slot.previous_price = samples[-1].close

    # ── tick ─────────────────────────────────────────────────────────────────

    async def tick(self) -> list[TradeEvent]:
        """One pass over every monitored entry. Never raises."""
        slots = list(self._slots.values())
        if not slots:
            return []
        session = self.session_provider()
        results = await asyncio.gather(
            *(self._process(slot, session) for slot in slots),
            return_exceptions=True,
        )
        self.tick_count += 1

        events = []
        for slot, result in zip(slots, results):
            if isinstance(result, BaseException):
                slot.last_error = str(result)
                logger.warning(f"[MONITOR] {slot.entry.symbol} tick failed: {result!r}")
            elif result is not None:
                events.append(result)
        return events

    async def _process(self, slot: _Slot, session: BrokerSession) -> Optional[TradeEvent]:
        symbol = slot.entry.symbol
        try:
            quote = await asyncio.wait_for(
                self.market_data.get_latest_quote(session, symbol),
                timeout=float(config.get("fetch_timeout_seconds", 3.0)),
            )
        except asyncio.TimeoutError:
            slot.last_error = "quote fetch timed out"
            logger.warning(f"[MONITOR] {symbol} quote fetch timed out, skipping this tick")
            return None
        except MarketDataError as e:
            slot.last_error = str(e)
            logger.warning(f"[MONITOR] {symbol} quote fetch failed, skipping this tick: {e}")
            return None

        # Removed (or removed and re-added) while the fetch was in flight
        if self._slots.get(slot.entry.id) is not slot:
            logger.debug(f"[MONITOR] Discarding quote for removed entry {slot.entry.id}")
            return None

        now = datetime.now(timezone.utc)
        price = quote.last_price
        closed = slot.candles.on_tick(price, quote.timestamp, quote.volume)
        if closed is not None:
            indicator = self.indicators.update(slot.entry.id, closed)
        else:
            indicator = self.indicators.value(slot.entry.id)
        if indicator is None or slot.previous_price is None:
            signal = Crossover.NONE
        else:
            signal = detect_crossover(price, slot.previous_price, indicator)
        slot.previous_price = price
        slot.last_tick_at = now
        slot.last_error = None

        event = slot.machine.on_tick(price, indicator, signal, now)
        if event is not None:
            await self._record(slot, event, session)
        return event

    async def _record(self, slot: _Slot, event: TradeEvent, session: BrokerSession) -> None:
        mode = self.trading_mode
        order_type = slot.entry.entry_method if event.action == "BUY" else "MARKET"
        status = "COMPLETED"

        if mode == "LIVE":
            order = format_order(
                slot.entry.symbol,
                event.quantity,
                event.action,
                order_type=order_type,
                limit_price=event.price,
            )
            if self.broker is None:
                result = OrderErr(-1, "no broker client configured")
            else:
                result = await self.broker.place_order(session, order)
            if isinstance(result, OrderErr):
                status = "REJECTED"
                logger.error(
                    f"[ORDER] {event.action} {slot.entry.symbol} rejected ({result.code}): {result.message} "
                    f"| state still {event.status.name}"
                )

        await self.trade_log.append(
            symbol=slot.entry.symbol,
            action=event.action,
            quantity=event.quantity,
            price=event.price,
            order_type=order_type,
            status=status,
            pnl=event.pnl,
            remarks=event.remarks,
            trading_mode=mode,
            timestamp=event.timestamp,
        )

    # ── lifecycle ────────────────────────────────────────────────────────────

    def _spawn(self) -> None:
        self._wakeup.clear()
        self._task = asyncio.create_task(self._run(), name="monitor_loop")

    async def start(self) -> None:
        self._enabled = True
        if self.is_active:
            return
        if not self._slots:
            logger.info("[MONITOR] Nothing to monitor, loop paused until a symbol is added")
            return
        self._spawn()
        logger.info(f"[MONITOR] Started | entries={len(self._slots)} poll={config.get('poll_seconds')}s")

    async def stop(self) -> None:
        self._enabled = False
        self._wakeup.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[MONITOR] Stopped")

    async def _run(self) -> None:
        while self._enabled and self._slots:
            try:
                if self.market_open_fn():
                    await self.tick()
                    if self.on_tick is not None:
                        await self.on_tick(self.snapshot())
                else:
                    logger.debug("[MONITOR] Market closed, skipping tick")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"[MONITOR] Loop error: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=max(0.5, float(config.get("poll_seconds", 5.0))))
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            self._wakeup.clear()

        if self._enabled and not self._slots:
            logger.info("[MONITOR] Loop paused, no monitored symbols")
