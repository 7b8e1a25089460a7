"""TradeStateMachine: per-entry trade lifecycle driven by price, HMA and crossover.

States:
    WAITING    : armed, watching for a crossover above the HMA
    ENTERED    : position open, tracking target / stop-loss, mark-to-market P&L
    TARGET_HIT : closed at or above target (terminal)
    SL_HIT     : closed at or below stop-loss (terminal)

Legal transitions:
    WAITING     → ENTERED    (ABOVE crossover with a valid HMA value)
    ENTERED     → SL_HIT     (price <= stop-loss, checked first)
    ENTERED     → TARGET_HIT (price >= target)
    TARGET_HIT  → WAITING    (explicit re-arm only)
    SL_HIT      → WAITING    (explicit re-arm only)

Order placement never feeds back into these transitions.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Optional

from crossover import Crossover

logger = logging.getLogger(__name__)

REMARK_ENTRY = "crossover entry"
REMARK_TARGET = "target hit"
REMARK_STOP = "stop loss hit"


class TradeStatus(Enum):
    WAITING    = auto()
    ENTERED    = auto()
    TARGET_HIT = auto()
    SL_HIT     = auto()


_ALLOWED: dict[TradeStatus, set[TradeStatus]] = {
    TradeStatus.WAITING:    {TradeStatus.ENTERED},
    TradeStatus.ENTERED:    {TradeStatus.TARGET_HIT, TradeStatus.SL_HIT},
    TradeStatus.TARGET_HIT: {TradeStatus.WAITING},
    TradeStatus.SL_HIT:     {TradeStatus.WAITING},
}

TERMINAL = (TradeStatus.TARGET_HIT, TradeStatus.SL_HIT)

CONTRACT_TYPES = ("CE", "PE")
ENTRY_METHODS = ("MARKET", "LIMIT")


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass(frozen=True)
class MonitorEntry:
    symbol: str
    contract_type: str
    lots: int
    target_points: float
    stop_loss_points: float
    entry_method: str = "MARKET"
    id: str = field(default_factory=lambda: f"mon_{uuid.uuid4().hex[:12]}")
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not str(self.symbol or "").strip():
            raise ValueError("Symbol is required")
        if self.contract_type not in CONTRACT_TYPES:
            raise ValueError(f"contract_type must be one of {CONTRACT_TYPES}")
        if self.entry_method not in ENTRY_METHODS:
            raise ValueError(f"entry_method must be one of {ENTRY_METHODS}")
        if int(self.lots) < 1:
            raise ValueError("lots must be >= 1")
        if float(self.target_points) <= 0 or float(self.stop_loss_points) <= 0:
            raise ValueError("target_points and stop_loss_points must be > 0")

    @property
    def key(self) -> tuple[str, str]:
        """Membership key: one slot per symbol + contract type."""
        return (self.symbol.upper(), self.contract_type)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["added_at"] = _iso(self.added_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorEntry":
        added_at = data.get("added_at")
        return cls(
            id=str(data["id"]),
            symbol=str(data["symbol"]),
            contract_type=str(data["contract_type"]).upper(),
            lots=int(data["lots"]),
            target_points=float(data["target_points"]),
            stop_loss_points=float(data["stop_loss_points"]),
            entry_method=str(data.get("entry_method") or "MARKET").upper(),
            added_at=datetime.fromisoformat(added_at) if added_at else datetime.now(timezone.utc),
        )


@dataclass
class TradeState:
    status: TradeStatus = TradeStatus.WAITING
    entry_price: Optional[float] = None
    current_price: Optional[float] = None
    target_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    quantity: int = 0
    pnl: float = 0.0
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.name,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "target_price": self.target_price,
            "stop_loss_price": self.stop_loss_price,
            "quantity": self.quantity,
            "pnl": self.pnl,
            "entry_time": _iso(self.entry_time),
            "exit_time": _iso(self.exit_time),
        }


@dataclass(frozen=True)
class TradeEvent:
    """Emitted on every state transition; becomes one trade log entry."""
    status: TradeStatus
    action: str             # BUY on entry, SELL on exit
    price: float
    quantity: int
    pnl: Optional[float]
    remarks: str
    timestamp: datetime


class TradeStateMachine:
    """Governs one entry's trade lifecycle with logging and guard checks."""

    def __init__(self, entry: MonitorEntry, lot_size: int) -> None:
        self.entry = entry
        self.lot_size = int(lot_size)
        self.state = TradeState()

    # ── read ──────────────────────────────────────────────────────────────────

    @property
    def status(self) -> TradeStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.state.status in TERMINAL

    # ── transitions ──────────────────────────────────────────────────────────

    def transition(self, new_status: TradeStatus, reason: str = "") -> bool:
        """Attempt a status transition. Returns True if allowed, False if blocked."""
        allowed = _ALLOWED.get(self.state.status, set())

        if new_status not in allowed:
            logger.warning(
                f"[STATE] {self.entry.symbol} blocked illegal transition "
                f"{self.state.status.name} → {new_status.name}"
                + (f" ({reason})" if reason else "")
            )
            return False

        previous = self.state.status
        self.state.status = new_status
        logger.info(
            f"[STATE] {self.entry.symbol} {previous.name} → {new_status.name}"
            + (f" | {reason}" if reason else "")
        )
        return True

    def on_tick(
        self,
        price: float,
        indicator: Optional[float],
        signal: Crossover,
        now: Optional[datetime] = None,
    ) -> Optional[TradeEvent]:
        """Feed one tick. Returns the event for a transition, None otherwise."""
        now = now or datetime.now(timezone.utc)
        status = self.state.status

        if status == TradeStatus.WAITING:
            self.state.current_price = price
            # No entry without a fully formed HMA
            if indicator is None or signal != Crossover.ABOVE:
                return None
            return self._enter(price, indicator, now)

        if status == TradeStatus.ENTERED:
            self.state.current_price = price
            self.state.pnl = (price - self.state.entry_price) * self.state.quantity
            # SL wins when both thresholds are satisfied
            if price <= self.state.stop_loss_price:
                return self._exit(TradeStatus.SL_HIT, price, REMARK_STOP, now)
            if price >= self.state.target_price:
                return self._exit(TradeStatus.TARGET_HIT, price, REMARK_TARGET, now)
            return None

        return None

    def restart(self) -> bool:
        """Start a fresh WAITING cycle after a terminal state."""
        if not self.transition(TradeStatus.WAITING, "re-armed"):
            return False
        self.state = TradeState(current_price=self.state.current_price)
        return True

    def _enter(self, price: float, indicator: float, now: datetime) -> Optional[TradeEvent]:
        if not self.transition(TradeStatus.ENTERED, f"price {price} crossed above HMA {indicator:.2f}"):
            return None
        s = self.state
        s.entry_price = price
        s.target_price = price + float(self.entry.target_points)
        s.stop_loss_price = price - float(self.entry.stop_loss_points)
        s.quantity = int(self.entry.lots) * self.lot_size
        s.pnl = 0.0
        s.entry_time = now
        s.exit_time = None
        return TradeEvent(
            status=TradeStatus.ENTERED,
            action="BUY",
            price=price,
            quantity=s.quantity,
            pnl=None,
            remarks=REMARK_ENTRY,
            timestamp=now,
        )

    def _exit(self, status: TradeStatus, price: float, remarks: str, now: datetime) -> Optional[TradeEvent]:
        if not self.transition(status, f"price {price}"):
            return None
        s = self.state
        s.pnl = (price - s.entry_price) * s.quantity
        s.exit_time = now
        return TradeEvent(
            status=status,
            action="SELL",
            price=price,
            quantity=s.quantity,
            pnl=s.pnl,
            remarks=remarks,
            timestamp=now,
        )

    # ── serialisation for broadcast ──────────────────────────────────────────

    def to_dict(self) -> dict:
        return {"entry": self.entry.to_dict(), "lot_size": self.lot_size, **self.state.to_dict()}
