# Hull Moving Average indicator engine and tick-to-candle folding
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceSample:
    timestamp: float    # unix epoch seconds
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


def wma(values, period=None):
    """Linearly weighted average of the last `period` values (newest weighted highest)."""
    window = list(values)
    if period is not None:
        window = window[-period:]
    if not window:
        return None
    total = 0.0
    weight_sum = 0
    for weight, value in enumerate(window, start=1):
        total += value * weight
        weight_sum += weight
    return total / weight_sum


class HullMovingAverage:
    """HMA(n) = WMA(2*WMA(n/2) - WMA(n), sqrt(n)) over candle closes.

    Only the samples needed for a fully formed value are retained:
    n + floor(sqrt(n)) - 1. The value is unavailable (None) until n samples
    have been seen. Until sqrt(n) points of the inner difference series
    exist, the outer WMA runs over the points available.
    """

    def __init__(self, period=55):
        if int(period) < 2:
            raise ValueError("HMA period must be >= 2")
        self.period = int(period)
        self.half_period = self.period // 2
        self.sqrt_period = math.isqrt(self.period)
        self.capacity = self.period + self.sqrt_period - 1
        self.samples: deque[PriceSample] = deque(maxlen=self.capacity)
        self.current_value: Optional[float] = None
        self.last_update_time: Optional[float] = None

    def reset(self):
        """Reset indicator state"""
        self.samples.clear()
        self.current_value = None
        self.last_update_time = None

    @property
    def is_ready(self) -> bool:
        return self.current_value is not None

    def update(self, sample: PriceSample) -> Optional[float]:
        """Append a sample and return the recomputed value.

        Samples that are not strictly newer than the last retained one are ignored.
        """
        if self.samples and sample.timestamp <= self.samples[-1].timestamp:
            logger.debug(
                f"[HMA] Ignoring out-of-order sample ts={sample.timestamp} "
                f"(last={self.samples[-1].timestamp})"
            )
            return self.current_value

        self.samples.append(sample)
        self.last_update_time = sample.timestamp
        self.current_value = self._compute()
        return self.current_value

    def _compute(self) -> Optional[float]:
        closes = [s.close for s in self.samples]
        if len(closes) < self.period:
            return None

        # Inner series: 2*WMA(n/2) - WMA(n) ending at every close with a full WMA(n)
        diffs = []
        for end in range(self.period, len(closes) + 1):
            window = closes[end - self.period:end]
            diffs.append(2 * wma(window, self.half_period) - wma(window))

        return wma(diffs, self.sqrt_period)


def resolution_seconds(resolution) -> int:
    """Candle length for a broker resolution: "5" (minutes), "30S", "D"."""
    text = str(resolution or "").strip().upper()
    if text in ("D", "1D"):
        return 86400
    seconds = int(text[:-1]) if text.endswith("S") else int(text) * 60
    if seconds < 1:
        raise ValueError(f"Invalid resolution {resolution!r}")
    return seconds


@dataclass
class _LiveCandle:
    open_time: float
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def update(self, ltp: float, volume: float) -> None:
        self.high = max(self.high, ltp)
        self.low = min(self.low, ltp)
        self.close = ltp
        self.volume = volume

    def to_sample(self) -> PriceSample:
        return PriceSample(
            timestamp=self.open_time,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )


class CandleBuilder:
    """Folds quote ticks into fixed-interval candles.

    Only closed candles are handed to the HMA, so live data lands in the
    window on the same timescale as the history it was seeded with.
    """

    def __init__(self, interval_seconds: int) -> None:
        self.interval = int(interval_seconds)
        self._live: Optional[_LiveCandle] = None

    @property
    def live(self) -> Optional[_LiveCandle]:
        return self._live

    def on_tick(self, ltp: float, ts: float, volume: float = 0.0) -> Optional[PriceSample]:
        """Feed a tick. Returns the closed candle when the period rolled over."""
        open_time = float(int(ts) - int(ts) % self.interval)

        if self._live is None:
            self._live = _LiveCandle(open_time, ltp, ltp, ltp, ltp, volume)
            return None

        if open_time > self._live.open_time:
            closed = self._live.to_sample()
            self._live = _LiveCandle(open_time, ltp, ltp, ltp, ltp, volume)
            logger.debug(f"[HMA] Candle closed @ {closed.timestamp}: C={closed.close}")
            return closed

        if open_time < self._live.open_time:
            # Late tick for an already closed period
            return None

        self._live.update(ltp, volume)
        return None


class IndicatorEngine:
    """Per-symbol HMA state, keyed by monitor slot."""

    def __init__(self, period=55):
        self.period = int(period)
        self._series: dict[str, HullMovingAverage] = {}

    def ensure(self, key: str) -> HullMovingAverage:
        hma = self._series.get(key)
        if hma is None:
            hma = HullMovingAverage(self.period)
            self._series[key] = hma
        return hma

    def update(self, key: str, sample: PriceSample) -> Optional[float]:
        return self.ensure(key).update(sample)

    def seed(self, key: str, samples: Iterable[PriceSample]) -> Optional[float]:
        """Feed historical candles (oldest first) into a fresh window."""
        hma = self.ensure(key)
        hma.reset()
        for sample in samples:
            hma.update(sample)
        logger.info(
            f"[HMA] Seeded {key} with {len(hma.samples)} samples | "
            f"value={hma.current_value if hma.current_value is not None else 'unavailable'}"
        )
        return hma.current_value

    def value(self, key: str) -> Optional[float]:
        hma = self._series.get(key)
        return hma.current_value if hma else None

    def drop(self, key: str) -> None:
        self._series.pop(key, None)

    def clear(self) -> None:
        self._series.clear()

    def to_dict(self, key: str) -> dict:
        hma = self._series.get(key)
        if hma is None:
            return {"period": self.period, "value": None, "samples": 0, "last_update_time": None}
        return {
            "period": hma.period,
            "value": hma.current_value,
            "samples": len(hma.samples),
            "last_update_time": hma.last_update_time,
        }
