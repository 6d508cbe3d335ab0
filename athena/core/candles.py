import math
from collections import deque
from dataclasses import replace
from typing import Optional, Sequence

from athena.constants import Pattern
from athena.utils.candle import Candle, Tick
from athena.utils.logger import log

MIN_CAPACITY = 100
MAX_CAPACITY = 1000

class CandleAggregator:
    """Turns per-symbol tick streams into fixed-width OHLCV candles.

    One open candle per symbol; sealed candles are immutable history kept in a
    bounded deque (oldest dropped once `capacity` is exceeded).
    """

    def __init__(self, timeframe: int = 60, capacity: int = MIN_CAPACITY):
        self.timeframe = max(1, int(timeframe))
        self.capacity = max(MIN_CAPACITY, min(int(capacity), MAX_CAPACITY))
        self._history: dict[str, deque[Candle]] = {}
        self._open: dict[str, Candle] = {}

    def set_timeframe(self, seconds: int):
        """Applies to candles opened from now on; history is not re-bucketed."""
        seconds = int(seconds)
        if seconds < 1:
            log.warning("Ignoring candle timeframe %ss (must be >= 1)", seconds)
            return
        self.timeframe = seconds
        log.info("Candle timeframe set to %ds", seconds)

    def init_symbol(self, symbol: str):
        if symbol not in self._history:
            self._history[symbol] = deque(maxlen=self.capacity)

    def symbols(self) -> list[str]:
        return list(self._history)

    # ------------------------------------------------------------------
    def add_tick(self, symbol: str, tick: Tick) -> Optional[Candle]:
        """Fold a tick into the open candle. Returns the candle sealed by this tick, if any."""
        if not symbol or tick is None or not tick.is_valid():
            log.warning("Dropping malformed tick for %r: %r", symbol, tick)
            return None

        self.init_symbol(symbol)
        bucket = math.floor(tick.timestamp / self.timeframe) * self.timeframe
        current = self._open.get(symbol)

        if current is not None and bucket < current.timestamp:
            log.warning("Dropping out-of-order tick for %s (%.0f < open candle %.0f)",
                        symbol, bucket, current.timestamp)
            return None

        if current is None or bucket != current.timestamp:
            sealed = current
            if sealed is not None:
                self._history[symbol].append(sealed)
            self._open[symbol] = Candle(
                timestamp=float(bucket),
                open=tick.price, high=tick.price, low=tick.price, close=tick.price,
                volume=tick.volume, symbol=symbol,
            )
            return sealed

        self._open[symbol] = replace(
            current,
            high=max(current.high, tick.price),
            low=min(current.low, tick.price),
            close=tick.price,
            volume=current.volume + tick.volume,
        )
        return None

    def add_candle(self, symbol: str, candle: Candle):
        """Append an already-closed candle (warm-up history / backtests)."""
        self.init_symbol(symbol)
        self._history[symbol].append(replace(candle, symbol=symbol))

    def get_candles(self, symbol: str, include_open: bool = True) -> list[Candle]:
        """Candles for `symbol`, oldest first, most recent last."""
        out = list(self._history.get(symbol, ()))
        if include_open and symbol in self._open:
            out.append(self._open[symbol])
        return out

    def sealed(self, symbol: str) -> list[Candle]:
        return self.get_candles(symbol, include_open=False)

    def open_candle(self, symbol: str) -> Optional[Candle]:
        return self._open.get(symbol)

    def candle_map(self) -> dict[str, list[Candle]]:
        return {s: self.sealed(s) for s in self._history}

    def estimate_volume(self, symbol: str, price: float) -> float:
        """Synthetic volume for venues that stream quotes only."""
        candles = self.get_candles(symbol)
        if len(candles) < 2:
            return 1.0
        change = abs(price - candles[-2].close)
        return float(max(1, round(change * 1000)))

    def detect_pattern(self, symbol: str) -> Optional[Pattern]:
        candles = self.sealed(symbol)
        if len(candles) < 3:
            log.debug("Not enough sealed candles for pattern detection on %s", symbol)
            return None
        return classify_pattern(candles[-3:])

# ----------------------------------------------------------------------
def _engulfs(prev: Candle, cur: Candle) -> Optional[Pattern]:
    if prev.bearish and cur.bullish and cur.open <= prev.close and cur.close >= prev.open \
            and cur.body > prev.body:
        return Pattern.BULLISH_ENGULFING
    if prev.bullish and cur.bearish and cur.open >= prev.close and cur.close <= prev.open \
            and cur.body > prev.body:
        return Pattern.BEARISH_ENGULFING
    return None

def _is_doji(c: Candle) -> bool:
    return c.body <= c.range * 0.1

def _is_hammer(c: Candle) -> bool:
    upper = c.high - c.close
    lower = c.open - c.low
    return c.bullish and upper <= c.body * 0.3 and c.body <= lower * 0.3

def _is_shooting_star(c: Candle) -> bool:
    lower = c.close - c.low
    upper = c.high - c.open
    return c.bearish and lower <= c.body * 0.3 and upper >= c.body * 2

def _star(first: Candle, middle: Candle, last: Candle) -> Optional[Pattern]:
    small_middle = middle.body <= middle.range * 0.3
    if not small_middle:
        return None
    if first.bearish and last.bullish and last.close > first.open:
        return Pattern.MORNING_STAR
    if first.bullish and last.bearish and last.close < first.open:
        return Pattern.EVENING_STAR
    return None

def _harami(prev: Candle, cur: Candle) -> Optional[Pattern]:
    if prev.bearish and cur.bullish and cur.open > prev.close and cur.close < prev.open:
        return Pattern.BULLISH_HARAMI
    if prev.bullish and cur.bearish and cur.open < prev.close and cur.close > prev.open:
        return Pattern.BEARISH_HARAMI
    return None

def classify_pattern(candles: Sequence[Candle]) -> Optional[Pattern]:
    """Classify the last 2-3 candles. Checks run in a fixed order, first hit wins."""
    if len(candles) < 2:
        return None
    prev, cur = candles[-2], candles[-1]

    engulfing = _engulfs(prev, cur)
    if engulfing:
        return engulfing
    if _is_doji(cur):
        return Pattern.DOJI
    if _is_hammer(cur):
        return Pattern.HAMMER
    star = _star(candles[-3], prev, cur) if len(candles) >= 3 else None
    if star is Pattern.MORNING_STAR:
        return star
    if _is_shooting_star(cur):
        return Pattern.SHOOTING_STAR
    if star is Pattern.EVENING_STAR:
        return star
    return _harami(prev, cur)
