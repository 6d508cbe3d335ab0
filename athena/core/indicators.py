import math
from dataclasses import dataclass, field, asdict
from itertools import combinations
from typing import Sequence

import numpy as np

from athena.utils.candle import Candle

RSI_PERIOD = 14
MA_PERIOD = 20
STOCH_PERIOD, STOCH_SMOOTH = 14, 3
ADX_PERIOD = 14
MACD_FAST, MACD_SLOW, MACD_SIGNAL = 12, 26, 9
SENTIMENT_WINDOW = 10
CORRELATION_WINDOW = 50

# candles needed before a field carries a real reading; below this it stays 0
MIN_CANDLES = {
    "rsi": RSI_PERIOD + 1,
    "stochastic": STOCH_PERIOD,
    "adx": ADX_PERIOD + 1,
    "moving_average": MA_PERIOD,
    "bollinger": MA_PERIOD,
    "volatility": MA_PERIOD,
    "sentiment": 2 * SENTIMENT_WINDOW,
    "macd": MACD_SLOW,
    "macd_signal": MACD_SLOW + MACD_SIGNAL,
    "obv": 2,
}

@dataclass(frozen=True)
class Bands:
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0

    @property
    def width_pct(self) -> float:
        if self.middle == 0:
            return 0.0
        return (self.upper - self.lower) / self.middle * 100

    def position(self, price: float) -> float:
        """0 at the lower band, 1 at the upper band."""
        span = self.upper - self.lower
        return (price - self.lower) / span if span > 0 else 0.5

@dataclass(frozen=True)
class Macd:
    line: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0

@dataclass(frozen=True)
class Stochastic:
    k: float = 0.0
    d: float = 0.0

@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: float = 0.0
    moving_average: float = 0.0
    volatility: float = 0.0
    bollinger: Bands = field(default_factory=Bands)
    macd: Macd = field(default_factory=Macd)
    stochastic: Stochastic = field(default_factory=Stochastic)
    adx: float = 0.0
    obv: float = 0.0
    sentiment: float = 0.0
    samples: int = 0                        # candles the snapshot was computed from

    def available(self, name: str) -> bool:
        """True once `name` was computed from enough history (0 otherwise means 'not yet')."""
        return self.samples >= MIN_CANDLES.get(name, 0)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "IndicatorSnapshot":
        data = dict(data or {})
        return cls(
            rsi=float(data.get("rsi", 0.0)),
            moving_average=float(data.get("moving_average", 0.0)),
            volatility=float(data.get("volatility", 0.0)),
            bollinger=Bands(**data.get("bollinger", {})),
            macd=Macd(**data.get("macd", {})),
            stochastic=Stochastic(**data.get("stochastic", {})),
            adx=float(data.get("adx", 0.0)),
            obv=float(data.get("obv", 0.0)),
            sentiment=float(data.get("sentiment", 0.0)),
            samples=int(data.get("samples", 0)),
        )

class IndicatorEngine:
    """Computes the full indicator snapshot from a candle series.

    Every call replaces the previous snapshot wholesale. Indicators without
    enough history report 0; every division by zero resolves to 0.
    """

    def __init__(self):
        self.snapshot = IndicatorSnapshot()

    def update(self, candles: Sequence[Candle]) -> IndicatorSnapshot:
        n = len(candles)
        if n == 0:
            self.snapshot = IndicatorSnapshot()
            return self.snapshot

        closes = np.array([c.close for c in candles], dtype=np.float64)
        highs = np.array([c.high for c in candles], dtype=np.float64)
        lows = np.array([c.low for c in candles], dtype=np.float64)
        vols = np.array([c.volume for c in candles], dtype=np.float64)

        ma = self._sma(closes, MA_PERIOD)
        std = float(np.std(closes[-MA_PERIOD:])) if n >= MA_PERIOD else 0.0
        bands = Bands(ma + 2 * std, ma, ma - 2 * std) if n >= MA_PERIOD else Bands()

        snap = IndicatorSnapshot(
            rsi=self._rsi(closes, RSI_PERIOD),
            moving_average=ma,
            volatility=self._volatility(closes, MA_PERIOD),
            bollinger=bands,
            macd=self._macd(closes),
            stochastic=self._stochastic(highs, lows, closes, STOCH_PERIOD, STOCH_SMOOTH),
            adx=self._adx(highs, lows, closes, ADX_PERIOD),
            obv=self._obv(closes, vols),
            sentiment=self._sentiment(closes, SENTIMENT_WINDOW),
            samples=n,
        )
        self.snapshot = _finite(snap)
        return self.snapshot

    def correlate(self, candle_map: dict[str, Sequence[Candle]]) -> dict[tuple[str, str], float]:
        """Pearson correlation over the last 50 closes for every symbol pair with enough data."""
        table: dict[tuple[str, str], float] = {}
        ready = {s: c for s, c in candle_map.items() if len(c) >= CORRELATION_WINDOW}
        for a, b in combinations(sorted(ready), 2):
            x = np.array([c.close for c in ready[a][-CORRELATION_WINDOW:]], dtype=np.float64)
            y = np.array([c.close for c in ready[b][-CORRELATION_WINDOW:]], dtype=np.float64)
            table[(a, b)] = self._pearson(x, y)
        return table

    @staticmethod
    def moving_average(candles: Sequence[Candle], period: int) -> float:
        closes = np.array([c.close for c in candles], dtype=np.float64)
        return IndicatorEngine._sma(closes, period)

    # ---- Helpers ----
    @staticmethod
    def _sma(data: np.ndarray, period: int) -> float:
        if period < 1 or len(data) < period:
            return 0.0
        return float(np.mean(data[-period:]))

    @staticmethod
    def _ema(data: np.ndarray, period: int) -> float:
        """Seeded with the value `period` bars back, then the k=2/(period+1) recurrence."""
        if len(data) < period:
            return 0.0
        k = 2.0 / (period + 1)
        val = float(data[-period])
        for d in data[-period + 1:]:
            val = float(d) * k + val * (1 - k)
        return val

    @staticmethod
    def _rsi(closes: np.ndarray, period: int = 14) -> float:
        if len(closes) < period + 1:
            return 0.0
        deltas = np.diff(closes[-(period + 1):])
        gain = float(np.mean(np.maximum(deltas, 0)))
        loss = float(np.mean(np.maximum(-deltas, 0)))
        if gain == 0 and loss == 0:
            return 50.0                     # no movement: neutral
        if loss == 0:
            return 100.0
        rs = gain / loss
        return 100.0 - 100.0 / (1.0 + rs)

    @staticmethod
    def _volatility(closes: np.ndarray, period: int = 20) -> float:
        if len(closes) < period:
            return 0.0
        window = closes[-period:]
        mean = float(np.mean(window))
        if mean == 0:
            return 0.0
        return float(np.std(window)) / mean * 100

    @staticmethod
    def _macd(closes: np.ndarray) -> Macd:
        n = len(closes)
        if n < MACD_SLOW:
            return Macd()
        # line value for every bar that has a full slow window
        line_series = np.array([
            IndicatorEngine._ema(closes[:t + 1], MACD_FAST) - IndicatorEngine._ema(closes[:t + 1], MACD_SLOW)
            for t in range(MACD_SLOW - 1, n)
        ])
        line = float(line_series[-1])
        if n < MACD_SLOW + MACD_SIGNAL:
            return Macd(line=line)
        signal = IndicatorEngine._ema(line_series, MACD_SIGNAL)
        return Macd(line=line, signal=signal, histogram=line - signal)

    @staticmethod
    def _stochastic(highs, lows, closes, k_period=14, d_period=3) -> Stochastic:
        n = len(closes)
        if n < k_period:
            return Stochastic()
        k_vals = []
        for end in range(n, max(k_period, n - d_period + 1) - 1, -1):
            hh = float(np.max(highs[end - k_period:end]))
            ll = float(np.min(lows[end - k_period:end]))
            span = hh - ll
            k_vals.append((float(closes[end - 1]) - ll) / span * 100 if span > 0 else 0.0)
        return Stochastic(k=k_vals[0], d=float(np.mean(k_vals)))

    @staticmethod
    def _adx(highs, lows, closes, period=14) -> float:
        if len(closes) < period + 1:
            return 0.0
        up = highs[1:] - highs[:-1]
        down = lows[:-1] - lows[1:]
        plus_dm = np.where((up > down) & (up > 0), up, 0.0)
        minus_dm = np.where((down > up) & (down > 0), down, 0.0)
        tr = np.maximum(
            highs[1:] - lows[1:],
            np.maximum(np.abs(highs[1:] - closes[:-1]), np.abs(lows[1:] - closes[:-1])),
        )

        tr_s = float(np.sum(tr[:period]))
        plus_s = float(np.sum(plus_dm[:period]))
        minus_s = float(np.sum(minus_dm[:period]))
        dx = [IndicatorEngine._dx(plus_s, minus_s, tr_s)]
        for i in range(period, len(tr)):
            tr_s = tr_s - tr_s / period + tr[i]
            plus_s = plus_s - plus_s / period + plus_dm[i]
            minus_s = minus_s - minus_s / period + minus_dm[i]
            dx.append(IndicatorEngine._dx(plus_s, minus_s, tr_s))

        if len(dx) < period:
            return float(np.mean(dx))
        adx = float(np.mean(dx[:period]))
        for d in dx[period:]:
            adx = (adx * (period - 1) + d) / period
        return adx

    @staticmethod
    def _dx(plus_s: float, minus_s: float, tr_s: float) -> float:
        if tr_s <= 0:
            return 0.0
        plus_di = 100 * plus_s / tr_s
        minus_di = 100 * minus_s / tr_s
        total = plus_di + minus_di
        if total == 0:
            return 0.0
        return 100 * abs(plus_di - minus_di) / total

    @staticmethod
    def _obv(closes: np.ndarray, vols: np.ndarray) -> float:
        if len(closes) < 2:
            return 0.0
        direction = np.sign(np.diff(closes))
        return float(np.sum(direction * vols[1:]))

    @staticmethod
    def _sentiment(closes: np.ndarray, window: int = 10) -> float:
        if len(closes) < 2 * window:
            return 0.0
        recent = float(np.mean(closes[-window:]))
        prior = float(np.mean(closes[-2 * window:-window]))
        if prior == 0:
            return 0.0
        return (recent - prior) / prior * 100

    @staticmethod
    def _pearson(x: np.ndarray, y: np.ndarray) -> float:
        dx = x - np.mean(x)
        dy = y - np.mean(y)
        denom = math.sqrt(float(np.sum(dx * dx)) * float(np.sum(dy * dy)))
        if denom == 0:
            return 0.0
        return float(np.sum(dx * dy)) / denom

def _clean(v: float) -> float:
    return float(v) if math.isfinite(v) else 0.0

def _finite(s: IndicatorSnapshot) -> IndicatorSnapshot:
    """Last line of defence: no NaN/inf ever leaves the engine."""
    return IndicatorSnapshot(
        rsi=_clean(s.rsi),
        moving_average=_clean(s.moving_average),
        volatility=_clean(s.volatility),
        bollinger=Bands(_clean(s.bollinger.upper), _clean(s.bollinger.middle), _clean(s.bollinger.lower)),
        macd=Macd(_clean(s.macd.line), _clean(s.macd.signal), _clean(s.macd.histogram)),
        stochastic=Stochastic(_clean(s.stochastic.k), _clean(s.stochastic.d)),
        adx=_clean(s.adx),
        obv=_clean(s.obv),
        sentiment=_clean(s.sentiment),
        samples=s.samples,
    )
