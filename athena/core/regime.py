from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np

from athena.config import NewsEvent
from athena.constants import Pattern, Trend
from athena.core.indicators import IndicatorSnapshot
from athena.utils.candle import Candle

TREND_WINDOW = 10
TREND_THRESHOLD = 0.001                     # 0.1% between the two windows
SPIKE_VOLATILITY = 3.0
MINUTES_PER_DAY = 24 * 60

def detect_trend(candles: Sequence[Candle]) -> Trend:
    if len(candles) < 2 * TREND_WINDOW:
        return Trend.SIDEWAYS

    closes = np.array([c.close for c in candles[-2 * TREND_WINDOW:]], dtype=np.float64)
    prior = float(np.mean(closes[:TREND_WINDOW]))
    recent = float(np.mean(closes[TREND_WINDOW:]))
    if prior == 0:
        return Trend.SIDEWAYS

    strength = (recent - prior) / prior
    if abs(strength) < TREND_THRESHOLD:
        return Trend.SIDEWAYS
    return Trend.UPTREND if strength > 0 else Trend.DOWNTREND

def volatility_spike(snapshot: IndicatorSnapshot) -> bool:
    return snapshot.volatility > SPIKE_VOLATILITY

def active_blackout(events: Sequence[NewsEvent], now: Optional[datetime] = None) -> Optional[NewsEvent]:
    """First news window containing the current UTC minute, if any."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    minute_of_day = now.hour * 60 + now.minute

    for ev in events:
        start = ev.hour * 60 + ev.minute
        # windows may run past midnight
        if (minute_of_day - start) % MINUTES_PER_DAY < ev.duration:
            return ev
    return None

@dataclass
class MarketConditions:
    symbol: str
    price: float
    pattern: Optional[Pattern] = None
    trend: Trend = Trend.SIDEWAYS
    volatility_spike: bool = False
    news_event: Optional[NewsEvent] = None
    peers: dict = field(default_factory=dict, repr=False)   # symbol -> sealed candles

    @property
    def unfavorable(self) -> bool:
        return self.volatility_spike or self.news_event is not None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "pattern": self.pattern.value if self.pattern else None,
            "trend": self.trend.value,
            "volatility_spike": self.volatility_spike,
            "news_event": self.news_event.description if self.news_event else None,
        }

    @classmethod
    def assess(cls, symbol: str, candles: Sequence[Candle], snapshot: IndicatorSnapshot,
               events: Sequence[NewsEvent], pattern: Optional[Pattern] = None,
               peers: Optional[dict] = None, now: Optional[datetime] = None,
               price: Optional[float] = None) -> "MarketConditions":
        if price is None:
            price = candles[-1].close if candles else 0.0
        return cls(
            symbol=symbol,
            price=price,
            pattern=pattern,
            trend=detect_trend(candles),
            volatility_spike=volatility_spike(snapshot),
            news_event=active_blackout(events, now),
            peers=peers or {},
        )
