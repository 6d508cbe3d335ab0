import math
from dataclasses import dataclass, asdict
from typing import Optional

@dataclass(frozen=True)
class Tick:
    symbol: str
    price: float
    timestamp: float
    volume: float = 0.0

    def is_valid(self) -> bool:
        return (
            bool(self.symbol)
            and math.isfinite(self.price) and self.price > 0
            and math.isfinite(self.timestamp) and self.timestamp > 0
            and math.isfinite(self.volume) and self.volume >= 0
        )

@dataclass(frozen=True)
class Candle:
    timestamp: float                        # bucket start (epoch seconds)
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    symbol: str = ""

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def bullish(self) -> bool:
        return self.close > self.open

    @property
    def bearish(self) -> bool:
        return self.close < self.open

    def to_dict(self) -> dict:
        return asdict(self)

def _num(value, default=None) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    return out if math.isfinite(out) else default

def parse_tick(raw: dict, symbol: str = "") -> Optional[Tick]:
    """Deriv tick payload -> Tick. Returns None when price or time is unusable.

    Accepts both the venue shape ({"quote", "epoch"}) and the internal one
    ({"price", "timestamp"}). Prices are rounded to 5 dp.
    """
    if not isinstance(raw, dict):
        return None
    price = _num(raw.get("quote", raw.get("price")))
    ts = _num(raw.get("epoch", raw.get("timestamp", raw.get("time"))))
    if price is None or ts is None or price <= 0 or ts <= 0:
        return None
    volume = _num(raw.get("volume"), 0.0)
    if volume is None or volume < 0:
        volume = 0.0
    return Tick(
        symbol=str(raw.get("symbol") or symbol),
        price=round(price, 5),
        timestamp=ts,
        volume=volume,
    )

def is_valid_candle(c: Candle) -> bool:
    vals = (c.open, c.high, c.low, c.close, c.volume)
    if not all(math.isfinite(v) for v in vals):
        return False
    return c.low > 0 and c.low <= min(c.open, c.close) and c.high >= max(c.open, c.close) and c.volume >= 0
