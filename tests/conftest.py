from datetime import datetime, timezone

import pytest

from athena.config import TradeConfig
from athena.utils.candle import Candle

class FakeChannel:
    """Records outbound payloads the way DerivTransport stamps them."""

    def __init__(self):
        self.sent: list[dict] = []
        self.backoffs: list[float] = []
        self.discarded: list[int] = []
        self._req_id = 0

    def send(self, payload: dict) -> int:
        self._req_id += 1
        self.sent.append({**payload, "req_id": self._req_id})
        return self._req_id

    def backoff(self, seconds: float):
        self.backoffs.append(seconds)

    def discard(self, req_ids) -> int:
        self.discarded.extend(req_ids)
        return len(req_ids)

    def of_kind(self, key: str) -> list[dict]:
        return [p for p in self.sent if key in p]

class FakeHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

class FakeScheduler:
    """Captures cooldown re-checks instead of arming real timers."""

    def __init__(self):
        self.calls: list[tuple[float, object]] = []

    def __call__(self, delay, callback):
        self.calls.append((delay, callback))
        return FakeHandle()

    def fire_last(self):
        _, callback = self.calls[-1]
        callback()

@pytest.fixture
def channel():
    return FakeChannel()

@pytest.fixture
def scheduler():
    return FakeScheduler()

@pytest.fixture
def quiet_clock():
    """A UTC time outside every default news window."""
    return lambda: datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)

@pytest.fixture
def cfg():
    return TradeConfig(
        news_events=[],
        use_candle_patterns=False,
        min_trade_interval=0.0,
    )

def alternating_candles(n: int) -> list[Candle]:
    """Closes 100/101 alternating, constant high/low, volume i+1."""
    return [
        Candle(
            timestamp=60.0 * i,
            open=101.0 if i % 2 == 0 else 100.0,
            high=101.2,
            low=99.8,
            close=100.0 + (i % 2),
            volume=float(i + 1),
        )
        for i in range(n)
    ]

def rising_candles(n: int, start: float = 100.0, step: float = 1.0, symbol: str = "") -> list[Candle]:
    out = []
    for i in range(n):
        close = start + step * i
        open_ = close - 0.5
        out.append(Candle(
            timestamp=60.0 * i,
            open=open_,
            high=close + 0.25,
            low=open_ - 0.25,
            close=close,
            volume=1.0,
            symbol=symbol,
        ))
    return out

def flat_candles(n: int, price: float = 100.0, symbol: str = "") -> list[Candle]:
    return [Candle(60.0 * i, price, price, price, price, 1.0, symbol) for i in range(n)]

@pytest.fixture
def make_alternating():
    return alternating_candles

@pytest.fixture
def make_rising():
    return rising_candles

@pytest.fixture
def make_flat():
    return flat_candles
