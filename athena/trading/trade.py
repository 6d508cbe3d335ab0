import json
import time
from dataclasses import dataclass, field
from typing import Optional

from athena.constants import Direction, TradeResult
from athena.core.indicators import IndicatorSnapshot

@dataclass
class ActiveContract:
    id: int
    stake: float
    direction: Direction
    buy_price: float
    symbol: str
    start_time: float = field(default_factory=time.time)
    duration: int = 60
    strategy: str = ""
    shortcode: str = ""
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    market_conditions: dict = field(default_factory=dict)
    exit_requested: bool = False            # one early-exit sell per contract

@dataclass(frozen=True)
class TradeRecord:
    id: str
    symbol: str
    result: TradeResult
    pnl: float
    stake: float
    direction: Direction
    duration: int
    strategy: str
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    market_conditions: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def won(self) -> bool:
        return self.result is TradeResult.WIN

    @property
    def label(self) -> int:
        """1 when price moved up over the contract (CALL won or PUT lost)."""
        return int(self.won == (self.direction is Direction.CALL))

    def to_row(self) -> tuple:
        return (
            self.id, self.symbol, self.result.value, self.pnl, self.stake,
            self.direction.value, self.duration, self.strategy,
            json.dumps(self.indicators.to_dict(), sort_keys=True),
            json.dumps(self.market_conditions, sort_keys=True),
            self.timestamp,
        )

    @classmethod
    def from_row(cls, row) -> "TradeRecord":
        return cls(
            id=str(row[0]),
            symbol=row[1],
            result=TradeResult(row[2]),
            pnl=float(row[3]),
            stake=float(row[4]),
            direction=Direction(row[5]),
            duration=int(row[6]),
            strategy=row[7],
            indicators=IndicatorSnapshot.from_dict(json.loads(row[8] or "{}")),
            market_conditions=json.loads(row[9] or "{}"),
            timestamp=float(row[10]),
        )

def settle(contract: ActiveContract, sell_price: float, trade_id: Optional[str] = None) -> TradeRecord:
    """Close a contract into its immutable record. Win iff pnl > 0."""
    pnl = float(sell_price) - contract.buy_price
    return TradeRecord(
        id=trade_id or str(contract.id),
        symbol=contract.symbol,
        result=TradeResult.WIN if pnl > 0 else TradeResult.LOSS,
        pnl=pnl,
        stake=contract.stake,
        direction=contract.direction,
        duration=contract.duration,
        strategy=contract.strategy,
        indicators=contract.indicators,
        market_conditions=dict(contract.market_conditions),
    )
