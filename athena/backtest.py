import csv
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from athena.config import TradeConfig
from athena.constants import Direction, TradeResult
from athena.core.candles import classify_pattern
from athena.core.indicators import IndicatorEngine, MIN_CANDLES
from athena.core.regime import MarketConditions
from athena.core.signals import SignalEngine
from athena.trading.money_manager import MoneyManager
from athena.trading.performance import SessionState
from athena.trading.trade import TradeRecord
from athena.utils.candle import Candle, is_valid_candle
from athena.utils.logger import log

PAYOUT = 0.85
FEE = 0.01                                  # fraction of stake per trade
WARMUP = MIN_CANDLES["macd"]

def load_candles_csv(path: str, symbol: str = "") -> list[Candle]:
    """Historical candles from CSV.
    Supports:
      - Standard CSV with headers (time,open,high,low,close,volume)
      - HistData semicolon format: YYYYMMDD HHMMSS;O;H;L;C;V (no headers)
    """
    log.info("Loading dataset from %s …", path)
    candles: list[Candle] = []

    with open(path, "r", encoding="utf-8-sig") as f:
        first_line = f.readline().strip()
        f.seek(0)

        if ";" in first_line and not any(
            h in first_line.lower() for h in ["time", "open", "high", "date"]
        ):
            log.info("Detected HistData semicolon format (no headers)")
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    parts = line.split(";")
                    if len(parts) < 5:
                        continue
                    time_str = parts[0].strip()
                    if len(time_str) >= 15:
                        parsed = datetime.strptime(time_str, "%Y%m%d %H%M%S")
                    elif len(time_str) >= 8:
                        parsed = datetime.strptime(time_str[:8], "%Y%m%d")
                    else:
                        continue
                    candles.append(Candle(
                        timestamp=parsed.replace(tzinfo=timezone.utc).timestamp(),
                        open=float(parts[1]),
                        high=float(parts[2]),
                        low=float(parts[3]),
                        close=float(parts[4]),
                        volume=float(parts[5]) if len(parts) > 5 else 0.0,
                        symbol=symbol,
                    ))
                except (ValueError, TypeError, IndexError):
                    continue
        else:
            delimiter = ";" if ";" in first_line else ","
            reader = csv.DictReader(f, delimiter=delimiter)
            log.info("CSV columns found: %s (delimiter='%s')", reader.fieldnames, delimiter)

            for row in reader:
                try:
                    time_str = str(row.get("time") or row.get("timestamp") or row.get("epoch")
                                   or row.get("date") or row.get("Date") or "").strip()
                    if "-" in time_str and ":" in time_str:
                        parsed = datetime.strptime(time_str, "%Y-%m-%d %H:%M:%S")
                        ts = parsed.replace(tzinfo=timezone.utc).timestamp()
                    elif time_str:
                        ts = float(time_str)
                    else:
                        continue

                    volume = row.get("tick_volume") or row.get("volume") or row.get("Volume") or 0
                    candles.append(Candle(
                        timestamp=ts,
                        open=float(row.get("open") or row.get("Open") or 0),
                        high=float(row.get("high") or row.get("High") or 0),
                        low=float(row.get("low") or row.get("Low") or 0),
                        close=float(row.get("close") or row.get("Close") or 0),
                        volume=float(volume or 0),
                        symbol=symbol,
                    ))
                except (ValueError, TypeError, KeyError):
                    continue

    valid = [c for c in candles if is_valid_candle(c)]
    if len(valid) < len(candles):
        log.warning("Dropped %d malformed candles", len(candles) - len(valid))
    log.info("Parsed %d candles from file.", len(valid))
    return valid

@dataclass
class BacktestReport:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    pnl: float = 0.0
    max_drawdown: float = 0.0
    records: list = field(default_factory=list, repr=False)

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    def summary(self) -> str:
        return (f"{self.trades} trades  W:{self.wins} L:{self.losses}  "
                f"WR:{self.win_rate:.1%}  P&L:${self.pnl:+.2f}  MaxDD:${self.max_drawdown:.2f}")

class Backtester:
    """
    Replays historical candles through the indicator and signal engines.
    Each trade is decided by the close `duration / timeframe` candles later;
    one contract at a time, 85% payout and a 1% fee on every stake.
    """

    def __init__(self, cfg: TradeConfig, signals: Optional[SignalEngine] = None,
                 balance: float = 1000.0):
        self.cfg = cfg
        self.signals = signals or SignalEngine(cfg)
        self.balance = balance

    @property
    def horizon(self) -> int:
        return max(1, round(self.cfg.duration / max(self.cfg.candle_timeframe, 1)))

    def run(self, candles: Sequence[Candle]) -> BacktestReport:
        cfg = self.cfg
        report = BacktestReport()
        if len(candles) < WARMUP + self.horizon:
            log.warning("Dataset too small (%d candles) for a backtest", len(candles))
            return report

        engine = IndicatorEngine()
        money = MoneyManager(cfg)
        session = SessionState(balance=self.balance, current_stake=cfg.initial_stake)
        symbol = cfg.symbol
        horizon = self.horizon
        capacity = max(cfg.candle_capacity, WARMUP)

        log.info("Backtesting %d candles (horizon = %d candles = %ds) …", len(candles), horizon, cfg.duration)
        i = WARMUP - 1
        while i < len(candles) - horizon:
            window = list(candles[max(0, i + 1 - capacity):i + 1])
            snapshot = engine.update(window)
            conditions = MarketConditions.assess(
                symbol, window, snapshot, cfg.news_events,
                pattern=classify_pattern(window[-3:]) if cfg.use_candle_patterns else None,
                peers={symbol: window},
                now=datetime.fromtimestamp(window[-1].timestamp, tz=timezone.utc),
            )
            signal = self.signals.evaluate(cfg.strategy, snapshot, window, conditions)
            if not signal.should_trade:
                i += 1
                continue

            stake = money.size_stake(session, session.last_result, snapshot)
            session.current_stake = stake
            now_close, future_close = candles[i].close, candles[i + horizon].close
            if signal.direction is Direction.CALL:
                won = future_close > now_close
            else:
                won = future_close < now_close
            fee = stake * FEE
            pnl = stake * PAYOUT - fee if won else -stake - fee
            result = TradeResult.WIN if won else TradeResult.LOSS

            session.record(result, pnl)
            session.balance += pnl
            report.records.append(TradeRecord(
                id=f"bt-{i}",
                symbol=symbol,
                result=result,
                pnl=pnl,
                stake=stake,
                direction=signal.direction,
                duration=cfg.duration,
                strategy=cfg.strategy.value,
                indicators=snapshot,
                market_conditions=conditions.to_dict(),
                timestamp=candles[i].timestamp,
            ))
            log.debug("Backtest trade: %s - %s, P&L: $%.2f", signal.direction.value, result.value, pnl)
            i += horizon

        report.trades = session.total_trades
        report.wins = session.wins
        report.losses = session.losses
        report.pnl = session.total_pnl
        report.max_drawdown = session.max_drawdown
        log.info("🧪 Backtest completed: %s", report.summary())
        return report
