import operator
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from athena.config import TradeConfig, CustomRule
from athena.constants import Direction, Pattern, StrategyId, BULLISH_PATTERNS, BEARISH_PATTERNS
from athena.core.indicators import IndicatorEngine, IndicatorSnapshot
from athena.core.regime import MarketConditions
from athena.utils.candle import Candle
from athena.utils.logger import log

RSI_OVERBOUGHT, RSI_OVERSOLD = 70, 30
TREND_ADX = 20
TREND_MIN_CANDLES = 10
SHORT_MA, LONG_MA = 5, 20
REVERSION_BAND = 1.5                        # deviation must exceed 1.5x volatility
GRID_MAX_VOLATILITY = 2.0
GRID_MAX_LEVEL = 5
ARBITRAGE_CANDLES = 50
ARBITRAGE_SPREAD = 0.01

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt, "<": operator.lt, ">=": operator.ge, "<=": operator.le,
}

@dataclass(frozen=True)
class Signal:
    should_trade: bool
    direction: Direction = Direction.CALL
    confidence: float = 0.0
    reason: str = ""
    strategy: str = ""
    symbol: str = ""

def no_trade(reason: str, strategy: StrategyId, symbol: str = "") -> Signal:
    return Signal(False, reason=reason, strategy=strategy.value, symbol=symbol)

def not_enough_data(what: str, strategy: StrategyId, symbol: str = "") -> Signal:
    return no_trade(f"not enough data: {what}", strategy, symbol)

def confirms(direction: Direction, pattern: Optional[Pattern]) -> bool:
    """Bullish patterns confirm CALL, bearish confirm PUT, Doji confirms either."""
    if pattern is None:
        return False
    if pattern is Pattern.DOJI:
        return True
    if direction is Direction.CALL:
        return pattern in BULLISH_PATTERNS
    return pattern in BEARISH_PATTERNS

class SignalEngine:
    """Evaluates one strategy against the current snapshot and market conditions.

    Every strategy is a pure function of its inputs. The only collaborator is
    the confidence scorer used by the ML strategy, which the controller swaps
    in as it retrains.
    """

    def __init__(self, cfg: TradeConfig, scorer=None):
        self.cfg = cfg
        self.scorer = scorer
        self._strategies = {
            StrategyId.RSI: self._rsi,
            StrategyId.TREND_FOLLOW: self._trend_follow,
            StrategyId.MEAN_REVERSION: self._mean_reversion,
            StrategyId.GRID: self._grid,
            StrategyId.ARBITRAGE: self._arbitrage,
            StrategyId.CUSTOM: self._custom,
            StrategyId.ML: self._ml,
        }

    def evaluate(self, strategy: StrategyId, indicators: IndicatorSnapshot,
                 candles: Sequence[Candle], conditions: MarketConditions) -> Signal:
        handler = self._strategies.get(strategy)
        if handler is None:
            return no_trade(f"unknown strategy {strategy}", StrategyId.CUSTOM, conditions.symbol)

        try:
            signal = handler(indicators, candles, conditions)
        except Exception as e:
            log.error("Strategy %s failed: %s", strategy.value, e)
            return no_trade(f"strategy error: {e}", strategy, conditions.symbol)

        if signal.should_trade and self.cfg.use_candle_patterns:
            if not confirms(signal.direction, conditions.pattern):
                pattern = conditions.pattern.value if conditions.pattern else "none"
                log.debug("Trade skipped: no confirming candle pattern for %s (%s)",
                          signal.direction.value, pattern)
                return Signal(False, signal.direction, signal.confidence,
                              f"{signal.reason}; unconfirmed by pattern {pattern}",
                              signal.strategy, signal.symbol)
        return signal

    # ---- Strategies ----
    def _rsi(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.RSI
        if not ind.available("rsi"):
            return not_enough_data("rsi", sid, mc.symbol)
        confidence = abs(ind.rsi - 50) / 50
        if ind.rsi > RSI_OVERBOUGHT:
            return Signal(True, Direction.PUT, confidence, f"RSI {ind.rsi:.1f} overbought", sid.value, mc.symbol)
        if ind.rsi < RSI_OVERSOLD:
            return Signal(True, Direction.CALL, confidence, f"RSI {ind.rsi:.1f} oversold", sid.value, mc.symbol)
        return no_trade(f"RSI {ind.rsi:.1f} neutral", sid, mc.symbol)

    def _trend_follow(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.TREND_FOLLOW
        if len(candles) < TREND_MIN_CANDLES or not ind.available("adx"):
            return not_enough_data("trend needs 15 candles", sid, mc.symbol)
        if self.cfg.use_multi_timeframe:
            short_ma = IndicatorEngine.moving_average(candles, SHORT_MA)
        else:
            if not ind.available("moving_average"):
                return not_enough_data("MA20", sid, mc.symbol)
            short_ma = ind.moving_average
        if ind.adx <= TREND_ADX:
            return no_trade(f"ADX {ind.adx:.1f} too weak", sid, mc.symbol)
        direction = Direction.CALL if mc.price > short_ma else Direction.PUT
        return Signal(True, direction, min(1.0, ind.adx / 50),
                      f"ADX {ind.adx:.1f}, price {'above' if direction is Direction.CALL else 'below'} MA",
                      sid.value, mc.symbol)

    def _mean_reversion(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.MEAN_REVERSION
        if len(candles) < LONG_MA or not ind.available("moving_average"):
            return not_enough_data("MA20", sid, mc.symbol)
        long_ma = IndicatorEngine.moving_average(candles, LONG_MA) if self.cfg.use_multi_timeframe \
            else ind.moving_average
        if long_ma == 0:
            return no_trade("MA is zero", sid, mc.symbol)
        deviation = abs(mc.price - long_ma) / long_ma * 100
        threshold = ind.volatility * REVERSION_BAND
        if deviation > threshold and ind.adx < TREND_ADX:
            confidence = min(1.0, deviation / (2 * threshold)) if threshold > 0 else 1.0
            direction = Direction.PUT if mc.price > long_ma else Direction.CALL
            return Signal(True, direction, confidence,
                          f"deviation {deviation:.2f}% > {threshold:.2f}%", sid.value, mc.symbol)
        return no_trade(f"deviation {deviation:.2f}% within band", sid, mc.symbol)

    def _grid(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.GRID
        if not ind.available("bollinger"):
            return not_enough_data("bollinger", sid, mc.symbol)
        if ind.volatility >= GRID_MAX_VOLATILITY:
            return no_trade(f"volatility {ind.volatility:.2f} too high for grid", sid, mc.symbol)
        step = ind.bollinger.middle * ind.volatility / 100
        if step <= 0:
            return no_trade("grid step is zero", sid, mc.symbol)
        level = round((mc.price - ind.bollinger.middle) / step)
        if not 1 <= abs(level) <= GRID_MAX_LEVEL:
            return no_trade(f"grid level {level} outside 1..{GRID_MAX_LEVEL}", sid, mc.symbol)
        direction = Direction.PUT if level > 0 else Direction.CALL
        return Signal(True, direction, abs(level) / GRID_MAX_LEVEL, f"grid level {level}", sid.value, mc.symbol)

    def _arbitrage(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.ARBITRAGE
        if len(self.cfg.symbols) < 2:
            return not_enough_data("arbitrage needs two symbols", sid, mc.symbol)
        first, second = self.cfg.symbols[0], self.cfg.symbols[1]
        c1, c2 = mc.peers.get(first, ()), mc.peers.get(second, ())
        if len(c1) < ARBITRAGE_CANDLES or len(c2) < ARBITRAGE_CANDLES:
            return not_enough_data(f"{ARBITRAGE_CANDLES} candles per symbol", sid, first)
        p1, p2 = c1[-1].close, c2[-1].close
        lesser = min(p1, p2)
        if lesser <= 0:
            return no_trade("non-positive price", sid, first)
        spread = abs(p1 - p2) / lesser
        if spread <= ARBITRAGE_SPREAD:
            return no_trade(f"spread {spread:.2%} too narrow", sid, first)
        direction = Direction.PUT if p1 > p2 else Direction.CALL
        return Signal(True, direction, min(1.0, spread / (2 * ARBITRAGE_SPREAD)),
                      f"{first}/{second} spread {spread:.2%}", sid.value, first)

    def _custom(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.CUSTOM
        rules = self.cfg.custom_rules
        if not rules:
            return no_trade("no custom rules", sid, mc.symbol)
        if not ind.available("macd"):
            return not_enough_data("macd", sid, mc.symbol)
        for rule in rules:
            held = self._rule_holds(rule, ind, mc.price)
            if held is None:
                return not_enough_data(rule.indicator, sid, mc.symbol)
            if not held:
                return no_trade(f"rule {rule.indicator}{rule.operator}{rule.value:g} not met", sid, mc.symbol)
        direction = Direction.CALL if ind.macd.histogram > 0 else Direction.PUT
        return Signal(True, direction, 1.0, f"custom rules met: {self.cfg.custom_rule_summary()}",
                      sid.value, mc.symbol)

    @staticmethod
    def _rule_holds(rule: CustomRule, ind: IndicatorSnapshot, price: float) -> Optional[bool]:
        """None when the rule's indicator has no reading yet."""
        cmp = OPERATORS.get(rule.operator)
        if cmp is None:
            return False
        if rule.indicator == "bollinger":
            if not ind.available("bollinger"):
                return None
            # band rules compare price against the band, the value is unused
            if rule.operator in (">", ">="):
                return cmp(price, ind.bollinger.upper)
            return cmp(price, ind.bollinger.lower)

        readings = {
            "rsi": ("rsi", ind.rsi),
            "macd": ("macd", ind.macd.histogram),
            "stochastic": ("stochastic", ind.stochastic.k),
            "adx": ("adx", ind.adx),
            "volatility": ("volatility", ind.volatility),
            "sentiment": ("sentiment", ind.sentiment),
        }
        if rule.indicator not in readings:
            return False
        name, value = readings[rule.indicator]
        if not ind.available(name):
            return None
        return cmp(value, rule.value)

    def _ml(self, ind: IndicatorSnapshot, candles, mc: MarketConditions) -> Signal:
        sid = StrategyId.ML
        if self.scorer is None or not self.scorer.ready:
            return not_enough_data("scorer not trained", sid, mc.symbol)
        if not ind.available("macd"):
            return not_enough_data("indicators warming up", sid, mc.symbol)
        scored = self.scorer.score(ind, mc.price)
        if scored is None:
            return not_enough_data("scorer abstained", sid, mc.symbol)
        direction, confidence = scored
        if confidence < self.cfg.min_confidence:
            return no_trade(f"low confidence {confidence:.2f}", sid, mc.symbol)
        return Signal(True, direction, confidence, f"scorer confidence {confidence:.2f}", sid.value, mc.symbol)
