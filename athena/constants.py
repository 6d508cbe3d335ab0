from enum import Enum

class Direction(Enum):
    CALL = "CALL"
    PUT = "PUT"

class StrategyId(Enum):
    RSI = "rsi-threshold"
    TREND_FOLLOW = "trend-follow"
    MEAN_REVERSION = "mean-reversion"
    GRID = "grid"
    ARBITRAGE = "arbitrage"
    CUSTOM = "custom"
    ML = "ml"

class SizingPolicy(Enum):
    FIXED = "fixed"
    VOLATILITY = "volatility"
    KELLY = "kelly"

class Progression(Enum):
    NONE = "none"
    MARTINGALE = "martingale"
    DALEMBERT = "dalembert"

class Pattern(Enum):
    BULLISH_ENGULFING = "BullishEngulfing"
    BEARISH_ENGULFING = "BearishEngulfing"
    DOJI = "Doji"
    HAMMER = "Hammer"
    SHOOTING_STAR = "ShootingStar"
    MORNING_STAR = "MorningStar"
    EVENING_STAR = "EveningStar"
    BULLISH_HARAMI = "BullishHarami"
    BEARISH_HARAMI = "BearishHarami"

BULLISH_PATTERNS = frozenset({
    Pattern.BULLISH_ENGULFING, Pattern.HAMMER, Pattern.MORNING_STAR, Pattern.BULLISH_HARAMI,
})
BEARISH_PATTERNS = frozenset({
    Pattern.BEARISH_ENGULFING, Pattern.SHOOTING_STAR, Pattern.EVENING_STAR, Pattern.BEARISH_HARAMI,
})

class Trend(Enum):
    UPTREND = "uptrend"
    DOWNTREND = "downtrend"
    SIDEWAYS = "sideways"

class TradeResult(Enum):
    WIN = "win"
    LOSS = "loss"

class SessionPhase(Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    TRADING = "trading"
    PAUSED = "paused"
    STOPPED = "stopped"

class GateReason(Enum):
    OK = "ok"
    UNFAVORABLE_MARKET = "unfavorable-market"
    MAX_TRADES = "max-trades"
    STOP_LOSS = "stop-loss"
    TAKE_PROFIT = "take-profit"
    INSUFFICIENT_BALANCE = "insufficient-balance"
    DRAWDOWN = "drawdown"
    CONSECUTIVE_LOSSES = "consecutive-losses"
    WIDE_BANDS = "wide-bands"
    PAUSED = "paused"

class GateAction(Enum):
    ALLOW = "allow"
    STOP = "stop"
    COOLDOWN = "cooldown"
    WAIT = "wait"

MIN_STAKE = 0.35
MAX_STAKE = 100.0
MAX_STAKE_FRACTION = 0.10
