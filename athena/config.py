from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Optional

from athena.constants import Direction, Progression, SizingPolicy, StrategyId, MIN_STAKE
from athena.utils.logger import log

@dataclass
class NewsEvent:
    hour: int                               # UTC
    minute: int
    duration: int                           # minutes
    description: str = ""

@dataclass
class CustomRule:
    indicator: str                          # rsi / macd / stochastic / bollinger / adx / volatility / sentiment
    operator: str                           # > < >= <=
    value: float = 0.0

CUSTOM_INDICATORS = ("rsi", "macd", "stochastic", "bollinger", "adx", "volatility", "sentiment")
CUSTOM_OPERATORS = (">", "<", ">=", "<=")

def default_news_events() -> list:
    return [
        NewsEvent(12, 30, 15, "US Non-Farm Payrolls"),
        NewsEvent(14, 0, 10, "US CPI Release"),
        NewsEvent(8, 30, 15, "EU ECB Rate Decision"),
    ]

@dataclass
class TradeConfig:
    """All tuneable knobs in one place."""

    # --- connection ---
    app_id: int = 1089
    api_token: str = ""
    endpoint: str = "wss://ws.derivws.com/websockets/v3"
    max_retries: int = 3                    # reconnect attempts before giving up
    reconnect_delay: float = 5.0            # fixed backoff (s)
    max_queue: int = 100                    # outbound messages kept while offline

    # --- market ---
    symbols: list = field(default_factory=lambda: ["R_10"])
    candle_timeframe: int = 60              # seconds per candle
    candle_capacity: int = 100              # candles kept per symbol

    # --- strategy ---
    strategy: StrategyId = StrategyId.RSI
    trade_type: Direction = Direction.CALL  # default direction for display / fallbacks
    custom_rules: list = field(default_factory=list)
    use_multi_timeframe: bool = True        # trend/mean-reversion use their own MA windows
    use_dynamic_switching: bool = False
    use_candle_patterns: bool = True
    min_confidence: float = 0.70            # scored-model threshold
    scorer: str = "winrate"                 # "winrate" | "sgd"
    retrain_every: int = 10                 # refit scorer after N settled trades

    # --- contract ---
    duration: int = 60                      # base contract duration (s)
    initial_stake: float = 1.0
    min_trade_interval: float = 5.0         # seconds between trade attempts

    # --- money management ---
    position_sizing: SizingPolicy = SizingPolicy.KELLY
    progression: Progression = Progression.NONE
    fixed_fraction: float = 0.02
    multiplier: float = 2.1                 # martingale multiplier

    # --- risk ---
    max_loss: float = 50.0
    max_profit: float = 100.0
    stop_loss_enabled: bool = True
    take_profit_enabled: bool = True
    max_trades: int = 50
    max_drawdown: float = 20.0              # % of balance
    max_consecutive_losses: int = 5
    cooldown_period: int = 300000           # ms before a paused session re-checks the market
    max_pause_extensions: int = 3
    news_events: list = field(default_factory=default_news_events)
    early_exit_enabled: bool = True
    trailing_profit_threshold: float = 0.5  # profit / stake ratio that arms early exit

    # --- persistence ---
    db_path: str = "trade_journal.db"
    brain_path: str = "athena_brain.pkl"
    record_ticks: bool = False
    retention: int = 10000                  # rows kept per journal table

    @property
    def symbol(self) -> str:
        return self.symbols[0] if self.symbols else "R_10"

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: dict) -> "TradeConfig":
        """Build a config from plain values (env / JSON). Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        cfg = cls(**{k: v for k, v in data.items() if k in known})
        cfg.validate()
        return cfg

    def validate(self) -> list[str]:
        """Clamp every field into its valid range. Returns the warnings issued."""
        warnings: list[str] = []
        defaults = {f.name: f.default for f in fields(self)}

        def clamp(name, lo=None, hi=None, cast=float):
            raw = getattr(self, name)
            try:
                val = cast(raw)
            except (TypeError, ValueError):
                val = cast(defaults[name])
                warnings.append(f"{name}={raw!r} is not a number, reset to {val}")
            fixed = val
            if lo is not None and fixed < lo:
                fixed = cast(lo)
            if hi is not None and fixed > hi:
                fixed = cast(hi)
            if fixed != val:
                warnings.append(f"{name}={val} out of range, clamped to {fixed}")
            setattr(self, name, fixed)

        def coerce(name, enum_cls: type[Enum], default: Enum):
            raw = getattr(self, name)
            if isinstance(raw, enum_cls):
                return
            try:
                setattr(self, name, enum_cls(raw))
            except ValueError:
                warnings.append(f"{name}={raw!r} unknown, using {default.value}")
                setattr(self, name, default)

        coerce("strategy", StrategyId, StrategyId.RSI)
        coerce("trade_type", Direction, Direction.CALL)
        coerce("position_sizing", SizingPolicy, SizingPolicy.KELLY)
        coerce("progression", Progression, Progression.NONE)

        if self.scorer not in ("winrate", "sgd"):
            warnings.append(f"scorer={self.scorer!r} unknown, using winrate")
            self.scorer = "winrate"

        if isinstance(self.symbols, str):
            self.symbols = [s.strip() for s in self.symbols.split(",")]
        self.symbols = [s for s in (self.symbols or []) if s]
        if not self.symbols:
            warnings.append("no symbols configured, using R_10")
            self.symbols = ["R_10"]

        clamp("app_id", lo=1, cast=int)
        clamp("max_retries", lo=0, cast=int)
        clamp("reconnect_delay", lo=0.0)
        clamp("max_queue", lo=1, cast=int)
        clamp("candle_timeframe", lo=1, cast=int)
        clamp("candle_capacity", lo=100, hi=1000, cast=int)
        clamp("min_confidence", lo=0.0, hi=1.0)
        clamp("retrain_every", lo=1, cast=int)
        clamp("duration", lo=1, cast=int)
        clamp("initial_stake", lo=MIN_STAKE)
        clamp("min_trade_interval", lo=0.0)
        clamp("fixed_fraction", lo=0.0)
        clamp("multiplier", lo=1.0)
        clamp("max_loss", lo=0.0)
        clamp("max_profit", lo=0.0)
        clamp("max_trades", lo=1, cast=int)
        clamp("max_drawdown", lo=0.0)
        clamp("max_consecutive_losses", lo=1, cast=int)
        clamp("cooldown_period", lo=1000, cast=int)
        clamp("max_pause_extensions", lo=1, cast=int)
        clamp("trailing_profit_threshold", lo=0.0)
        clamp("retention", lo=1, cast=int)

        rules = []
        for raw in self._entries("custom_rules", warnings):
            try:
                rule = raw if isinstance(raw, CustomRule) else CustomRule(**raw)
                rule = CustomRule(str(rule.indicator), str(rule.operator), float(rule.value))
            except (TypeError, ValueError):
                warnings.append(f"custom rule {raw!r} malformed, dropped")
                continue
            if rule.indicator not in CUSTOM_INDICATORS or rule.operator not in CUSTOM_OPERATORS:
                warnings.append(f"custom rule {rule.indicator} {rule.operator} {rule.value} unsupported, dropped")
                continue
            rules.append(rule)
        self.custom_rules = rules

        events = []
        for raw in self._entries("news_events", warnings):
            try:
                ev = raw if isinstance(raw, NewsEvent) else NewsEvent(**raw)
                ev = NewsEvent(int(ev.hour), int(ev.minute), int(ev.duration), str(ev.description))
            except (TypeError, ValueError):
                warnings.append(f"news event {raw!r} malformed, dropped")
                continue
            if not (0 <= ev.hour <= 23 and 0 <= ev.minute <= 59) or ev.duration < 0:
                warnings.append(f"news event {ev.description or ev} outside the clock, dropped")
                continue
            events.append(ev)
        self.news_events = events

        for w in warnings:
            log.warning("Config: %s", w)
        return warnings

    def _entries(self, name: str, warnings: list) -> list:
        raw = getattr(self, name)
        if raw is None:
            return []
        if not isinstance(raw, (list, tuple)):
            warnings.append(f"{name} must be a list, ignored")
            return []
        return list(raw)

    def custom_rule_summary(self) -> Optional[str]:
        if not self.custom_rules:
            return None
        return " AND ".join(f"{r.indicator}{r.operator}{r.value:g}" for r in self.custom_rules)
