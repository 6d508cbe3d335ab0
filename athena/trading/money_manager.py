from typing import Optional

from athena.config import TradeConfig
from athena.constants import (
    Progression, SizingPolicy, TradeResult, MIN_STAKE, MAX_STAKE, MAX_STAKE_FRACTION,
)
from athena.core.indicators import IndicatorSnapshot
from athena.trading.performance import SessionState

HIGH_VOLATILITY = 2.5
DRAWDOWN_DERATE = -10.0                     # % of balance

class MoneyManager:
    def __init__(self, cfg: TradeConfig):
        self.cfg = cfg

    def size_stake(self, session: SessionState, last_result: Optional[TradeResult],
                   indicators: IndicatorSnapshot) -> float:
        """Stake for the next contract, clamped to [0.35, min(10% balance, 100)]."""
        if last_result is None:
            return self.clamp(self.cfg.initial_stake, session.balance)

        stake = self._derate(self._policy_stake(session, indicators), session, indicators)
        stake = self._progression(stake, session, last_result)
        return self.clamp(stake, session.balance)

    @staticmethod
    def _derate(stake: float, session: SessionState, indicators: IndicatorSnapshot) -> float:
        if indicators.volatility > HIGH_VOLATILITY:
            stake *= 0.5
        if session.drawdown_pct < DRAWDOWN_DERATE:
            stake *= 0.75
        return stake

    def _policy_stake(self, session: SessionState, indicators: IndicatorSnapshot) -> float:
        policy = self.cfg.position_sizing
        if policy is SizingPolicy.FIXED:
            return session.balance * self.cfg.fixed_fraction
        if policy is SizingPolicy.VOLATILITY:
            return self.cfg.initial_stake / (1 + indicators.volatility / 100)
        return session.balance * self.kelly_fraction(session)

    @staticmethod
    def kelly_fraction(session: SessionState) -> float:
        """Kelly: f* = p - q/b  where b = mean win / mean loss. Capped to [0, 10%]."""
        if session.wins == 0 or session.losses == 0:
            return 0.0 if session.wins == 0 else MAX_STAKE_FRACTION
        p = session.win_rate
        b = session.avg_win / session.avg_loss if session.avg_loss > 0 else 0.0
        if b <= 0:
            return 0.0
        f = p - (1 - p) / b
        return min(max(f, 0.0), MAX_STAKE_FRACTION)

    def _progression(self, stake: float, session: SessionState, last_result: TradeResult) -> float:
        prog = self.cfg.progression
        previous = session.current_stake or self.cfg.initial_stake
        if prog is Progression.MARTINGALE:
            if last_result is TradeResult.LOSS:
                return previous * self.cfg.multiplier
            return self.cfg.initial_stake
        if prog is Progression.DALEMBERT:
            if last_result is TradeResult.LOSS:
                return previous + self.cfg.initial_stake
            return max(previous - self.cfg.initial_stake, self.cfg.initial_stake)
        return stake

    @staticmethod
    def clamp(stake: float, balance: float) -> float:
        upper = min(balance * MAX_STAKE_FRACTION, MAX_STAKE)
        # floor wins when the balance is too small; affordability is gated elsewhere
        return max(min(stake, upper), MIN_STAKE)
