from collections import deque

from athena.constants import StrategyId, TradeResult
from athena.utils.logger import log

MIN_TRADES = 10                             # trades before a strategy's record counts
SWITCH_WIN_RATE = 0.40
RECENT_WINDOW = 20

class StrategySelector:
    """
    Tracks wins/losses per strategy (all-time plus a rolling recent window)
    and, when dynamic switching is on, moves to the best performer.
    """

    def __init__(self, current: StrategyId = StrategyId.RSI):
        self.current = current
        self.stats: dict[StrategyId, dict] = {}
        self._recent: dict[StrategyId, deque] = {}

    def _bucket(self, strategy: StrategyId) -> dict:
        if strategy not in self.stats:
            self.stats[strategy] = {"wins": 0, "losses": 0}
            self._recent[strategy] = deque(maxlen=RECENT_WINDOW)
        return self.stats[strategy]

    def _wr(self, bucket: dict) -> float:
        total = bucket["wins"] + bucket["losses"]
        return bucket["wins"] / total if total > 0 else 0.0

    # ------------------------------------------------------------------
    def record_trade(self, strategy: StrategyId, result: TradeResult):
        bucket = self._bucket(strategy)
        bucket["wins" if result is TradeResult.WIN else "losses"] += 1
        self._recent[strategy].append(result)

    def trades(self, strategy: StrategyId) -> int:
        st = self.stats.get(strategy, {"wins": 0, "losses": 0})
        return st["wins"] + st["losses"]

    def win_rate(self, strategy: StrategyId) -> float:
        return self._wr(self.stats.get(strategy, {"wins": 0, "losses": 0}))

    def recent_win_rate(self, strategy: StrategyId) -> float:
        recent = self._recent.get(strategy)
        if not recent:
            return 0.0
        return sum(1 for r in recent if r is TradeResult.WIN) / len(recent)

    def select_best(self, current: StrategyId = None) -> StrategyId:
        """Best strategy among those with enough trades; ties keep the current one."""
        current = current or self.current
        best, best_wr = current, -1.0
        if self.trades(current) >= MIN_TRADES:
            best_wr = self.win_rate(current)

        for strategy, bucket in self.stats.items():
            total = bucket["wins"] + bucket["losses"]
            if total < MIN_TRADES:
                continue
            wr = self._wr(bucket)
            if wr > best_wr:
                best, best_wr = strategy, wr

        if best is not current and best_wr > SWITCH_WIN_RATE:
            log.info("🔄 Switching strategy %s → %s (WR %.1f%%)", current.value, best.value, best_wr * 100)
            self.current = best
            return best
        self.current = current
        return current

    def status_line(self) -> str:
        parts = []
        for strategy, bucket in self.stats.items():
            total = bucket["wins"] + bucket["losses"]
            if total:
                parts.append(f"{strategy.value}:{self._wr(bucket):.0%}({total}, last{len(self._recent[strategy])} "
                             f"{self.recent_win_rate(strategy):.0%})")
        return " | ".join(parts) if parts else "no data yet"
