from athena.constants import TradeResult
from athena.core.indicators import IndicatorSnapshot

MIN_DURATION = 5
MAX_DURATION = 600
STEP = 5

class DurationPredictor:
    """
    Picks the contract duration for each trade:
      • Volatility → high vol = shorter exposure (factor 1/vol, clamped 0.5..2)
      • ADX → strong trend = ride it longer (factor adx/25)
    Result is rounded to 5 s and clamped to [5, 600]. Win/loss per duration
    is tracked so the status line shows which durations actually win.
    """

    def __init__(self, base: int = 60):
        self.base = base
        self.stats: dict[int, dict] = {}

    def predict(self, snapshot: IndicatorSnapshot) -> int:
        duration = float(self.base)

        if snapshot.available("volatility") and snapshot.volatility > 0:
            duration *= min(max(1.0 / snapshot.volatility, 0.5), 2.0)

        if snapshot.available("adx") and snapshot.adx > 0:
            duration *= snapshot.adx / 25

        duration = round(duration / STEP) * STEP
        return int(min(max(duration, MIN_DURATION), MAX_DURATION))

    def record_result(self, duration: int, result: TradeResult):
        """Feed trade result back for per-duration statistics."""
        st = self.stats.setdefault(duration, {"wins": 0, "losses": 0})
        if result is TradeResult.WIN:
            st["wins"] += 1
        else:
            st["losses"] += 1

    def win_rate(self, duration: int) -> float:
        st = self.stats.get(duration, {"wins": 0, "losses": 0})
        total = st["wins"] + st["losses"]
        return st["wins"] / total if total else 0.0

    def status_line(self) -> str:
        parts = []
        for dur in sorted(self.stats):
            st = self.stats[dur]
            total = st["wins"] + st["losses"]
            if total > 0:
                parts.append(f"{dur}s:{st['wins'] / total * 100:.0f}%({total})")
        return " | ".join(parts) if parts else "no data yet"
