import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from athena.config import TradeConfig
from athena.constants import GateAction, GateReason, TradeResult, Trend
from athena.core.indicators import IndicatorSnapshot
from athena.core.regime import active_blackout, volatility_spike
from athena.trading.money_manager import MoneyManager
from athena.trading.performance import SessionState
from athena.utils.logger import log

MAX_BAND_WIDTH = 10.0                       # % of the middle band
CALM_VOLATILITY = 2.5
CALM_ADX = 25

@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: GateReason = GateReason.OK
    action: GateAction = GateAction.ALLOW
    detail: str = ""

ALLOW = GateResult(True)

def _deny(reason: GateReason, action: GateAction, detail: str = "") -> GateResult:
    return GateResult(False, reason, action, detail)

def loop_scheduler(delay: float, callback: Callable[[], None]):
    """Schedule on the running asyncio loop; returns the timer handle."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        log.warning("No running event loop, cooldown re-check in %.0fs not scheduled", delay)
        return None
    return loop.call_later(delay, callback)

class RiskManager:
    """
    Gates every trade attempt and owns the adaptive cooldown.

    Checks run in a fixed order and the first failure wins. Cooldown-type
    failures pause the session; a timer re-checks the market after
    `cooldown_period` and either resumes or extends the pause, up to
    `max_pause_extensions` times before forcing a resume.
    """

    def __init__(self, cfg: TradeConfig, money: Optional[MoneyManager] = None,
                 scheduler: Callable = loop_scheduler,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 probe: Optional[Callable[[], tuple]] = None):
        self.cfg = cfg
        self.money = money or MoneyManager(cfg)
        self.scheduler = scheduler
        self.clock = clock
        self.probe = probe                  # () -> (IndicatorSnapshot, Trend) for re-checks
        self._listeners: list[Callable[[bool, SessionState], None]] = []
        self._timer = None

    def add_listener(self, fn: Callable[[bool, SessionState], None]):
        """fn(paused, session) on every pause/resume."""
        self._listeners.append(fn)

    def _notify(self, paused: bool, session: SessionState):
        for fn in self._listeners:
            try:
                fn(paused, session)
            except Exception as e:
                log.warning("Cooldown listener failed: %s", e)

    # ------------------------------------------------------------------
    def check(self, session: SessionState, indicators: IndicatorSnapshot) -> GateResult:
        cfg = self.cfg
        if session.is_paused:
            return _deny(GateReason.PAUSED, GateAction.WAIT, "cooling down")

        news = active_blackout(cfg.news_events, self.clock())
        if news is not None or volatility_spike(indicators):
            detail = f"news: {news.description}" if news else f"volatility spike {indicators.volatility:.2f}"
            return _deny(GateReason.UNFAVORABLE_MARKET, GateAction.COOLDOWN, detail)

        if session.total_trades >= cfg.max_trades:
            return _deny(GateReason.MAX_TRADES, GateAction.STOP, f"{session.total_trades} trades")

        if cfg.stop_loss_enabled and session.total_pnl <= -cfg.max_loss:
            return _deny(GateReason.STOP_LOSS, GateAction.STOP, f"P&L {session.total_pnl:+.2f}")

        if cfg.take_profit_enabled and session.total_pnl >= cfg.max_profit:
            return _deny(GateReason.TAKE_PROFIT, GateAction.STOP, f"P&L {session.total_pnl:+.2f}")

        if session.current_stake > session.balance:
            return _deny(GateReason.INSUFFICIENT_BALANCE, GateAction.STOP,
                         f"stake {session.current_stake:.2f} > balance {session.balance:.2f}")

        if session.balance > 0 and session.drawdown_pct <= -cfg.max_drawdown:
            return _deny(GateReason.DRAWDOWN, GateAction.COOLDOWN, f"drawdown {session.drawdown_pct:.1f}%")

        if session.consecutive_losses >= cfg.max_consecutive_losses:
            return _deny(GateReason.CONSECUTIVE_LOSSES, GateAction.COOLDOWN,
                         f"{session.consecutive_losses} losses in a row")

        if indicators.available("bollinger") and indicators.bollinger.width_pct > MAX_BAND_WIDTH:
            return _deny(GateReason.WIDE_BANDS, GateAction.COOLDOWN,
                         f"band width {indicators.bollinger.width_pct:.1f}%")

        return ALLOW

    def can_trade(self, session: SessionState, indicators: IndicatorSnapshot) -> bool:
        result = self.check(session, indicators)
        if result.action is GateAction.COOLDOWN:
            log.warning("⏸️  %s (%s)", result.reason.value, result.detail)
            self.enter_cooldown(session)
        return result.allowed

    def size_stake(self, session: SessionState, last_result: Optional[TradeResult],
                   indicators: IndicatorSnapshot) -> float:
        return self.money.size_stake(session, last_result, indicators)

    # ---- Adaptive cooldown ----
    def enter_cooldown(self, session: SessionState) -> bool:
        """Pause the session. No-op while already paused. True when a new pause began."""
        if session.is_paused:
            return False
        if session.pause_extensions >= self.cfg.max_pause_extensions:
            log.warning("⏯️  Pause limit reached (%d), resuming anyway", session.pause_extensions)
            self.resume(session)
            return False

        session.is_paused = True
        session.pause_extensions += 1
        self._schedule(session)
        log.info("⏸️  Trading paused for %.0fs (extension %d/%d)",
                 self.cfg.cooldown_period / 1000, session.pause_extensions, self.cfg.max_pause_extensions)
        self._notify(True, session)
        return True

    def recheck(self, session: SessionState):
        """Timer callback: resume if the market calmed down, otherwise extend the pause."""
        self._timer = None
        if not session.is_paused:
            return
        if self.probe is not None:
            indicators, trend = self.probe()
        else:
            indicators, trend = IndicatorSnapshot(), Trend.SIDEWAYS

        if self.favorable(indicators, trend):
            log.info("▶️  Market conditions improved")
            self.resume(session)
        elif session.pause_extensions >= self.cfg.max_pause_extensions:
            log.warning("⏯️  Still unfavorable after %d extensions, resuming anyway", session.pause_extensions)
            self.resume(session)
        else:
            session.pause_extensions += 1
            log.info("⏸️  Market still unfavorable, extending pause (%d/%d)",
                     session.pause_extensions, self.cfg.max_pause_extensions)
            self._schedule(session)

    def favorable(self, indicators: IndicatorSnapshot, trend: Trend) -> bool:
        return (
            trend is not Trend.SIDEWAYS
            and indicators.volatility <= CALM_VOLATILITY
            and indicators.adx <= CALM_ADX
            and active_blackout(self.cfg.news_events, self.clock()) is None
        )

    def resume(self, session: SessionState):
        self.cancel()
        was_paused = session.is_paused
        session.is_paused = False
        session.consecutive_losses = 0
        session.pause_extensions = 0
        if was_paused:
            log.info("▶️  Trading resumed")
        self._notify(False, session)

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, session: SessionState):
        self._timer = self.scheduler(self.cfg.cooldown_period / 1000, lambda: self.recheck(session))
