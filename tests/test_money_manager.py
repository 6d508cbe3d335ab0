import random

import pytest

from athena.constants import Progression, SizingPolicy, TradeResult, MIN_STAKE
from athena.core.indicators import IndicatorSnapshot
from athena.trading.money_manager import MoneyManager
from athena.trading.performance import SessionState

QUIET = IndicatorSnapshot()

def test_clamp_bounds():
    assert MoneyManager.clamp(1000, 50) == pytest.approx(5.0)
    assert MoneyManager.clamp(0.01, 1000) == MIN_STAKE
    assert MoneyManager.clamp(500, 5000) == 100.0
    # floor wins on a tiny balance
    assert MoneyManager.clamp(1, 2) == MIN_STAKE

def test_stake_always_within_bounds(cfg):
    rng = random.Random(11)
    for _ in range(300):
        cfg.position_sizing = rng.choice(list(SizingPolicy))
        cfg.progression = rng.choice(list(Progression))
        balance = rng.uniform(0, 5000)
        session = SessionState(
            balance=balance,
            current_stake=rng.uniform(0.35, 200),
            wins=rng.randint(0, 20),
            losses=rng.randint(0, 20),
            gross_profit=rng.uniform(0, 50),
            gross_loss=rng.uniform(0, 50),
            total_pnl=rng.uniform(-500, 500),
        )
        session.total_trades = session.wins + session.losses
        ind = IndicatorSnapshot(volatility=rng.uniform(0, 6))
        last = rng.choice([None, TradeResult.WIN, TradeResult.LOSS])

        stake = MoneyManager(cfg).size_stake(session, last, ind)
        assert MIN_STAKE <= stake <= max(MIN_STAKE, min(balance * 0.1, 100.0))

def test_first_trade_uses_initial_stake(cfg):
    cfg.initial_stake = 2.0
    assert MoneyManager(cfg).size_stake(SessionState(balance=1000), None, QUIET) == 2.0

def test_martingale(cfg):
    cfg.progression = Progression.MARTINGALE
    mm = MoneyManager(cfg)
    assert mm.size_stake(SessionState(balance=1000, current_stake=1.0), TradeResult.LOSS, QUIET) == pytest.approx(2.1)
    assert mm.size_stake(SessionState(balance=1000, current_stake=4.41), TradeResult.WIN, QUIET) == 1.0
    assert mm.size_stake(SessionState(balance=1000, current_stake=50.0), TradeResult.LOSS, QUIET) == 100.0

def test_dalembert(cfg):
    cfg.progression = Progression.DALEMBERT
    mm = MoneyManager(cfg)
    assert mm.size_stake(SessionState(balance=1000, current_stake=1.0), TradeResult.LOSS, QUIET) == 2.0
    assert mm.size_stake(SessionState(balance=1000, current_stake=3.0), TradeResult.WIN, QUIET) == 2.0
    assert mm.size_stake(SessionState(balance=1000, current_stake=1.0), TradeResult.WIN, QUIET) == 1.0

def test_kelly_fraction():
    session = SessionState(balance=1000, total_trades=20, wins=11, losses=9, gross_profit=9.35, gross_loss=9.0)
    b = (9.35 / 11) / 1.0
    assert MoneyManager.kelly_fraction(session) == pytest.approx(0.55 - 0.45 / b)

    assert MoneyManager.kelly_fraction(SessionState(total_trades=3, wins=0, losses=3, gross_loss=3)) == 0.0
    assert MoneyManager.kelly_fraction(SessionState(total_trades=3, wins=3, gross_profit=3)) == 0.10
    strong = SessionState(total_trades=10, wins=9, losses=1, gross_profit=9, gross_loss=1)
    assert MoneyManager.kelly_fraction(strong) == 0.10

def test_kelly_sizing(cfg):
    session = SessionState(balance=1000, total_trades=20, wins=11, losses=9, gross_profit=9.35, gross_loss=9.0)
    expected = 1000 * (0.55 - 0.45 / (9.35 / 11))
    assert MoneyManager(cfg).size_stake(session, TradeResult.WIN, QUIET) == pytest.approx(expected)

def test_fixed_and_volatility_policies(cfg):
    cfg.position_sizing = SizingPolicy.FIXED
    session = SessionState(balance=1000)
    assert MoneyManager(cfg).size_stake(session, TradeResult.WIN, QUIET) == pytest.approx(20.0)

    cfg.position_sizing = SizingPolicy.VOLATILITY
    stake = MoneyManager(cfg).size_stake(session, TradeResult.WIN, IndicatorSnapshot(volatility=2.0))
    assert stake == pytest.approx(1.0 / 1.02)

def test_derating(cfg):
    cfg.position_sizing = SizingPolicy.FIXED
    mm = MoneyManager(cfg)
    volatile = IndicatorSnapshot(volatility=3.0)
    assert mm.size_stake(SessionState(balance=1000), TradeResult.WIN, volatile) == pytest.approx(10.0)
    losing = SessionState(balance=1000, total_pnl=-150)
    assert mm.size_stake(losing, TradeResult.LOSS, QUIET) == pytest.approx(15.0)
    assert mm.size_stake(losing, TradeResult.LOSS, volatile) == pytest.approx(7.5)

def test_progression_is_not_derated(cfg):
    cfg.progression = Progression.MARTINGALE
    cfg.multiplier = 2.0
    mm = MoneyManager(cfg)
    volatile = IndicatorSnapshot(volatility=3.0)
    after_loss = SessionState(balance=1000, current_stake=1.0, total_pnl=-150)
    assert mm.size_stake(after_loss, TradeResult.LOSS, volatile) == pytest.approx(2.0)

    cfg.progression = Progression.DALEMBERT
    assert mm.size_stake(after_loss, TradeResult.LOSS, volatile) == pytest.approx(2.0)

# ---- Session statistics ----
def test_session_record_tracks_streaks_and_drawdown():
    s = SessionState(balance=100, current_stake=1.0)
    for result, pnl in [(TradeResult.WIN, 0.85), (TradeResult.WIN, 0.85),
                        (TradeResult.LOSS, -1.0), (TradeResult.LOSS, -1.0)]:
        s.record(result, pnl)

    assert s.total_trades == 4
    assert s.win_rate == 0.5
    assert s.current_streak == -2
    assert s.consecutive_losses == 2
    assert s.total_pnl == pytest.approx(-0.3)
    assert s.peak_pnl == pytest.approx(1.7)
    assert s.max_drawdown == pytest.approx(2.0)
    assert s.avg_win == pytest.approx(0.85)
    assert s.avg_loss == pytest.approx(1.0)
    assert s.last_result is TradeResult.LOSS

    s.record(TradeResult.WIN, 0.85)
    assert s.consecutive_losses == 0
    assert s.current_streak == 1

def test_session_reset_keeps_balance_and_stake():
    s = SessionState(balance=250, current_stake=3.0)
    s.record(TradeResult.LOSS, -3.0)
    s.is_paused = True
    s.reset()
    assert (s.balance, s.current_stake) == (250, 3.0)
    assert s.total_trades == 0
    assert not s.is_paused
    assert s.win_rate == 0.0
