import pytest

from athena.config import TradeConfig
from athena.constants import Direction, SessionPhase, StrategyId, TradeResult
from athena.core.indicators import Bands, IndicatorSnapshot, Macd
from athena.bot import TradeController
from athena.trading.journal import TradeJournal
from athena.trading.risk import RiskManager
from athena.trading.trade import ActiveContract, TradeRecord
from athena.transport import DerivTransport
from athena.utils.candle import Candle

OVERBOUGHT = IndicatorSnapshot(rsi=80, samples=40)

@pytest.fixture
def controller(cfg, channel, scheduler, quiet_clock, tmp_path):
    cfg.brain_path = str(tmp_path / "brain.pkl")
    risk = RiskManager(cfg, scheduler=scheduler, clock=quiet_clock)
    return TradeController(cfg, channel=channel, risk=risk, clock=lambda: 1000.0)

def _trading(ctrl, balance=1000.0):
    ctrl.start_trading()
    ctrl.on_open()
    ctrl.handle({"msg_type": "balance", "balance": {"balance": balance, "currency": "USD"}})
    assert ctrl.phase is SessionPhase.TRADING
    return ctrl

def _open_contract(ctrl, channel, contract_id=11):
    """Signal -> proposal -> buy, returns the proposal payload."""
    ctrl.snapshots["R_10"] = OVERBOUGHT
    assert ctrl.maybe_evaluate().should_trade
    proposal = channel.of_kind("proposal")[-1]
    ctrl.handle({"msg_type": "proposal", "req_id": proposal["req_id"],
                 "proposal": {"id": "prop-1", "ask_price": proposal["amount"]}})
    buy = channel.of_kind("buy")[-1]
    ctrl.handle({"msg_type": "buy", "req_id": buy["req_id"],
                 "buy": {"contract_id": contract_id, "buy_price": proposal["amount"], "shortcode": "PUT_R_10"}})
    return proposal

def test_max_trades_one_stops_after_settlement(cfg, channel, controller):
    cfg.max_trades = 1
    ctrl = _trading(controller)
    trades = []
    ctrl.events.subscribe("trade", lambda kind, payload: trades.append(payload["record"]))

    proposal = _open_contract(ctrl, channel)
    assert proposal["contract_type"] == "PUT"
    assert proposal["amount"] == 1.0
    assert proposal["basis"] == "stake"
    assert proposal["currency"] == "USD"
    assert proposal["symbol"] == "R_10"
    assert proposal["duration"] == 60
    assert proposal["duration_unit"] == "s"
    assert channel.of_kind("buy")[-1]["buy"] == "prop-1"
    assert channel.of_kind("proposal_open_contract")[-1]["contract_id"] == 11
    assert ctrl.contract is not None
    # one contract at a time
    assert ctrl.maybe_evaluate() is None

    ctrl.handle({"msg_type": "proposal_open_contract",
                 "proposal_open_contract": {"contract_id": 11, "is_sold": 1, "sell_price": 0, "profit": -1}})

    assert ctrl.contract is None
    assert ctrl.phase is SessionPhase.STOPPED
    assert ctrl.session.total_trades == 1
    assert ctrl.session.losses == 1
    assert [t.result for t in trades] == [TradeResult.LOSS]
    assert trades[0].pnl == pytest.approx(-1.0)
    assert ctrl.maybe_evaluate() is None

    # restarting is refused by the max-trades gate
    ctrl.start_trading()
    ctrl.maybe_evaluate()
    assert ctrl.phase is SessionPhase.STOPPED
    assert len(channel.of_kind("proposal")) == 1

def test_winning_trade_updates_stats(channel, controller):
    ctrl = _trading(controller)
    _open_contract(ctrl, channel)
    ctrl.handle({"msg_type": "proposal_open_contract",
                 "proposal_open_contract": {"contract_id": 11, "is_sold": 1, "sell_price": 1.85}})

    assert ctrl.session.wins == 1
    assert ctrl.session.total_pnl == pytest.approx(0.85)
    assert ctrl.selector.win_rate(StrategyId.RSI) == 1.0
    assert ctrl.durations.win_rate(60) == 1.0
    assert ctrl.phase is SessionPhase.TRADING
    assert channel.sent[-1] == {"balance": 1, "req_id": channel.sent[-1]["req_id"]}

def test_invalid_stake_is_retried_once(channel, controller):
    ctrl = _trading(controller)
    ctrl.snapshots["R_10"] = OVERBOUGHT
    ctrl.maybe_evaluate()
    first = channel.of_kind("proposal")[-1]

    ctrl.handle({"msg_type": "proposal", "req_id": first["req_id"],
                 "error": {"code": "InvalidStake", "message": "stake too high"}})
    retry = channel.of_kind("proposal")[-1]
    assert retry["amount"] == pytest.approx(0.9)
    assert ctrl.attempt is not None

    ctrl.handle({"msg_type": "proposal", "req_id": retry["req_id"],
                 "error": {"code": "InvalidStake", "message": "stake too high"}})
    assert ctrl.attempt is None
    assert len(channel.of_kind("proposal")) == 2

def test_rate_limit_backs_off_and_abandons(channel, controller):
    ctrl = _trading(controller)
    ctrl.snapshots["R_10"] = OVERBOUGHT
    ctrl.maybe_evaluate()
    proposal = channel.of_kind("proposal")[-1]

    ctrl.handle({"msg_type": "proposal", "req_id": proposal["req_id"],
                 "error": {"code": "RateLimit", "message": "slow down"}})
    assert channel.backoffs == [1.0]
    assert ctrl.attempt is None

def test_unsolicited_replies_are_ignored(channel, controller):
    ctrl = _trading(controller)
    ctrl.handle({"msg_type": "proposal", "req_id": 99, "proposal": {"id": "x"}})
    ctrl.handle({"msg_type": "buy", "req_id": 98, "buy": {"contract_id": 1}})
    ctrl.handle({"msg_type": "proposal_open_contract", "proposal_open_contract": {"contract_id": 1, "is_sold": 1}})
    ctrl.handle({"msg_type": "website_status"})
    assert channel.of_kind("buy") == []
    assert ctrl.contract is None
    assert ctrl.session.total_trades == 0

def test_neutral_market_sends_nothing(channel, controller):
    ctrl = _trading(controller)
    ctrl.snapshots["R_10"] = IndicatorSnapshot(rsi=50, samples=40)
    assert not ctrl.maybe_evaluate().should_trade
    assert channel.of_kind("proposal") == []

def test_insufficient_balance_stops(channel, controller):
    ctrl = _trading(controller, balance=0.0)
    ctrl.snapshots["R_10"] = OVERBOUGHT
    ctrl.maybe_evaluate()
    assert ctrl.phase is SessionPhase.STOPPED
    assert channel.of_kind("proposal") == []

def test_early_exit_sells_once_on_reversal(channel, controller):
    ctrl = _trading(controller)
    ctrl.snapshots["R_10"] = IndicatorSnapshot(bollinger=Bands(101, 100, 99), macd=Macd(0.1, 0.2, -0.1), samples=40)
    ctrl.contract = ActiveContract(id=5, stake=1.0, direction=Direction.CALL, buy_price=1.0, symbol="R_10")

    update = {"contract_id": 5, "is_sold": 0, "profit": 0.4, "current_spot": 102}
    ctrl.handle({"msg_type": "proposal_open_contract", "proposal_open_contract": update})
    assert channel.of_kind("sell") == []

    update["profit"] = 0.6
    ctrl.handle({"msg_type": "proposal_open_contract", "proposal_open_contract": update})
    ctrl.handle({"msg_type": "proposal_open_contract", "proposal_open_contract": update})
    sells = channel.of_kind("sell")
    assert len(sells) == 1
    assert (sells[0]["sell"], sells[0]["price"]) == (5, 0)

    ctrl.handle({"msg_type": "sell", "req_id": sells[0]["req_id"], "sell": {"contract_id": 5, "sold_for": 1.6}})
    ctrl.handle({"msg_type": "proposal_open_contract",
                 "proposal_open_contract": {"contract_id": 5, "is_sold": 1, "sell_price": 1.6}})
    assert ctrl.session.wins == 1

def test_losing_streak_pauses_the_session(channel, scheduler, controller):
    ctrl = _trading(controller)
    ctrl.session.consecutive_losses = 4
    _open_contract(ctrl, channel)
    ctrl.handle({"msg_type": "proposal_open_contract",
                 "proposal_open_contract": {"contract_id": 11, "is_sold": 1, "sell_price": 0}})

    assert ctrl.session.is_paused
    assert ctrl.phase is SessionPhase.PAUSED
    assert len(scheduler.calls) == 1
    assert ctrl.maybe_evaluate() is None

    ctrl.risk.resume(ctrl.session)
    assert ctrl.phase is SessionPhase.TRADING

def test_ticks_build_candles_and_indicators(controller):
    ctrl = controller
    published = []
    ctrl.events.subscribe("indicators", lambda kind, payload: published.append(payload["snapshot"]))

    for i in range(20):
        ctrl.handle({"msg_type": "tick", "tick": {"symbol": "R_10", "quote": 1.0 + i * 0.001, "epoch": 60 * (i + 1)}})
    ctrl.handle({"msg_type": "tick", "tick": {"symbol": "R_10", "quote": "oops", "epoch": 5000}})

    assert len(ctrl.aggregator.sealed("R_10")) == 19
    assert len(published) == 19
    assert ctrl.indicators().samples == 19
    assert ctrl.indicators().rsi == 100.0
    assert ctrl._last_price["R_10"] == pytest.approx(1.019)

def test_disconnect_abandons_attempt_and_resubscribes(cfg, channel, controller):
    cfg.api_token = "secret"
    ctrl = controller
    ctrl.start_trading()
    ctrl.on_open()
    assert ctrl.phase is SessionPhase.CONNECTED
    ctrl.handle({"msg_type": "authorize", "authorize": {"balance": 500, "loginid": "VRTC1"}})
    assert ctrl.phase is SessionPhase.TRADING
    assert ctrl.session.balance == 500

    ctrl.snapshots["R_10"] = OVERBOUGHT
    ctrl.maybe_evaluate()
    assert ctrl.attempt is not None
    ctrl.on_close()
    assert ctrl.attempt is None
    assert ctrl.phase is SessionPhase.IDLE

    ctrl.contract = ActiveContract(id=77, stake=1.0, direction=Direction.PUT, buy_price=1.0, symbol="R_10")
    msgs = ctrl.handshake()
    assert msgs[0] == {"authorize": "secret"}
    assert {"ticks": "R_10", "subscribe": 1} in msgs
    assert msgs[-1] == {"proposal_open_contract": 1, "contract_id": 77, "subscribe": 1}

def test_reset_stats_keeps_balance(controller):
    ctrl = _trading(controller)
    ctrl.session.record(TradeResult.LOSS, -1.0)
    ctrl.reset_stats()
    assert ctrl.session.total_trades == 0
    assert ctrl.session.balance == 1000.0
    assert ctrl.session.current_stake == 1.0

def test_bootstrap_replays_the_journal(cfg, controller):
    journal = TradeJournal(":memory:")
    for i in range(30):
        journal.append_candle(Candle(60.0 * i, 1.0, 1.1, 0.9, 1.0 + i * 0.01, 1.0, "R_10"))
    for i in range(3):
        journal.append_trade(TradeRecord(
            id=str(i), symbol="R_10", result=TradeResult.WIN, pnl=0.85, stake=1.0,
            direction=Direction.CALL, duration=60, strategy="grid", timestamp=1700000000.0 + i,
        ))
    controller.journal = journal

    controller.bootstrap()
    assert len(controller.aggregator.sealed("R_10")) == 30
    assert controller.indicators().samples == 30
    assert controller.selector.trades(StrategyId.GRID) == 3
    assert controller.durations.win_rate(60) == 1.0
    journal.close()

def test_settlement_completes_for_unknown_strategy(channel, controller):
    ctrl = _trading(controller)
    ctrl.journal = TradeJournal(":memory:")
    payloads = []
    ctrl.events.subscribe("trade", lambda kind, payload: payloads.append(payload))
    ctrl.contract = ActiveContract(id=9, stake=1.0, direction=Direction.CALL, buy_price=1.0,
                                   symbol="R_10", strategy="legacy")

    ctrl.handle({"msg_type": "proposal_open_contract",
                 "proposal_open_contract": {"contract_id": 9, "is_sold": 1, "sell_price": 1.85}})

    assert ctrl.contract is None
    assert ctrl.session.wins == 1
    assert ctrl.journal.total_trades() == 1
    assert [p["record"].strategy for p in payloads] == ["legacy"]
    assert [p["knowledge"]["level"] for p in payloads] == [0]
    assert all(ctrl.selector.trades(s) == 0 for s in StrategyId)
    assert ctrl.durations.win_rate(60) == 1.0
    assert "balance" in channel.sent[-1]
    ctrl.journal.close()

def test_disconnect_discards_queued_trade_requests(controller):
    transport = DerivTransport(TradeConfig(max_retries=0, reconnect_delay=0))
    ctrl = controller
    ctrl.channel = transport
    _trading(ctrl)
    ctrl.snapshots["R_10"] = OVERBOUGHT
    ctrl.maybe_evaluate()
    proposal = [p for p in transport.pending if "proposal" in p][-1]
    ctrl.handle({"msg_type": "proposal", "req_id": proposal["req_id"],
                 "proposal": {"id": "p1", "ask_price": 1}})
    buy = [p for p in transport.pending if "buy" in p][-1]

    ctrl.on_close()
    assert ctrl.attempt is None
    assert not [p for p in transport.pending if "buy" in p]

    # a reply to the dropped buy opens nothing
    ctrl.handle({"msg_type": "buy", "req_id": buy["req_id"], "buy": {"contract_id": 3, "buy_price": 1}})
    assert ctrl.contract is None

def test_disconnect_rearms_a_dropped_early_exit(channel, controller):
    ctrl = _trading(controller)
    ctrl.contract = ActiveContract(id=5, stake=1.0, direction=Direction.CALL, buy_price=1.0,
                                   symbol="R_10", exit_requested=True)
    sell_id = ctrl._send({"sell": 5, "price": 0}, "sell")

    ctrl.on_close()
    assert channel.discarded == [sell_id]
    assert not ctrl.contract.exit_requested

def test_min_interval_spaces_trades_not_evaluations(cfg, channel, scheduler, quiet_clock, tmp_path):
    cfg.brain_path = str(tmp_path / "brain.pkl")
    cfg.min_trade_interval = 30.0
    now = [1000.0]
    risk = RiskManager(cfg, scheduler=scheduler, clock=quiet_clock)
    ctrl = _trading(TradeController(cfg, channel=channel, risk=risk, clock=lambda: now[0]))

    ctrl.snapshots["R_10"] = IndicatorSnapshot(rsi=50, samples=40)
    assert ctrl.maybe_evaluate() is not None
    assert ctrl.maybe_evaluate() is not None

    ctrl.snapshots["R_10"] = OVERBOUGHT
    assert ctrl.maybe_evaluate().should_trade
    proposal = channel.of_kind("proposal")[-1]
    ctrl.handle({"msg_type": "proposal", "req_id": proposal["req_id"],
                 "error": {"code": "ContractBuyValidationError", "message": "market closed"}})
    assert ctrl.attempt is None

    now[0] += 10
    assert ctrl.maybe_evaluate() is None
    now[0] += 25
    assert ctrl.maybe_evaluate().should_trade
    assert len(channel.of_kind("proposal")) == 2

def test_knowledge_grows_with_history(controller):
    ctrl = controller
    assert ctrl.knowledge() == {"level": 0, "status": "Insufficient data - training needed"}

    won = TradeRecord(id="1", symbol="R_10", result=TradeResult.WIN, pnl=0.85, stake=1.0,
                      direction=Direction.CALL, duration=60, strategy="rsi-threshold")
    ctrl._history = [won] * 100
    ctrl.backtest_win_rate = 0.5
    assert ctrl.knowledge() == {"level": 4, "status": "Training in progress"}
