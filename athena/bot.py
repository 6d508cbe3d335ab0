import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from athena.config import TradeConfig
from athena.constants import (
    Direction, GateAction, SessionPhase, StrategyId, MIN_STAKE,
)
from athena.core.candles import CandleAggregator
from athena.core.expiry import DurationPredictor
from athena.core.indicators import IndicatorEngine, IndicatorSnapshot
from athena.core.models import (
    intelligence_level, knowledge_status, make_scorer, load_brain, save_brain,
)
from athena.core.regime import MarketConditions, detect_trend
from athena.core.signals import Signal, SignalEngine
from athena.events import EventBus
from athena.trading.journal import TradeJournal
from athena.trading.performance import SessionState
from athena.trading.risk import RiskManager
from athena.trading.strategy import StrategySelector
from athena.trading.trade import ActiveContract, TradeRecord, settle
from athena.transport import DerivTransport
from athena.utils.candle import parse_tick
from athena.utils.logger import log

STAKE_STEP = 0.1                            # InvalidStake retry decrement
RATE_LIMIT_BACKOFF = 1.0

@dataclass
class TradeAttempt:
    """A trade between the signal and the buy confirmation."""
    symbol: str
    direction: Direction
    stake: float
    duration: int
    strategy: StrategyId
    indicators: IndicatorSnapshot
    conditions: MarketConditions
    retried: bool = False

class TradeController:
    """
    Owns the session: routes venue messages, drives the trade lifecycle
    (signal → gate → stake → duration → proposal → buy → monitor → settle)
    and feeds outcomes back into strategy stats, durations and the scorer.

    Phases: IDLE → CONNECTED → TRADING ⇄ PAUSED → STOPPED. At most one
    contract is open and no new evaluation starts while an attempt waits
    for the venue.
    """

    def __init__(self, cfg: TradeConfig, channel=None,
                 aggregator: Optional[CandleAggregator] = None,
                 engine: Optional[IndicatorEngine] = None,
                 signals: Optional[SignalEngine] = None,
                 risk: Optional[RiskManager] = None,
                 journal: Optional[TradeJournal] = None,
                 events: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time):
        self.cfg = cfg
        self.channel = channel
        self.aggregator = aggregator or CandleAggregator(cfg.candle_timeframe, cfg.candle_capacity)
        self.engine = engine or IndicatorEngine()
        self.signals = signals or SignalEngine(cfg, make_scorer(cfg.scorer))
        self.risk = risk or RiskManager(cfg)
        if self.risk.probe is None:
            self.risk.probe = self._probe
        self.risk.add_listener(self._on_cooldown)
        self.journal = journal
        self.events = events or EventBus()
        self.clock = clock

        self.session = SessionState(current_stake=cfg.initial_stake)
        self.selector = StrategySelector(cfg.strategy)
        self.durations = DurationPredictor(cfg.duration)
        self.snapshots: dict[str, IndicatorSnapshot] = {}
        self.correlations: dict[tuple[str, str], float] = {}

        self.phase = SessionPhase.IDLE
        self.contract: Optional[ActiveContract] = None
        self.attempt: Optional[TradeAttempt] = None
        self._pending: dict[int, str] = {}      # req_id -> "proposal" / "buy" / "sell"
        self._connected = False
        self._wants_trading = False
        self._last_trade = 0.0
        self._last_price: dict[str, float] = {}
        self._history: list[TradeRecord] = []
        self._since_fit = 0
        self._confidence_sum = 0.0
        self._signals_taken = 0
        self.backtest_win_rate = 0.0

        self.handlers = {
            "authorize": self._on_authorize,
            "balance": self._on_balance,
            "tick": self._on_tick,
            "proposal": self._on_proposal,
            "buy": self._on_buy,
            "proposal_open_contract": self._on_open_contract,
            "sell": self._on_sell,
        }

    # ------------------------------------------------------------------
    def indicators(self, symbol: Optional[str] = None) -> IndicatorSnapshot:
        return self.snapshots.get(symbol or self.cfg.symbol, IndicatorSnapshot())

    def knowledge(self) -> dict:
        """How much the bot has learned so far, as a 0-10 level and a status line."""
        n = len(self._history)
        live = sum(r.won for r in self._history) / n if n else 0.0
        confidence = self._confidence_sum / self._signals_taken if self._signals_taken else 0.0
        level = intelligence_level(n, confidence, self.backtest_win_rate, live)
        return {"level": level, "status": knowledge_status(level)}

    def _set_phase(self, phase: SessionPhase):
        if phase is self.phase:
            return
        log.debug("Phase %s → %s", self.phase.value, phase.value)
        self.phase = phase
        self.events.publish("phase", phase=phase)

    def _send(self, payload: dict, kind: Optional[str] = None) -> Optional[int]:
        if self.channel is None:
            log.warning("No channel attached, dropping %s request", kind or next(iter(payload)))
            return None
        try:
            req_id = self.channel.send(payload)
        except Exception as e:
            log.error("Send failed: %s", e)
            return None
        if kind:
            self._pending[req_id] = kind
        return req_id

    # ---- Connection lifecycle ----
    def handshake(self) -> list[dict]:
        """Messages sent first on every (re)connect."""
        msgs = []
        if self.cfg.api_token:
            msgs.append({"authorize": self.cfg.api_token})
            msgs.append({"balance": 1, "subscribe": 1})
        for symbol in self.cfg.symbols:
            msgs.append({"ticks": symbol, "subscribe": 1})
        if self.contract is not None:
            msgs.append({"proposal_open_contract": 1, "contract_id": self.contract.id, "subscribe": 1})
        return msgs

    def on_open(self):
        self._connected = True
        if self.phase is SessionPhase.IDLE:
            self._set_phase(SessionPhase.CONNECTED)
        if not self.cfg.api_token and self._wants_trading:
            self._enter_trading()

    def on_close(self):
        self._connected = False
        if self._pending:
            log.warning("Dropping %d pending request(s) after disconnect", len(self._pending))
            # queued trade requests must not reach the venue after the attempt is gone
            if self.channel is not None:
                self.channel.discard(list(self._pending))
            if self.contract is not None and "sell" in self._pending.values():
                self.contract.exit_requested = False
        self._pending.clear()
        if self.attempt is not None:
            self._abandon("connection lost")
        if self.phase is not SessionPhase.STOPPED:
            self._set_phase(SessionPhase.IDLE)
        log.warning("🔌 Disconnected")

    # ---- Dispatch ----
    def handle(self, message: dict):
        """Single entry point for every inbound message, in arrival order."""
        if message.get("error"):
            self._on_error(message)
            return
        msg_type = message.get("msg_type")
        handler = self.handlers.get(msg_type)
        if handler is None:
            log.debug("Ignoring message type %r", msg_type)
            return
        handler(message)

    def _on_authorize(self, msg: dict):
        auth = msg.get("authorize") or {}
        try:
            self.session.balance = float(auth.get("balance", self.session.balance))
        except (TypeError, ValueError):
            log.warning("Unreadable balance in authorize reply: %r", auth.get("balance"))
        log.info("✅ Authorized %s  |  Balance: $%.2f", auth.get("loginid", ""), self.session.balance)
        if self.phase is SessionPhase.IDLE:
            self._set_phase(SessionPhase.CONNECTED)
        if self._wants_trading:
            self._enter_trading()

    def _on_balance(self, msg: dict):
        bal = (msg.get("balance") or {}).get("balance")
        try:
            self.session.balance = float(bal)
        except (TypeError, ValueError):
            log.warning("Unreadable balance update: %r", bal)
            return
        self.events.publish("status", balance=self.session.balance, summary=self.session.summary())

    def _on_tick(self, msg: dict):
        raw = msg.get("tick") or {}
        tick = parse_tick(raw)
        if tick is None or not tick.symbol:
            log.warning("Dropping malformed tick: %r", raw)
            return
        if tick.volume == 0:
            tick = replace(tick, volume=self.aggregator.estimate_volume(tick.symbol, tick.price))
        if self.journal is not None and self.cfg.record_ticks:
            self.journal.append_tick(tick)

        sealed = self.aggregator.add_tick(tick.symbol, tick)
        if sealed is not None:
            self._on_candle_close(tick.symbol)

        self._last_price[tick.symbol] = tick.price
        if tick.symbol == self.cfg.symbol:
            self.maybe_evaluate()

    def _on_candle_close(self, symbol: str):
        candles = self.aggregator.sealed(symbol)
        if self.journal is not None and candles:
            self.journal.append_candle(candles[-1])
        snapshot = self.engine.update(candles)
        self.snapshots[symbol] = snapshot
        self.correlations = self.engine.correlate(self.aggregator.candle_map())
        self.events.publish("indicators", symbol=symbol, snapshot=snapshot, correlations=self.correlations)

    # ---- Evaluation ----
    def maybe_evaluate(self) -> Optional[Signal]:
        if self.phase is not SessionPhase.TRADING or self.session.is_paused:
            return None
        if self.contract is not None or self.attempt is not None:
            return None
        if self.clock() - self._last_trade < self.cfg.min_trade_interval:
            return None
        return self.evaluate()

    def evaluate(self) -> Optional[Signal]:
        cfg = self.cfg
        symbol = cfg.symbol
        candles = self.aggregator.sealed(symbol)
        ind = self.indicators(symbol)

        strategy = self.selector.select_best() if cfg.use_dynamic_switching else cfg.strategy
        conditions = MarketConditions.assess(
            symbol, candles, ind, cfg.news_events,
            pattern=self.aggregator.detect_pattern(symbol) if cfg.use_candle_patterns else None,
            peers=self.aggregator.candle_map(),
            now=self.risk.clock(),
            price=self._last_price.get(symbol),
        )

        signal = self.signals.evaluate(strategy, ind, candles, conditions)
        if not signal.should_trade:
            log.debug("⏸ %s: %s", strategy.value, signal.reason)
            return signal

        gate = self.risk.check(self.session, ind)
        if not gate.allowed:
            self._apply_gate(gate)
            return signal

        stake = self.risk.size_stake(self.session, self.session.last_result, ind)
        self.session.current_stake = stake
        duration = self.durations.predict(ind)
        self.attempt = TradeAttempt(
            symbol=signal.symbol or symbol,
            direction=signal.direction,
            stake=stake,
            duration=duration,
            strategy=strategy,
            indicators=ind,
            conditions=conditions,
        )
        log.info("📡 %s %s  conf=%.0f%%  stake=$%.2f  duration=%ds  (%s)",
                 strategy.value, signal.direction.value, signal.confidence * 100,
                 stake, duration, signal.reason)
        self._confidence_sum += signal.confidence
        self._signals_taken += 1
        self.events.publish("signal", signal=signal, stake=stake, duration=duration)
        self._request_proposal()
        return signal

    def _apply_gate(self, gate):
        if gate.action is GateAction.STOP:
            self.stop_trading(gate.reason.value)
        elif gate.action is GateAction.COOLDOWN:
            log.warning("⏸️  %s (%s)", gate.reason.value, gate.detail)
            self.risk.enter_cooldown(self.session)

    def _request_proposal(self):
        a = self.attempt
        req = self._send({
            "proposal": 1,
            "amount": round(a.stake, 2),
            "basis": "stake",
            "contract_type": a.direction.value,
            "currency": "USD",
            "symbol": a.symbol,
            "duration": a.duration,
            "duration_unit": "s",
        }, "proposal")
        if req is None:
            self._abandon("proposal not sent")
            return
        self._last_trade = self.clock()

    def _abandon(self, reason: str):
        if self.attempt is not None:
            log.info("↩️  Trade attempt abandoned: %s", reason)
        self.attempt = None

    def _take_pending(self, msg: dict, kind: str) -> bool:
        req_id = msg.get("req_id")
        if self._pending.get(req_id) != kind:
            log.debug("Ignoring unsolicited %s reply (req_id=%s)", kind, req_id)
            return False
        del self._pending[req_id]
        return True

    # ---- Venue replies ----
    def _on_proposal(self, msg: dict):
        if not self._take_pending(msg, "proposal") or self.attempt is None:
            return
        proposal = msg.get("proposal") or {}
        if "id" not in proposal:
            self._abandon("proposal without id")
            return
        price = proposal.get("ask_price", round(self.attempt.stake, 2))
        if self._send({"buy": proposal["id"], "price": price}, "buy") is None:
            self._abandon("buy not sent")

    def _on_buy(self, msg: dict):
        if not self._take_pending(msg, "buy") or self.attempt is None:
            return
        buy = msg.get("buy") or {}
        a = self.attempt
        try:
            contract_id = int(buy["contract_id"])
            buy_price = float(buy.get("buy_price", a.stake))
        except (KeyError, TypeError, ValueError) as e:
            log.error("Unreadable buy reply %r: %s", buy, e)
            self._abandon("bad buy reply")
            return

        self.contract = ActiveContract(
            id=contract_id,
            stake=a.stake,
            direction=a.direction,
            buy_price=buy_price,
            symbol=a.symbol,
            start_time=self.clock(),
            duration=a.duration,
            strategy=a.strategy.value,
            shortcode=str(buy.get("shortcode", "")),
            indicators=a.indicators,
            market_conditions=a.conditions.to_dict(),
        )
        self.attempt = None
        self._send({"proposal_open_contract": 1, "contract_id": contract_id, "subscribe": 1})
        log.info("📈 %s  $%.2f on %s  |  %ds  |  contract %s",
                 a.direction.value, buy_price, a.symbol, a.duration, contract_id)
        self.events.publish("trade_opened", contract=self.contract)

    def _on_open_contract(self, msg: dict):
        poc = msg.get("proposal_open_contract") or {}
        c = self.contract
        if c is None or poc.get("contract_id") is None:
            return
        try:
            if int(poc["contract_id"]) != c.id:
                return
        except (TypeError, ValueError):
            return

        if poc.get("is_sold"):
            try:
                sell_price = float(poc.get("sell_price", 0) or 0)
            except (TypeError, ValueError):
                log.warning("Unreadable sell price %r, settling at 0", poc.get("sell_price"))
                sell_price = 0.0
            self._settle(sell_price)
        else:
            self._check_early_exit(poc)

    def _on_sell(self, msg: dict):
        if not self._take_pending(msg, "sell"):
            return
        sell = msg.get("sell") or {}
        log.info("💰 Early exit sold at $%s (contract %s)", sell.get("sold_for"), sell.get("contract_id"))

    def _on_error(self, msg: dict):
        err = msg.get("error") or {}
        code, text = err.get("code", "Unknown"), err.get("message", "")
        kind = self._pending.pop(msg.get("req_id"), None)

        if kind in ("proposal", "buy") and self.attempt is not None:
            a = self.attempt
            if code == "InvalidStake" and not a.retried and a.stake > MIN_STAKE:
                a.stake = max(MIN_STAKE, round(a.stake - STAKE_STEP, 2))
                a.retried = True
                self.session.current_stake = a.stake
                log.warning("⚠️  Stake rejected (%s), retrying once with $%.2f", text, a.stake)
                self._request_proposal()
                return
            if code == "RateLimit":
                log.warning("⚠️  Rate limited, holding queue %.0fs", RATE_LIMIT_BACKOFF)
                if self.channel is not None:
                    self.channel.backoff(RATE_LIMIT_BACKOFF)
            else:
                log.warning("⚠️  %s rejected: %s %s", kind, code, text)
            self._abandon(code)
            return

        if kind == "sell":
            log.warning("⚠️  Early exit rejected: %s %s", code, text)
            return
        log.error("Venue error (%s): %s %s", msg.get("msg_type"), code, text)

    # ---- Monitoring / settlement ----
    def _check_early_exit(self, poc: dict):
        c = self.contract
        if not self.cfg.early_exit_enabled or c.exit_requested or c.stake <= 0:
            return
        try:
            profit = float(poc.get("profit", 0) or 0)
            spot = float(poc.get("current_spot", 0) or 0)
        except (TypeError, ValueError):
            return
        if profit / c.stake <= self.cfg.trailing_profit_threshold:
            return

        ind = self.indicators(c.symbol)
        if not (ind.available("bollinger") and ind.available("macd")):
            return
        hist = ind.macd.histogram
        reversal = (spot > ind.bollinger.upper and hist < 0) or (spot < ind.bollinger.lower and hist > 0)
        if reversal:
            c.exit_requested = True
            log.info("🏃 Early exit on %s: profit $%.2f, reversal at %.5f", c.id, profit, spot)
            self._send({"sell": c.id, "price": 0}, "sell")

    @staticmethod
    def _strategy_of(name: str) -> Optional[StrategyId]:
        try:
            return StrategyId(name)
        except ValueError:
            log.debug("Unknown strategy %r, skipped for stats", name)
            return None

    def _settle(self, sell_price: float):
        rec = replace(settle(self.contract, sell_price), timestamp=self.clock())
        strategy = self._strategy_of(rec.strategy)

        self.contract = None
        self.session.record(rec.result, rec.pnl)
        if strategy is not None:
            self.selector.record_trade(strategy, rec.result)
        self.durations.record_result(rec.duration, rec.result)
        if self.journal is not None:
            self.journal.append_trade(rec)
        self._history.append(rec)
        self._since_fit += 1
        if self._since_fit >= self.cfg.retrain_every:
            self._retrain()

        icon = "✅" if rec.won else "❌"
        log.info("%s  %s  $%+.2f  duration=%ds  |  %s  |  durations: %s",
                 icon, rec.result.value.upper(), rec.pnl, rec.duration,
                 self.session.summary(), self.durations.status_line())
        self.events.publish("trade", record=rec, summary=self.session.summary(), knowledge=self.knowledge())
        self._send({"balance": 1})

        if self.phase is SessionPhase.STOPPED:
            return
        gate = self.risk.check(self.session, self.indicators())
        if gate.action in (GateAction.STOP, GateAction.COOLDOWN):
            self._apply_gate(gate)

    def _retrain(self):
        self._since_fit = 0
        scorer = self.signals.scorer
        if scorer is None:
            return
        try:
            scorer.fit(self._history)
        except Exception as e:
            log.error("Scorer training failed: %s", e)
            return
        save_brain(scorer, self.cfg.brain_path)

    def _probe(self) -> tuple:
        symbol = self.cfg.symbol
        return self.indicators(symbol), detect_trend(self.aggregator.sealed(symbol))

    def _on_cooldown(self, paused: bool, session: SessionState):
        if paused and self.phase is SessionPhase.TRADING:
            self._set_phase(SessionPhase.PAUSED)
        elif not paused and self.phase is SessionPhase.PAUSED:
            self._set_phase(SessionPhase.TRADING)
        self.events.publish("pause", paused=paused, extensions=session.pause_extensions)

    # ---- Session control ----
    def _enter_trading(self):
        self._set_phase(SessionPhase.PAUSED if self.session.is_paused else SessionPhase.TRADING)

    def start_trading(self):
        self._wants_trading = True
        log.info("🚀 Trading started with %s strategy on %s", self.cfg.strategy.value, ", ".join(self.cfg.symbols))
        if self._connected:
            self._enter_trading()
        else:
            log.info("Waiting for connection before trading …")

    def stop_trading(self, reason: str = "manual"):
        self._wants_trading = False
        self._abandon(f"stopped ({reason})")
        self.risk.cancel()
        self._set_phase(SessionPhase.STOPPED)
        log.info("🛑 Trading stopped (%s).  Session: %s", reason, self.session.summary())
        self.events.publish("status", stopped=True, reason=reason, summary=self.session.summary(),
                            knowledge=self.knowledge())

    def reset_stats(self):
        self.risk.cancel()
        self.session.reset()
        self.session.current_stake = self.cfg.initial_stake
        self.selector = StrategySelector(self.cfg.strategy)
        self.durations = DurationPredictor(self.cfg.duration)
        if self.phase is SessionPhase.PAUSED:
            self._set_phase(SessionPhase.TRADING)
        log.info("🔄 Session statistics reset")
        self.events.publish("status", summary=self.session.summary())

    # ---- Startup ----
    def bootstrap(self):
        """Load the saved scorer and replay the journal so a restart keeps its history."""
        self.signals.scorer = load_brain(self.cfg.scorer, self.cfg.brain_path)
        if self.journal is None:
            return

        for symbol in self.cfg.symbols:
            for candle in self.journal.load_candles(symbol, limit=self.aggregator.capacity):
                self.aggregator.add_candle(symbol, candle)
            candles = self.aggregator.sealed(symbol)
            if candles:
                self.snapshots[symbol] = self.engine.update(candles)
                log.info("Warmed up %s with %d journaled candles", symbol, len(candles))

        past = self.journal.load_trades()
        if not past:
            log.info("No past trades found in journal, starting fresh.")
            return
        for rec in past:
            strategy = self._strategy_of(rec.strategy)
            if strategy is not None:
                self.selector.record_trade(strategy, rec.result)
            self.durations.record_result(rec.duration, rec.result)
        self._history = list(past)
        if not self.signals.scorer.ready:
            self._retrain()
        know = self.knowledge()
        log.info("🔄 Reloaded %d trades from journal  |  %s  |  🧠 %d/10 %s",
                 len(past), self.selector.status_line(), know["level"], know["status"])

    async def run(self, transport=None):
        """Connect and trade until stopped or the connection gives up."""
        log.info("═" * 60)
        log.info("  🦉 AthenaAI TRADING BOT (Deriv)")
        log.info("  Symbols: %s  |  Timeframe: %ds", ", ".join(self.cfg.symbols), self.cfg.candle_timeframe)
        log.info("  Strategy: %s  |  Sizing: %s  |  Progression: %s",
                 self.cfg.strategy.value, self.cfg.position_sizing.value, self.cfg.progression.value)
        log.info("═" * 60)

        try:
            self.bootstrap()
        except Exception as e:
            log.error("Failed to reload from journal: %s", e)

        self.channel = transport or DerivTransport(
            self.cfg,
            on_message=self.handle,
            handshake=self.handshake,
            on_open=self.on_open,
            on_close=self.on_close,
        )
        self.start_trading()
        try:
            await self.channel.run()
        finally:
            if self.phase is not SessionPhase.STOPPED:
                self.stop_trading("connection closed")
            self._retrain()
