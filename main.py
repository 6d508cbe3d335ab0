import asyncio
import json
import os
import sys

from dotenv import load_dotenv

from athena.backtest import Backtester, load_candles_csv
from athena.bot import TradeController
from athena.config import TradeConfig
from athena.core.models import load_brain, save_brain
from athena.trading.journal import TradeJournal
from athena.utils.logger import log

def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")

def config_from_env() -> TradeConfig:
    env = os.environ.get
    data = {
        "app_id": env("ATHENA_APP_ID", "1089"),
        "api_token": env("ATHENA_API_TOKEN", ""),
        "symbols": env("ATHENA_SYMBOLS", "R_10"),
        "strategy": env("ATHENA_STRATEGY", "rsi-threshold"),
        "duration": env("ATHENA_DURATION", "60"),
        "initial_stake": env("ATHENA_STAKE", "1.0"),
        "max_loss": env("ATHENA_MAX_LOSS", "50"),
        "max_profit": env("ATHENA_MAX_PROFIT", "100"),
        "max_trades": env("ATHENA_MAX_TRADES", "50"),
        "max_drawdown": env("ATHENA_MAX_DRAWDOWN", "20"),
        "max_consecutive_losses": env("ATHENA_MAX_CONSEC_LOSSES", "5"),
        "cooldown_period": env("ATHENA_COOLDOWN_MS", "300000"),
        "position_sizing": env("ATHENA_SIZING", "kelly"),
        "progression": env("ATHENA_PROGRESSION", "none"),
        "multiplier": env("ATHENA_MULTIPLIER", "2.1"),
        "fixed_fraction": env("ATHENA_FIXED_FRACTION", "0.02"),
        "candle_timeframe": env("ATHENA_TIMEFRAME", "60"),
        "min_confidence": env("ATHENA_MIN_CONF", "0.70"),
        "scorer": env("ATHENA_SCORER", "winrate"),
        "use_multi_timeframe": _flag("ATHENA_MULTI_TIMEFRAME", "1"),
        "use_dynamic_switching": _flag("ATHENA_DYNAMIC_SWITCHING"),
        "use_candle_patterns": _flag("ATHENA_CANDLE_PATTERNS", "1"),
        "early_exit_enabled": _flag("ATHENA_EARLY_EXIT", "1"),
        "record_ticks": _flag("ATHENA_RECORD_TICKS"),
        "db_path": env("ATHENA_DB", "trade_journal.db"),
        "brain_path": env("ATHENA_BRAIN", "athena_brain.pkl"),
    }
    rules = env("ATHENA_CUSTOM_RULES", "")
    if rules:
        try:
            data["custom_rules"] = json.loads(rules)
        except json.JSONDecodeError as e:
            log.warning("Config: ATHENA_CUSTOM_RULES is not valid JSON (%s), ignored", e)
    return TradeConfig.from_dict(data)

def pretrain(cfg: TradeConfig, dataset: str) -> float:
    """Backtest the configured strategy on a CSV, train the scorer on the simulated trades
    and return the backtest win rate."""
    candles = load_candles_csv(dataset, cfg.symbol)
    report = Backtester(cfg).run(candles)
    if not report.records:
        return report.win_rate
    scorer = load_brain(cfg.scorer, cfg.brain_path)
    try:
        scorer.fit(report.records)
    except Exception as e:
        log.error("Pre-training failed: %s", e)
        return report.win_rate
    save_brain(scorer, cfg.brain_path)
    return report.win_rate

def main():
    load_dotenv()
    cfg = config_from_env()

    backtest_win_rate = 0.0
    dataset = os.environ.get("ATHENA_DATASET", "")
    if dataset:
        try:
            backtest_win_rate = pretrain(cfg, dataset)
        except OSError as e:
            log.error("Failed to load dataset: %s", e)
        if _flag("ATHENA_BACKTEST_ONLY"):
            return

    if not cfg.api_token:
        print("=" * 60)
        print("  ERROR: No API token provided!")
        print()
        print("  Set your Deriv API token:")
        print("    export ATHENA_API_TOKEN='your-token-here'  # Linux/Mac")
        print("    set ATHENA_API_TOKEN=your-token-here       # Windows")
        print()
        print("  Or create a .env file with your configuration.")
        print("=" * 60)
        sys.exit(1)

    journal = TradeJournal(cfg.db_path, retention=cfg.retention)
    bot = TradeController(cfg, journal=journal)
    bot.backtest_win_rate = backtest_win_rate
    try:
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        bot.stop_trading("interrupted")
    finally:
        journal.close()

if __name__ == "__main__":
    main()
