from dataclasses import dataclass
from typing import Optional

from athena.constants import TradeResult

@dataclass
class SessionState:
    balance: float = 0.0
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    current_streak: int = 0                 # +n wins / -n losses in a row
    total_pnl: float = 0.0
    current_stake: float = 0.0
    consecutive_losses: int = 0
    is_paused: bool = False
    pause_extensions: int = 0
    last_result: Optional[TradeResult] = None
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    peak_pnl: float = 0.0
    max_drawdown: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.total_trades if self.total_trades else 0.0

    @property
    def avg_win(self) -> float:
        return self.gross_profit / self.wins if self.wins else 0.0

    @property
    def avg_loss(self) -> float:
        return self.gross_loss / self.losses if self.losses else 0.0

    @property
    def drawdown_pct(self) -> float:
        """Session pnl relative to balance, in percent (negative while losing)."""
        return self.total_pnl / self.balance * 100 if self.balance > 0 else 0.0

    def record(self, result: TradeResult, pnl: float):
        self.total_trades += 1
        self.total_pnl += pnl
        self.last_result = result
        if result is TradeResult.WIN:
            self.wins += 1
            self.gross_profit += pnl
            self.consecutive_losses = 0
            self.current_streak = self.current_streak + 1 if self.current_streak > 0 else 1
        else:
            self.losses += 1
            self.gross_loss += abs(pnl)
            self.consecutive_losses += 1
            self.current_streak = self.current_streak - 1 if self.current_streak < 0 else -1

        # Drawdown
        if self.total_pnl > self.peak_pnl:
            self.peak_pnl = self.total_pnl
        dd = self.peak_pnl - self.total_pnl
        if dd > self.max_drawdown:
            self.max_drawdown = dd

    def reset(self):
        """Clear session statistics; balance and stake are kept."""
        balance, stake = self.balance, self.current_stake
        self.__init__(balance=balance, current_stake=stake)

    def summary(self) -> str:
        streak = f"W{self.current_streak}" if self.current_streak >= 0 else f"L{-self.current_streak}"
        return (
            f"T:{self.total_trades} W:{self.wins} L:{self.losses} "
            f"WR:{self.win_rate:.1%} "
            f"P&L:${self.total_pnl:+.2f} "
            f"MaxDD:${self.max_drawdown:.2f} "
            f"Streak:{streak}"
        )
