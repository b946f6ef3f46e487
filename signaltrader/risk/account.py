"""Account risk state — balance, daily P/L, open trades and trade history.

Daily P/L and trade count reset on UTC-day rollover.  The high-water mark,
the open-trade set and the closed-trade history survive the rollover.
Performance metrics are computed over the bounded closed-trade history.
"""

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Optional

logger = logging.getLogger("signaltrader")

_HIGH_RISK_PCT = 10.0
_MEDIUM_RISK_PCT = 5.0


@dataclass(frozen=True)
class OpenTrade:
    trade_id: str
    amount: float
    channel_id: str = ""
    asset: str = ""
    opened_at: float = 0.0


@dataclass(frozen=True)
class ClosedTrade:
    """A settled trade kept in the history window."""

    trade_id: str
    amount: float
    profit: float
    channel_id: str = ""
    asset: str = ""
    opened_at: float = 0.0
    closed_at: float = 0.0

    @property
    def result(self) -> str:
        if self.profit > 0:
            return "win"
        if self.profit < 0:
            return "loss"
        return "breakeven"


@dataclass(frozen=True)
class PerformanceMetrics:
    """Win/loss statistics over the closed-trade history window."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown_pct: float = 0.0


def max_drawdown_pct(start_balance: float, profits: list[float]) -> float:
    """Largest peak-to-trough fall of the equity curve, as a percentage.

    The curve starts at *start_balance* and applies *profits* in order.
    Fewer than two trades yield 0.
    """
    if len(profits) < 2:
        return 0.0
    peak = start_balance
    equity = start_balance
    worst = 0.0
    for profit in profits:
        equity += profit
        if equity > peak:
            peak = equity
        if peak > 0:
            worst = max(worst, (peak - equity) / peak * 100.0)
    return round(worst, 2)


def account_risk_level(risk_pct: float) -> str:
    """``high`` above 10 % of balance at risk, ``medium`` above 5 %, else ``low``."""
    if risk_pct > _HIGH_RISK_PCT:
        return "high"
    if risk_pct > _MEDIUM_RISK_PCT:
        return "medium"
    return "low"


class AccountRiskState:
    """Tracks the figures the risk gate checks against.

    Args:
        balance: Starting account balance.
        today: UTC date the tracker starts on.  Defaults to today.
        history_limit: Closed trades kept for performance metrics.
        clock: Wall-clock source for trade timestamps.
    """

    def __init__(
        self,
        balance: float = 0.0,
        today: Optional[date] = None,
        history_limit: int = 100,
        clock=time.time,
    ) -> None:
        self._balance: float = balance
        self._high_water_mark: float = max(balance, 0.0)
        self._daily_pnl: float = 0.0
        self._daily_trades: int = 0
        self._open_trades: dict[str, OpenTrade] = {}
        self._history: deque[ClosedTrade] = deque(maxlen=max(1, history_limit))
        self._day: date = today or datetime.now(timezone.utc).date()
        self._clock = clock

    # ── Mutation ─────────────────────────────────────────────────────────

    def roll_over(self, utc_now: Optional[datetime] = None) -> bool:
        """Reset daily figures if the UTC day changed.  Returns ``True`` on reset."""
        today = (utc_now or datetime.now(timezone.utc)).date()
        if today == self._day:
            return False
        logger.info("New UTC day — resetting daily P/L (was %.2f over %d trades)",
                    self._daily_pnl, self._daily_trades)
        self._daily_pnl = 0.0
        self._daily_trades = 0
        self._day = today
        return True

    def update_balance(self, balance: float) -> None:
        """Set the balance reported by the broker; raises the high-water mark."""
        self._balance = balance
        if balance > self._high_water_mark:
            self._high_water_mark = balance

    def open_trade(
        self,
        trade_id: str,
        amount: float,
        channel_id: str = "",
        asset: str = "",
    ) -> None:
        self._open_trades[trade_id] = OpenTrade(
            trade_id=trade_id,
            amount=amount,
            channel_id=channel_id,
            asset=asset,
            opened_at=self._clock(),
        )
        self._daily_trades += 1

    def close_trade(self, trade_id: str, profit: float) -> bool:
        """Release an open trade, apply its profit and move it to history.

        Returns ``False`` (and applies nothing) for unknown trade ids.
        """
        trade = self._open_trades.pop(trade_id, None)
        if trade is None:
            logger.warning("Close for unknown trade %s ignored", trade_id)
            return False
        self._daily_pnl = round(self._daily_pnl + profit, 2)
        self.update_balance(round(self._balance + profit, 2))
        self._history.append(
            ClosedTrade(
                trade_id=trade.trade_id,
                amount=trade.amount,
                profit=profit,
                channel_id=trade.channel_id,
                asset=trade.asset,
                opened_at=trade.opened_at,
                closed_at=self._clock(),
            )
        )
        return True

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def high_water_mark(self) -> float:
        """Highest balance observed."""
        return self._high_water_mark

    @property
    def daily_pnl(self) -> float:
        return self._daily_pnl

    @property
    def daily_trades(self) -> int:
        return self._daily_trades

    @property
    def open_trade_ids(self) -> set[str]:
        return set(self._open_trades)

    @property
    def open_exposure(self) -> float:
        """Sum of stakes currently at risk."""
        return round(sum(t.amount for t in self._open_trades.values()), 2)

    @property
    def account_risk_pct(self) -> float:
        """Open exposure as a percentage of the balance."""
        if self._balance <= 0:
            return 100.0 if self._open_trades else 0.0
        return round(self.open_exposure / self._balance * 100.0, 2)

    def daily_loss_limit_reached(self, max_daily_loss_pct: float) -> bool:
        """``True`` when daily P/L is below −max_daily_loss_pct % of the high-water mark."""
        return self._daily_pnl < -(max_daily_loss_pct / 100.0) * self._high_water_mark

    def open_trades(self) -> list[OpenTrade]:
        """Open trades, oldest first."""
        return sorted(self._open_trades.values(), key=lambda t: t.opened_at)

    def trade_history(
        self,
        limit: Optional[int] = None,
        channel_id: Optional[str] = None,
    ) -> list[ClosedTrade]:
        """Closed trades, newest first, optionally for one channel."""
        trades = [
            t for t in reversed(self._history)
            if channel_id is None or t.channel_id == channel_id
        ]
        return trades if limit is None else trades[:limit]

    def performance(self) -> PerformanceMetrics:
        """Win/loss figures, profit factor and max drawdown over the history window."""
        profits = [t.profit for t in self._history]
        if not profits:
            return PerformanceMetrics()

        wins = [p for p in profits if p > 0]
        losses = [p for p in profits if p < 0]
        total_won = sum(wins)
        total_lost = abs(sum(losses))
        start_balance = self._balance - sum(profits)
        return PerformanceMetrics(
            total_trades=len(profits),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=round(len(wins) / len(profits) * 100.0, 2),
            average_win=round(total_won / len(wins), 2) if wins else 0.0,
            average_loss=round(total_lost / len(losses), 2) if losses else 0.0,
            profit_factor=round(total_won / total_lost, 2) if total_lost > 0 else 0.0,
            max_drawdown_pct=max_drawdown_pct(start_balance, profits),
        )

    def snapshot(self, utc_now: Optional[datetime] = None) -> dict:
        """Current risk status.  Rolls the day over first so daily figures are current."""
        self.roll_over(utc_now)
        risk_pct = self.account_risk_pct
        return {
            "balance": self._balance,
            "high_water_mark": self._high_water_mark,
            "daily_pnl": self._daily_pnl,
            "daily_trades": self._daily_trades,
            "open_trades": sorted(self._open_trades),
            "open_exposure": self.open_exposure,
            "account_risk_pct": risk_pct,
            "risk_level": account_risk_level(risk_pct),
            "performance": asdict(self.performance()),
            "day": self._day.isoformat(),
        }
