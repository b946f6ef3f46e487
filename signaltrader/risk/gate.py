"""Risk gate — a linear checklist that approves and sizes a candidate order.

Pure decision: reads account and martingale state, never mutates them.
The first failing check short-circuits with its own reason.
"""

from dataclasses import dataclass
from typing import Optional

from signaltrader.broker.models import TradeOrder
from signaltrader.config import TradingConfig
from signaltrader.risk.account import AccountRiskState
from signaltrader.risk.martingale import MartingaleSequencer
from signaltrader.risk.position_sizer import size_position
from signaltrader.signals.models import ACTIONS

REASON_INVALID = "invalid parameters"
REASON_BALANCE = "insufficient balance"
REASON_CONFIDENCE = "confidence below threshold"
REASON_DAILY_LOSS = "daily loss limit reached"
REASON_CONCURRENCY = "max concurrent trades"
REASON_DAILY_TRADES = "daily trade limit reached"
REASON_SIZED_LIMITS = "sized amount exceeds limits"


@dataclass(frozen=True)
class RiskDecision:
    """Outcome of ``RiskGate.assess``."""

    approved: bool
    reason: Optional[str] = None
    final_amount: Optional[float] = None
    martingale_step: int = 0

    @classmethod
    def reject(cls, reason: str) -> "RiskDecision":
        return cls(approved=False, reason=reason)


class RiskGate:
    """Composes sizing, martingale and account checks.

    Args:
        sequencer: Martingale sequencer consulted for active recovery
                   sequences.
    """

    def __init__(self, sequencer: MartingaleSequencer) -> None:
        self._sequencer = sequencer

    def assess(
        self,
        order: TradeOrder,
        account: AccountRiskState,
        trading: TradingConfig,
        martingale_enabled: bool = False,
    ) -> RiskDecision:
        """Run the checklist for *order*.

        Args:
            order: Candidate order; ``amount`` is the base stake.
            account: Current account risk state.
            trading: Risk limits.
            martingale_enabled: Whether this order's channel may continue a
                                recovery sequence.
        """
        limits = trading.limits_for(order.broker)

        # 1 ── Parameter validity
        if (
            order.action not in ACTIONS
            or not order.asset
            or order.amount <= 0
            or order.expiration_seconds is None
            or not limits.min_expiration <= order.expiration_seconds <= limits.max_expiration
        ):
            return RiskDecision.reject(REASON_INVALID)

        # 2 ── Balance
        if account.balance <= 0:
            return RiskDecision.reject(REASON_BALANCE)

        # 3 ── Confidence
        if order.confidence < trading.confidence_threshold:
            return RiskDecision.reject(REASON_CONFIDENCE)

        # 4 ── Daily loss limit
        if account.daily_loss_limit_reached(trading.max_daily_loss_pct):
            return RiskDecision.reject(REASON_DAILY_LOSS)

        # 5 ── Concurrency and daily trade count
        if len(account.open_trade_ids) >= trading.max_concurrent_trades:
            return RiskDecision.reject(REASON_CONCURRENCY)
        if account.daily_trades >= trading.max_daily_trades:
            return RiskDecision.reject(REASON_DAILY_TRADES)

        # 6 ── Sizing
        step = 0
        amount = None
        if martingale_enabled and trading.martingale.enabled:
            amount = self._sequencer.stake_for(order.sequence_key, account.balance)
            step = self._sequencer.step_for(order.sequence_key)
        if amount is None:
            amount = size_position(
                confidence=order.confidence,
                balance=account.balance,
                trading=trading,
                base_amount=order.amount,
                broker_max=limits.max_amount,
            )
        if amount <= 0:
            return RiskDecision.reject(REASON_BALANCE)

        # 7 ── Post-sizing limits
        if (
            amount > account.balance
            or amount > trading.max_trade_amount
            or not limits.min_amount <= amount <= limits.max_amount
        ):
            return RiskDecision.reject(REASON_SIZED_LIMITS)

        # 8 ── Approve
        return RiskDecision(approved=True, final_amount=amount, martingale_step=step)
