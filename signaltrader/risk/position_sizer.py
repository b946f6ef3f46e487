"""Position sizing — pure math, no I/O.

Converts a confidence score and account limits into a monetary stake.
"""

from typing import Optional

from signaltrader.config import TradingConfig

MIN_STAKE = 1.0

# (minimum confidence, stake); first match wins.
_CONFIDENCE_BRACKETS = (
    (90, 25.0),
    (80, 20.0),
    (70, 15.0),
    (60, 10.0),
)
_FLOOR_STAKE = 5.0


def stake_for_confidence(confidence: float) -> float:
    """Table lookup used when no explicit base amount is given.

    ``≥90 → 25``, ``≥80 → 20``, ``≥70 → 15``, ``≥60 → 10``, else ``5``.
    """
    for threshold, stake in _CONFIDENCE_BRACKETS:
        if confidence >= threshold:
            return stake
    return _FLOOR_STAKE


def size_position(
    confidence: float,
    balance: float,
    trading: TradingConfig,
    base_amount: Optional[float] = None,
    broker_max: Optional[float] = None,
) -> float:
    """Calculate the stake for one trade.

    Steps::

        stake = base × clamp(confidence / 100, 0.5, 1.5)
        stake = min(stake,
                    max_risk_per_trade_pct % × balance,
                    account_risk_limit_pct % × balance,
                    max_trade_amount,
                    broker_max)
        stake = max(1, round(stake, 2))

    Args:
        confidence: Blended confidence (0–100).
        balance: Current account balance.
        trading: Risk limits.
        base_amount: Caller-supplied base; table lookup when ``None``.
        broker_max: Broker-declared maximum stake, if any.

    Returns:
        The stake, or ``0.0`` when *balance* is not positive.  The caller
        treats a zero stake as a rejection, never as an order.
    """
    if balance <= 0:
        return 0.0

    if base_amount is None:
        base_amount = stake_for_confidence(confidence)

    multiplier = max(0.5, min(1.5, confidence / 100.0))
    stake = base_amount * multiplier

    caps = [
        trading.max_risk_per_trade_pct / 100.0 * balance,
        trading.account_risk_limit_pct / 100.0 * balance,
        trading.max_trade_amount,
    ]
    if broker_max is not None:
        caps.append(broker_max)
    stake = min([stake, *caps])

    return max(MIN_STAKE, round(stake, 2))
