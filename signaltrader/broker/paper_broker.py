"""Paper broker — simulated binary-option settlement for development."""

import asyncio
import logging
import random
import time
from typing import Optional

from signaltrader.broker.models import TradeOrder, TradeOutcome

logger = logging.getLogger("signaltrader")


class PaperBroker:
    """Settles orders with a fixed payout and a seeded coin flip.

    Args:
        balance: Starting paper balance.
        payout: Profit ratio on a win (0.85 → +85 % of the stake).
        win_probability: Chance that a trade wins.
        time_scale: Fraction of the real expiration to wait before
                    settling (0 settles immediately).
        seed: Seed for the outcome generator.
    """

    def __init__(
        self,
        balance: float = 1000.0,
        payout: float = 0.85,
        win_probability: float = 0.5,
        time_scale: float = 0.0,
        seed: Optional[int] = None,
    ) -> None:
        self._balance = balance
        self._payout = payout
        self._win_probability = win_probability
        self._time_scale = time_scale
        self._rng = random.Random(seed)
        self.placed_orders: list[TradeOrder] = []

    async def get_balance(self) -> float:
        return self._balance

    async def place_order(self, order: TradeOrder) -> TradeOutcome:
        """Open and settle *order*, returning the realized outcome."""
        if order.amount > self._balance:
            raise ValueError(
                f"Insufficient paper balance {self._balance:.2f} for stake {order.amount:.2f}"
            )

        self.placed_orders.append(order)
        started = time.monotonic()
        logger.info("PAPER %s %s %.2f for %ds (order %s)",
                    order.action, order.asset, order.amount,
                    order.expiration_seconds, order.order_id)

        if self._time_scale > 0:
            await asyncio.sleep(order.expiration_seconds * self._time_scale)

        won = self._rng.random() < self._win_probability
        profit = round(order.amount * self._payout, 2) if won else -order.amount
        self._balance = round(self._balance + profit, 2)

        return TradeOutcome(
            success=True,
            trade_id=order.order_id,
            profit=profit,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
