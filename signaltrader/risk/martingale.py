"""Martingale recovery sequencing.

A sequence is keyed by ``(channel_id, asset)``.  A loss escalates the step,
a breakeven repeats the last stake, a win clears the sequence.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from signaltrader.config import MartingaleConfig

logger = logging.getLogger("signaltrader")

MAX_BASE_MULTIPLE = 10.0
MAX_BALANCE_FRACTION = 0.5


def next_stake(base_amount: float, step_index: int, multipliers: Sequence[float]) -> float:
    """Stake for *step_index* in a sequence started at *base_amount*.

    Multiplies cumulatively through the first *step_index* multipliers.
    A step beyond the table returns ``2 × base_amount``.
    """
    if step_index > len(multipliers):
        return round(2 * base_amount, 2)
    stake = base_amount
    for multiplier in multipliers[:step_index]:
        stake *= multiplier
    return round(stake, 2)


def cap_stake(stake: float, base_amount: float, balance: float) -> float:
    """Apply the 10 × base and 50 % of balance ceilings."""
    ceiling = min(MAX_BASE_MULTIPLE * base_amount, MAX_BALANCE_FRACTION * balance)
    return round(min(stake, ceiling), 2)


@dataclass
class MartingaleState:
    """An active recovery sequence."""

    base_amount: float
    step: int = 0
    last_outcome: str = ""  # "loss" or "breakeven"
    repeat_amount: Optional[float] = None


class MartingaleSequencer:
    """Tracks recovery sequences and computes the next stake.

    Args:
        config: Martingale settings (multipliers, max levels).
    """

    def __init__(self, config: MartingaleConfig) -> None:
        self._config = config
        self._sequences: dict[tuple[str, str], MartingaleState] = {}

    def update_config(self, config: MartingaleConfig) -> None:
        self._config = config

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def sequences(self) -> dict[tuple[str, str], MartingaleState]:
        return dict(self._sequences)

    def state(self, key: tuple[str, str]) -> Optional[MartingaleState]:
        return self._sequences.get(key)

    def step_for(self, key: tuple[str, str]) -> int:
        """Current step for *key*; 0 when no sequence is active."""
        state = self._sequences.get(key)
        return state.step if state else 0

    def stake_for(self, key: tuple[str, str], balance: float) -> Optional[float]:
        """Stake for the next trade in an active sequence, or ``None``."""
        state = self._sequences.get(key)
        if state is None:
            return None
        if state.repeat_amount is not None:
            return cap_stake(state.repeat_amount, state.base_amount, balance)
        stake = next_stake(state.base_amount, state.step, self._config.multipliers)
        return cap_stake(stake, state.base_amount, balance)

    # ── Mutation ─────────────────────────────────────────────────────────

    def record_outcome(self, key: tuple[str, str], amount: float, profit: float) -> None:
        """Advance, repeat or clear the sequence for a closed trade.

        Args:
            key: ``(channel_id, asset)``.
            amount: Stake of the trade that just closed.
            profit: Realized profit (negative for a loss).
        """
        if profit > 0:
            if self._sequences.pop(key, None) is not None:
                logger.info("Martingale %s reset after win", key)
            return

        state = self._sequences.get(key)
        if profit < 0:
            if state is None:
                state = MartingaleState(base_amount=amount)
                self._sequences[key] = state
            state.step += 1
            state.last_outcome = "loss"
            state.repeat_amount = None
            if state.step >= self._config.max_levels:
                del self._sequences[key]
                logger.warning(
                    "Martingale %s hit max level %d — sequence cleared",
                    key, self._config.max_levels,
                )
                return
            logger.info("Martingale %s advanced to step %d", key, state.step)
            return

        if state is None:
            state = MartingaleState(base_amount=amount)
            self._sequences[key] = state
        state.last_outcome = "breakeven"
        state.repeat_amount = amount
