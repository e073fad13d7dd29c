"""
Trailing stop state and update rules.

All trailing quantities (profit reaches, lock at, step, trail by) are money
amounts of leg P&L, the same units as the portfolio exit amounts. Profit is
measured as price excursion times quantity; a locked or trailed amount becomes
a stop offset of amount / quantity from the entry price. A stop only ever
moves in the leg's favour: up for long legs, down for short legs.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from strategy_backtester.strategy.strategy_types import (
    LockAndTrail,
    NoTrailing,
    ProfitTrailing,
    TrailProfit,
)

logger = logging.getLogger(__name__)

_STEP_EPSILON = 1e-9


class SimulationError(Exception):
    """Internal invariant violated during simulation. Fatal for the run."""
    pass


@dataclass
class TrailingState:
    """Mutable trailing state of one open leg"""
    entry_price: float
    direction: int  # +1 long, -1 short
    quantity: int = 1
    current_stop: Optional[float] = None
    locked_floor: Optional[float] = None
    peak_favorable_excursion: float = 0.0

    def improves(self, candidate: float, reference: Optional[float]) -> bool:
        """True if candidate is a strictly better stop than reference"""
        return reference is None or self.direction * (candidate - reference) > 0

    def move_stop(self, new_stop: float):
        """Set the stop, refusing any move against the leg"""
        if self.current_stop is not None and self.direction * (new_stop - self.current_stop) < 0:
            raise SimulationError(
                f"Stop may not loosen: {self.current_stop:.4f} -> {new_stop:.4f} "
                f"({'long' if self.direction > 0 else 'short'} leg)"
            )
        self.current_stop = new_stop

    def ratchet(self, candidate: float):
        if self.improves(candidate, self.current_stop):
            self.move_stop(candidate)

    def observe(self, price: float) -> float:
        """Record a price and return the unrealized profit it represents"""
        excursion = self.direction * (price - self.entry_price) * self.quantity
        if excursion > self.peak_favorable_excursion:
            self.peak_favorable_excursion = excursion
        return excursion

    def breached(self, price: float) -> bool:
        return self.current_stop is not None and self.direction * (price - self.current_stop) <= 0

    def price_at_profit(self, amount: float) -> float:
        """Price at which the leg shows the given P&L"""
        return self.entry_price + self.direction * amount / self.quantity


def _whole_steps(amount: float, step: float) -> int:
    if step <= 0 or amount <= 0:
        return 0
    return int(math.floor(amount / step + _STEP_EPSILON))


def update_trailing_stop(state: TrailingState, trailing: ProfitTrailing, price: float) -> Optional[float]:
    """
    Advance a leg's trailing stop for one bar.

    Args:
        state: Trailing state of the leg (mutated)
        trailing: Normalized trailing rule
        price: Reference price for this bar (profit is measured against it)

    Returns:
        The stop after the update (None when the leg has no stop)

    Raises:
        SimulationError: Unknown trailing rule or a stop moving against the leg
    """
    state.observe(price)
    peak = state.peak_favorable_excursion

    if isinstance(trailing, NoTrailing):
        return state.current_stop

    if isinstance(trailing, TrailProfit):
        steps = _whole_steps(peak, trailing.on_every_increase_of)
        if steps >= 1:
            state.ratchet(state.price_at_profit(steps * trailing.trail_by))
        return state.current_stop

    if isinstance(trailing, LockAndTrail):
        if state.locked_floor is None and peak + _STEP_EPSILON >= trailing.profit_reaches:
            state.locked_floor = state.price_at_profit(trailing.lock_profit_at)
            logger.debug(f"Profit lock engaged at {state.locked_floor:.2f} (peak profit {peak:.2f})")
            state.ratchet(state.locked_floor)

        if state.locked_floor is not None:
            steps = _whole_steps(peak - trailing.profit_reaches, trailing.on_every_increase_of)
            if steps >= 1:
                state.ratchet(state.price_at_profit(trailing.lock_profit_at + steps * trailing.trail_by))
        return state.current_stop

    raise SimulationError(f"Unknown trailing rule: {trailing!r}")
