"""
Normalized strategy types.

Produced only by StrategyValidator. Every label is already mapped to a closed
variant, so downstream code dispatches on types and never re-parses strings.
"""

from dataclasses import dataclass
from datetime import time
from enum import Enum
from typing import Optional, Tuple, Union


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def direction(self) -> int:
        """+1 for long, -1 for short"""
        return 1 if self is Side.BUY else -1

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class ThresholdType(str, Enum):
    POINTS = "POINTS"
    PERCENTAGE = "PERCENTAGE"
    AMOUNT = "AMOUNT"


@dataclass(frozen=True)
class Threshold:
    """Stop-loss or take-profit distance from entry. A zero value disables it."""
    type: ThresholdType = ThresholdType.POINTS
    value: float = 0.0

    @property
    def enabled(self) -> bool:
        return self.value > 0


DISABLED = Threshold()


@dataclass(frozen=True)
class NoTrailing:
    pass


@dataclass(frozen=True)
class TrailProfit:
    on_every_increase_of: float
    trail_by: float


@dataclass(frozen=True)
class LockAndTrail:
    """Lock lock_profit_at once profit_reaches is seen; trail from the floor after that.

    on_every_increase_of == 0 means the stop stays at the locked floor.
    """
    profit_reaches: float
    lock_profit_at: float
    on_every_increase_of: float = 0.0
    trail_by: float = 0.0


ProfitTrailing = Union[NoTrailing, TrailProfit, LockAndTrail]

# CE/PE legs hold an option on the underlying; FUT/EQ legs trade its bars directly
OPTION_LEG_TYPES = ('CE', 'PE')
UNDERLYING_LEG_TYPES = ('FUT', 'EQ')


@dataclass(frozen=True)
class RiskManagement:
    exit_profit_amount: Optional[float] = None
    exit_loss_amount: Optional[float] = None
    no_trade_after_time: Optional[time] = None
    max_trade_cycle: int = 1
    profit_trailing: ProfitTrailing = NoTrailing()


@dataclass(frozen=True)
class OrderLeg:
    leg_id: str
    instrument_id: str
    action: Side
    quantity: int
    instrument_type: str = "CE"
    expiry: str = "Weekly"
    strike_reference: str = "ATM"
    strike_selection: str = "ATM"
    stop_loss: Threshold = DISABLED
    take_profit: Threshold = DISABLED

    @property
    def is_option(self) -> bool:
        return self.instrument_type in OPTION_LEG_TYPES


@dataclass(frozen=True)
class EntryCondition:
    indicator1: str
    comparator: str
    indicator2: str = "Number"
    period: Optional[int] = None
    value: Optional[float] = None


@dataclass(frozen=True)
class StrategyInstrument:
    instrument_id: str
    quantity: int


@dataclass(frozen=True)
class TimeBasedStrategy:
    name: str
    instrument_id: str
    start_time: time
    square_off_time: time
    trading_days: Tuple[bool, ...]
    legs: Tuple[OrderLeg, ...]
    interval: str = "1m"
    risk: RiskManagement = RiskManagement()

    @property
    def instrument_ids(self) -> Tuple[str, ...]:
        seen = dict.fromkeys([self.instrument_id] + [leg.instrument_id for leg in self.legs])
        return tuple(seen)


@dataclass(frozen=True)
class IndicatorBasedStrategy:
    name: str
    instruments: Tuple[StrategyInstrument, ...]
    entry_conditions: Tuple[EntryCondition, ...]
    start_time: time
    square_off_time: time
    trading_days: Tuple[bool, ...]
    chart_type: str = "Candle"
    interval: str = "1m"
    side: Side = Side.BUY
    stop_loss: Threshold = DISABLED
    take_profit: Threshold = DISABLED
    risk: RiskManagement = RiskManagement()

    @property
    def instrument_ids(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(i.instrument_id for i in self.instruments))


Strategy = Union[TimeBasedStrategy, IndicatorBasedStrategy]


def entry_cutoff(strategy: Strategy) -> time:
    """Earliest of no-trade-after and square-off: no entries at or after it, open legs close"""
    no_trade_after = strategy.risk.no_trade_after_time
    if no_trade_after is None:
        return strategy.square_off_time
    return min(no_trade_after, strategy.square_off_time)
