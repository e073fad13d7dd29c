"""
Risk & Trailing-Stop Engine

Owns the per-leg state machine for one run:

    PENDING_ENTRY -> OPEN -> CLOSED_SL | CLOSED_TP | CLOSED_TRAIL
                           | CLOSED_PORTFOLIO | CLOSED_TIME | CLOSED_CYCLE_LIMIT

Each bar, every open leg is marked to the bar, its trailing stop is advanced
and the close rules are checked in a fixed order (stop-loss, trailing stop,
take-profit, portfolio, time); the first rule that fires closes the leg. In
intrabar mode the bar's high/low are tested against the stops in force before
the bar, and its close ratchets the trailing stop afterwards.

Option legs hold a contract resolved at entry and are marked to its price,
derived from the underlying's bar. The engine only emits OrderIntents; it
never talks to a broker.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Sequence, Tuple

from strategy_backtester.instruments.option_pricing import OptionContract, OptionContractError, OptionLegSpec
from strategy_backtester.risk.trailing_stop import SimulationError, TrailingState, update_trailing_stop
from strategy_backtester.strategy.strategy_types import (
    RiskManagement,
    Side,
    Threshold,
    ThresholdType,
)

logger = logging.getLogger(__name__)


class LegState(str, Enum):
    PENDING_ENTRY = "PENDING_ENTRY"
    OPEN = "OPEN"
    CLOSED_SL = "CLOSED_SL"
    CLOSED_TP = "CLOSED_TP"
    CLOSED_TRAIL = "CLOSED_TRAIL"
    CLOSED_PORTFOLIO = "CLOSED_PORTFOLIO"
    CLOSED_TIME = "CLOSED_TIME"
    CLOSED_CYCLE_LIMIT = "CLOSED_CYCLE_LIMIT"


class ExitReason(str, Enum):
    SL = "SL"
    TP = "TP"
    TRAIL = "TRAIL"
    TIME = "TIME"
    PORTFOLIO = "PORTFOLIO"
    CYCLE_LIMIT = "CYCLE_LIMIT"


CLOSED_STATE_BY_REASON = {
    ExitReason.SL: LegState.CLOSED_SL,
    ExitReason.TP: LegState.CLOSED_TP,
    ExitReason.TRAIL: LegState.CLOSED_TRAIL,
    ExitReason.TIME: LegState.CLOSED_TIME,
    ExitReason.PORTFOLIO: LegState.CLOSED_PORTFOLIO,
    ExitReason.CYCLE_LIMIT: LegState.CLOSED_CYCLE_LIMIT,
}

PER_LEG_REASONS = (ExitReason.SL, ExitReason.TRAIL, ExitReason.TP)


class IntentType(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


@dataclass(frozen=True)
class OrderIntent:
    """Order the strategy wants placed.

    The backtest turns exit intents into trades; live mode hands every intent to a
    broker. For option legs instrument_id is the underlying and symbol the contract.
    """
    intent_type: IntentType
    leg_id: str
    cycle: int
    instrument_id: str
    action: Side
    quantity: int
    price: float
    timestamp: datetime
    reason: Optional[ExitReason] = None
    symbol: Optional[str] = None


@dataclass(frozen=True)
class BarQuote:
    open: float
    high: float
    low: float
    close: float


@dataclass(frozen=True)
class LegTemplate:
    """What a leg looks like when its cycle group enters"""
    leg_id: str
    group_id: str
    instrument_id: str
    side: Side
    quantity: int
    stop_loss: Threshold = Threshold()
    take_profit: Threshold = Threshold()
    option: Optional[OptionLegSpec] = None


def threshold_distance(threshold: Threshold, entry_price: float, quantity: int) -> float:
    """Price distance of a stop/target from entry"""
    if threshold.type == ThresholdType.POINTS:
        return threshold.value
    if threshold.type == ThresholdType.PERCENTAGE:
        return entry_price * threshold.value / 100.0
    if threshold.type == ThresholdType.AMOUNT:
        return threshold.value / quantity
    raise SimulationError(f"Unknown threshold type: {threshold.type}")


@dataclass
class LegRuntime:
    """One leg instance within one trade cycle"""
    template: LegTemplate
    cycle: int
    state: LegState = LegState.PENDING_ENTRY
    entry_price: Optional[float] = None
    entry_timestamp: Optional[datetime] = None
    static_stop: Optional[float] = None
    target: Optional[float] = None
    trailing: Optional[TrailingState] = None
    contract: Optional[OptionContract] = None
    exit_price: Optional[float] = None
    exit_timestamp: Optional[datetime] = None
    exit_reason: Optional[ExitReason] = None

    @property
    def direction(self) -> int:
        return self.template.side.direction

    @property
    def is_open(self) -> bool:
        return self.state == LegState.OPEN

    @property
    def contract_symbol(self) -> Optional[str]:
        return self.contract.symbol if self.contract is not None else None

    def open(self, price: float, timestamp: datetime):
        if self.state != LegState.PENDING_ENTRY:
            raise SimulationError(f"Leg {self.template.leg_id} cannot enter from state {self.state.value}")

        template = self.template
        self.entry_price = price
        self.entry_timestamp = timestamp
        if template.stop_loss.enabled:
            self.static_stop = price - self.direction * threshold_distance(template.stop_loss, price, template.quantity)
        if template.take_profit.enabled:
            self.target = price + self.direction * threshold_distance(template.take_profit, price, template.quantity)
        self.trailing = TrailingState(
            entry_price=price,
            direction=self.direction,
            quantity=template.quantity,
            current_stop=self.static_stop,
        )
        self.state = LegState.OPEN

    def close(self, reason: ExitReason, price: float, timestamp: datetime):
        if self.state != LegState.OPEN:
            raise SimulationError(
                f"Leg {self.template.leg_id} (cycle {self.cycle}) cannot close from state {self.state.value}"
            )
        self.exit_price = price
        self.exit_timestamp = timestamp
        self.exit_reason = reason
        self.state = CLOSED_STATE_BY_REASON[reason]

    def unrealized_pnl(self, price: float) -> float:
        return self.direction * (price - self.entry_price) * self.template.quantity

    @property
    def realized_pnl(self) -> float:
        if self.exit_price is None:
            raise SimulationError(f"Leg {self.template.leg_id} has not closed")
        return self.direction * (self.exit_price - self.entry_price) * self.template.quantity


class RiskEngine:
    """
    Per-run leg arena and close-rule evaluation.

    Legs live in a list indexed by slot for the lifetime of the run; nothing
    outside the run holds references to their trailing state.
    """

    def __init__(self, risk: RiskManagement, price_reference: Literal['close', 'intrabar'] = 'close'):
        self.risk = risk
        self.price_reference = price_reference
        self.legs: List[LegRuntime] = []
        self._session: Optional[date] = None
        self._cycles_used: Dict[str, int] = defaultdict(int)
        self._halted = False

    # ------------------------------------------------------------------
    # Trade-cycle accounting
    # ------------------------------------------------------------------

    def start_session(self, session: date):
        """Reset the per-day cycle budget"""
        if session != self._session:
            self._session = session
            self._cycles_used = defaultdict(int)
            self._halted = False

    def cycles_used(self, group_id: str) -> int:
        return self._cycles_used[group_id]

    def reentry_permitted(self, group_id: str) -> bool:
        return not self._halted and self._cycles_used[group_id] < self.risk.max_trade_cycle

    def group_is_flat(self, group_id: str) -> bool:
        return not any(leg.is_open and leg.template.group_id == group_id for leg in self.legs)

    def can_enter(self, group_id: str) -> bool:
        return self.reentry_permitted(group_id) and self.group_is_flat(group_id)

    def open_legs(self) -> List[LegRuntime]:
        return [leg for leg in self.legs if leg.is_open]

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    def enter_group(
        self,
        templates: Sequence[LegTemplate],
        quotes: Dict[str, BarQuote],
        timestamp: datetime
    ) -> List[OrderIntent]:
        """
        Open a new trade cycle for a group of legs at the bar close.

        Returns:
            Entry intents, one per leg
        """
        group_id = templates[0].group_id
        if not self.can_enter(group_id):
            raise SimulationError(f"Group {group_id} cannot enter: cycle budget exhausted or legs still open")

        self._cycles_used[group_id] += 1
        cycle = self._cycles_used[group_id]

        intents = []
        for template in templates:
            quote = quotes.get(template.instrument_id)
            if quote is None:
                raise SimulationError(f"No price for {template.instrument_id} at entry of {template.leg_id}")
            leg = LegRuntime(template=template, cycle=cycle)
            if template.option is not None:
                try:
                    leg.contract = template.option.contract_at(quote.close, timestamp)
                except OptionContractError as e:
                    raise SimulationError(f"Cannot price option leg {template.leg_id}: {e}") from e
            price = self._quote_for(leg, quotes, timestamp).close
            self.legs.append(leg)
            leg.open(price, timestamp)
            intents.append(OrderIntent(
                intent_type=IntentType.ENTRY,
                leg_id=template.leg_id,
                cycle=cycle,
                instrument_id=template.instrument_id,
                action=template.side,
                quantity=template.quantity,
                price=price,
                timestamp=timestamp,
                symbol=leg.contract_symbol,
            ))

        logger.debug(f"{timestamp} group {group_id} entered cycle {cycle} with {len(templates)} leg(s)")
        return intents

    # ------------------------------------------------------------------
    # Per-bar update
    # ------------------------------------------------------------------

    def update_bar(
        self,
        quotes: Dict[str, BarQuote],
        timestamp: datetime,
        time_exit: bool = False
    ) -> List[OrderIntent]:
        """
        Mark every open leg to this bar and apply the close rules.

        Args:
            quotes: instrument_id -> quote for this bar
            timestamp: Bar timestamp
            time_exit: True once the cut-off time is reached or the session ends

        Returns:
            Exit intents for every leg closed on this bar
        """
        open_at_start = self.open_legs()
        exits: List[OrderIntent] = []
        rolled_groups = set()

        for leg in open_at_start:
            quote = self._quote_for(leg, quotes, timestamp)
            if self.price_reference == 'intrabar':
                # The high/low can only hit stops set before this bar; its close ratchets for the next one
                hit = self._check_leg(leg, quote, entered_this_bar=leg.entry_timestamp == timestamp)
                if hit is None:
                    update_trailing_stop(leg.trailing, self.risk.profit_trailing, quote.close)
            else:
                update_trailing_stop(leg.trailing, self.risk.profit_trailing, quote.close)
                hit = self._check_leg(leg, quote)
            if hit is not None:
                reason, price = hit
                exits.append(self._close(leg, reason, price, timestamp))
                rolled_groups.add(leg.template.group_id)

        # A per-leg exit ends the cycle for its siblings when the group may re-enter
        for group_id in sorted(rolled_groups):
            if self.reentry_permitted(group_id):
                for leg in self.open_legs():
                    if leg.template.group_id == group_id:
                        price = self._quote_for(leg, quotes, timestamp).close
                        exits.append(self._close(leg, ExitReason.CYCLE_LIMIT, price, timestamp))

        if open_at_start and self._portfolio_exit_reached(open_at_start, quotes, timestamp):
            for leg in self.open_legs():
                exits.append(self._close(leg, ExitReason.PORTFOLIO, self._quote_for(leg, quotes, timestamp).close, timestamp))
            self._halted = True

        if time_exit:
            for leg in self.open_legs():
                exits.append(self._close(leg, ExitReason.TIME, self._quote_for(leg, quotes, timestamp).close, timestamp))

        return exits

    def _quote_for(self, leg: LegRuntime, quotes: Dict[str, BarQuote], timestamp: datetime) -> BarQuote:
        """The leg's own quote: the underlying's bar, or its option contract priced from it"""
        quote = quotes.get(leg.template.instrument_id)
        if quote is None:
            raise SimulationError(f"No price for leg {leg.template.leg_id} ({leg.template.instrument_id})")
        if leg.contract is None:
            return quote

        prices = [leg.contract.price(p, timestamp) for p in (quote.open, quote.high, quote.low, quote.close)]
        return BarQuote(open=prices[0], high=max(prices), low=min(prices), close=prices[3])

    def _check_leg(
        self,
        leg: LegRuntime,
        quote: BarQuote,
        entered_this_bar: bool = False
    ) -> Optional[Tuple[ExitReason, float]]:
        """First matching per-leg rule: hard stop, trailing stop, take-profit"""
        direction = leg.direction
        # A leg entered at this bar's close has not seen its high/low
        intrabar = self.price_reference == 'intrabar' and not entered_this_bar
        if intrabar:
            adverse = quote.low if direction > 0 else quote.high
            favorable = quote.high if direction > 0 else quote.low
        else:
            adverse = favorable = quote.close

        static_stop = leg.static_stop
        if static_stop is not None and direction * (adverse - static_stop) <= 0:
            return ExitReason.SL, self._stop_fill(direction, static_stop, quote, intrabar)

        trail_stop = leg.trailing.current_stop
        if (trail_stop is not None and leg.trailing.improves(trail_stop, static_stop)
                and leg.trailing.breached(adverse)):
            return ExitReason.TRAIL, self._stop_fill(direction, trail_stop, quote, intrabar)

        if leg.target is not None and direction * (favorable - leg.target) >= 0:
            return ExitReason.TP, self._target_fill(direction, leg.target, quote, intrabar)

        return None

    def _stop_fill(self, direction: int, stop: float, quote: BarQuote, intrabar: bool) -> float:
        if not intrabar:
            return quote.close
        # Gapped through the stop: filled at the open
        if direction * (quote.open - stop) <= 0:
            return quote.open
        return stop

    def _target_fill(self, direction: int, target: float, quote: BarQuote, intrabar: bool) -> float:
        if not intrabar:
            return quote.close
        if direction * (quote.open - target) >= 0:
            return quote.open
        return target

    def _portfolio_exit_reached(self, legs: List[LegRuntime], quotes: Dict[str, BarQuote], timestamp: datetime) -> bool:
        profit_amount = self.risk.exit_profit_amount
        loss_amount = self.risk.exit_loss_amount
        if not profit_amount and not loss_amount:
            return False

        total = sum(
            leg.unrealized_pnl(self._quote_for(leg, quotes, timestamp).close) if leg.is_open else leg.realized_pnl
            for leg in legs
        )
        if profit_amount and total >= profit_amount:
            logger.debug(f"Portfolio profit {total:.2f} reached exit_profit_amount {profit_amount}")
            return True
        if loss_amount and total <= -loss_amount:
            logger.debug(f"Portfolio loss {total:.2f} reached exit_loss_amount {loss_amount}")
            return True
        return False

    def _close(self, leg: LegRuntime, reason: ExitReason, price: float, timestamp: datetime) -> OrderIntent:
        leg.close(reason, price, timestamp)
        logger.debug(f"{timestamp} {leg.template.leg_id} cycle {leg.cycle} closed {reason.value} @ {price:.2f}")
        return OrderIntent(
            intent_type=IntentType.EXIT,
            leg_id=leg.template.leg_id,
            cycle=leg.cycle,
            instrument_id=leg.template.instrument_id,
            action=leg.template.side.opposite,
            quantity=leg.template.quantity,
            price=price,
            timestamp=timestamp,
            reason=reason,
            symbol=leg.contract_symbol,
        )

    def find_leg(self, leg_id: str, cycle: int) -> LegRuntime:
        for leg in self.legs:
            if leg.template.leg_id == leg_id and leg.cycle == cycle:
                return leg
        raise SimulationError(f"Unknown leg {leg_id} cycle {cycle}")
