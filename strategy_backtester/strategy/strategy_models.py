"""
Strategy document models.

These mirror the strategy document as it arrives from the client (JSON/YAML):
labels are free-form and times are "HH:MM" strings. Nothing here is trusted
by the simulator; StrategyValidator turns a document into the normalized
types in strategy_types.
"""

from typing import Dict, List, Optional, Tuple, Union
from pydantic import AliasChoices, BaseModel, Field

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


def _default_trading_days() -> Dict[str, bool]:
    return {day: day not in ('saturday', 'sunday') for day in WEEKDAYS}


class EntryConditionDocument(BaseModel):
    """indicator1 <comparator> indicator2 (or a fixed value)"""
    indicator1: str
    comparator: str
    indicator2: str = "Number"
    value: Optional[float] = None
    period: Optional[int] = None


class OrderLegDocument(BaseModel):
    """One leg of a time-based strategy"""
    instrument_id: Optional[str] = Field(None, description="Overrides the strategy underlying")
    action: str = "BUY"
    quantity: int = 1
    instrument_type: str = "CE"
    expiry: str = "Weekly"
    strike_price_reference: str = "ATM"
    strike_price_selection: str = "ATM"
    stop_loss_type: Optional[str] = None
    stop_loss_value: Optional[float] = None
    stop_loss_percentage: Optional[float] = None
    take_profit_type: Optional[str] = None
    take_profit_value: Optional[float] = None
    take_profit_percentage: Optional[float] = None


class StrategyInstrumentDocument(BaseModel):
    """One traded instrument of an indicator-based strategy"""
    instrument_id: str
    quantity: int = 1
    symbol: Optional[str] = None
    name: Optional[str] = None


class ProfitTrailingDocument(BaseModel):
    type: Optional[str] = None
    profit_reaches: Optional[float] = None
    lock_profit_at: Optional[float] = None
    on_every_increase_of: Optional[float] = Field(
        None, validation_alias=AliasChoices('on_every_increase_of', 'every_increase_of')
    )
    trail_profit_by: Optional[float] = Field(
        None, validation_alias=AliasChoices('trail_profit_by', 'trail_by')
    )


class RiskManagementDocument(BaseModel):
    """
    Strategy-level risk block.

    profit_trailing may be a bare label or a full block; flat trailing fields
    are read when the block leaves them out.
    """
    exit_profit_amount: Optional[float] = Field(
        None, validation_alias=AliasChoices('exit_profit_amount', 'exit_when_overall_profit_amount')
    )
    exit_loss_amount: Optional[float] = Field(
        None, validation_alias=AliasChoices('exit_loss_amount', 'exit_when_overall_loss_amount')
    )
    no_trade_after_time: Optional[str] = None
    max_trade_cycle: int = 1
    profit_trailing: Union[ProfitTrailingDocument, str, None] = None

    # Flat trailing fields
    profit_reaches: Optional[float] = None
    lock_profit_at: Optional[float] = None
    every_increase_of: Optional[float] = None
    trail_profit_by: Optional[float] = None

    # Per-instrument target/stop for indicator-based strategies
    target_on_each_script: Optional[float] = None
    stop_loss_on_each_script: Optional[float] = None
    target_sl_type: Optional[str] = None


class StrategyDocument(BaseModel):
    """Strategy as submitted by a client"""
    name: str
    type: str
    instrument: Optional[str] = Field(None, description="Underlying for time-based strategies")
    order_legs: List[OrderLegDocument] = Field(default_factory=list)
    instruments: List[StrategyInstrumentDocument] = Field(default_factory=list)
    entry_conditions: List[EntryConditionDocument] = Field(default_factory=list)
    order_type: str = "MIS"
    transaction_type: str = "Only Long"
    chart_type: str = "Candle"
    interval: str = "1 Min"
    start_time: str = "09:15"
    square_off_time: str = "15:15"
    trading_days: Union[Dict[str, bool], List[bool]] = Field(default_factory=_default_trading_days)
    risk_management: RiskManagementDocument = Field(default_factory=RiskManagementDocument)
    broker: Optional[str] = None

    def referenced_instruments(self) -> List[Tuple[Optional[int], str]]:
        """(leg_index, instrument_id) for every instrument the strategy trades"""
        if self.type.strip().lower().replace('-', '_') == 'indicator_based':
            return [(i, inst.instrument_id) for i, inst in enumerate(self.instruments)]

        references: List[Tuple[Optional[int], str]] = []
        if self.instrument:
            references.append((None, self.instrument))
        for i, leg in enumerate(self.order_legs):
            if leg.instrument_id and leg.instrument_id != self.instrument:
                references.append((i, leg.instrument_id))
        return references
