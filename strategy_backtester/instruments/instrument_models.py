"""
Instrument master data models.

One Instrument per universal id, with a per-broker mapping block holding the
broker's token and tradability flag.
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator

# Category filter -> instrument types
INSTRUMENT_CATEGORIES: Dict[str, tuple] = {
    'options': ('OPTIDX', 'OPTSTK'),
    'indices': ('INDEX', 'AMXIDX'),
    'equity': ('EQUITY',),
    'futures': ('FUTIDX', 'FUTSTK'),
}


class BrokerMapping(BaseModel):
    """Broker-specific identity of an instrument"""
    token: Optional[str] = Field(None, description="Broker instrument token")
    lot_size: Optional[int] = Field(None, gt=0, description="Broker lot size override")
    tick_size: Optional[float] = Field(None, gt=0, description="Broker tick size override")
    tradable: bool = Field(default=False, description="Whether the broker accepts orders for it")
    last_updated: Optional[datetime] = None

    @property
    def usable(self) -> bool:
        return self.tradable and bool(self.token and self.token.strip())


class Instrument(BaseModel):
    """Broker-neutral instrument record"""
    instrument_id: str = Field(..., description="Universal id, e.g. nifty-50-idx-nse")
    symbol: str
    name: str = ""
    exchange: str
    segment: str = ""
    instrument_type: str = "INDEX"
    lot_size: int = Field(default=1, gt=0)
    tick_size: float = Field(default=0.05, gt=0)
    brokers: Dict[str, BrokerMapping] = Field(default_factory=dict)

    @field_validator('instrument_id')
    @classmethod
    def validate_instrument_id(cls, v):
        """Universal ids are lower-case and non-empty"""
        v = v.strip().lower()
        if not v:
            raise ValueError("instrument_id must be non-empty")
        return v


class BrokerInstrumentRef(BaseModel):
    """Resolved, tradable reference of an instrument on one broker"""
    instrument_id: str
    broker_id: str
    token: str
    symbol: str
    exchange: str
    instrument_type: str
    lot_size: int
    tick_size: float


class InstrumentFilter(BaseModel):
    """Filter for multi-broker instrument listings"""
    category: Optional[str] = None
    exchange: Optional[str] = None
    symbol_prefix: Optional[str] = None
    limit: Optional[int] = Field(None, gt=0)

    @field_validator('category')
    @classmethod
    def validate_category(cls, v):
        if v is not None and v not in INSTRUMENT_CATEGORIES:
            raise ValueError(f"Unknown category '{v}'. Expected one of {sorted(INSTRUMENT_CATEGORIES)}")
        return v

    def matches(self, instrument: Instrument) -> bool:
        if self.category and instrument.instrument_type not in INSTRUMENT_CATEGORIES[self.category]:
            return False
        if self.exchange and instrument.exchange.upper() != self.exchange.upper():
            return False
        if self.symbol_prefix and not instrument.symbol.upper().startswith(self.symbol_prefix.upper()):
            return False
        return True
