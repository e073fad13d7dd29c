"""
Instrument Resolver - universal instrument id to broker token mapping.

Fails closed: an instrument resolves on a broker only when the broker's
mapping entry exists, carries a token and is flagged tradable. Token refreshes
replace the whole mapping table at once so concurrent readers always see
either the old or the new table, never a mix.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from strategy_backtester.config.loader import load_document
from strategy_backtester.instruments.instrument_models import (
    BrokerInstrumentRef,
    BrokerMapping,
    Instrument,
    InstrumentFilter,
)

logger = logging.getLogger(__name__)


class InstrumentResolutionError(Exception):
    """Raised when an instrument cannot be resolved on a broker"""

    def __init__(self, instrument_id: str, broker_id: str, message: str):
        self.instrument_id = instrument_id
        self.broker_id = broker_id
        super().__init__(message)


class InstrumentNotFoundError(InstrumentResolutionError):
    """Instrument id unknown to the master, or no mapping for the broker"""


class InstrumentNotTradableError(InstrumentResolutionError):
    """Mapping exists but is not tradable or has no token"""


class LegValidationError(BaseModel):
    """Resolution failure attached to the leg that referenced the instrument"""
    leg_index: Optional[int] = Field(None, description="Leg/instrument position, None for the strategy underlying")
    instrument_id: str
    broker_id: str
    error_type: str = Field(..., description="not_found or not_tradable")
    message: str


class InstrumentValidation(BaseModel):
    valid: bool
    per_leg_errors: List[LegValidationError] = Field(default_factory=list)


class MultiBrokerListing:
    """
    Lazy listing of instruments resolvable on every requested broker.

    Each iteration walks the table snapshot taken at construction, so the
    listing can be iterated any number of times with the same result.
    """

    def __init__(self, table: Dict[str, Instrument], instrument_filter: InstrumentFilter, broker_ids: Sequence[str]):
        self._table = table
        self._filter = instrument_filter
        self._broker_ids = tuple(broker_ids)

    def __iter__(self) -> Iterator[Instrument]:
        yielded = 0
        for instrument in sorted(self._table.values(), key=lambda i: (i.symbol, i.instrument_id)):
            if self._filter.limit is not None and yielded >= self._filter.limit:
                return
            if not self._filter.matches(instrument):
                continue
            if all(_usable_mapping(instrument, broker_id) for broker_id in self._broker_ids):
                yielded += 1
                yield instrument


def _usable_mapping(instrument: Instrument, broker_id: str) -> bool:
    mapping = instrument.brokers.get(broker_id)
    return mapping is not None and mapping.usable


class InstrumentResolver:
    """
    Resolves universal instrument ids to broker-specific references.

    The mapping table is immutable once published; writers build a new table
    and swap the reference under a lock.
    """

    def __init__(self, instruments: Iterable[Instrument] = ()):
        self._write_lock = threading.Lock()
        self._table: Dict[str, Instrument] = {i.instrument_id: i for i in instruments}
        logger.info(f"InstrumentResolver initialized with {len(self._table)} instruments")

    def __len__(self) -> int:
        return len(self._table)

    def get_instrument(self, instrument_id: str) -> Optional[Instrument]:
        return self._table.get(instrument_id.strip().lower())

    def resolve(self, instrument_id: str, broker_id: str) -> BrokerInstrumentRef:
        """
        Resolve an instrument on a broker.

        Args:
            instrument_id: Universal instrument id
            broker_id: Broker identifier (e.g. 'angel', 'dhan')

        Returns:
            BrokerInstrumentRef with the broker token and contract sizes

        Raises:
            InstrumentNotFoundError: Unknown id or no mapping for the broker
            InstrumentNotTradableError: Mapping is not tradable or has no token
        """
        table = self._table
        instrument = table.get(instrument_id.strip().lower())
        if instrument is None:
            raise InstrumentNotFoundError(instrument_id, broker_id, f"Instrument not found: {instrument_id}")

        mapping = instrument.brokers.get(broker_id)
        if mapping is None:
            raise InstrumentNotFoundError(
                instrument_id, broker_id,
                f"Instrument {instrument_id} has no mapping for broker {broker_id}"
            )
        if not mapping.tradable:
            raise InstrumentNotTradableError(
                instrument_id, broker_id,
                f"Instrument {instrument_id} is not tradable on {broker_id}"
            )
        if not mapping.token or not mapping.token.strip():
            raise InstrumentNotTradableError(
                instrument_id, broker_id,
                f"Instrument {instrument_id} has no token for {broker_id}"
            )

        return BrokerInstrumentRef(
            instrument_id=instrument.instrument_id,
            broker_id=broker_id,
            token=mapping.token,
            symbol=instrument.symbol,
            exchange=instrument.exchange,
            instrument_type=instrument.instrument_type,
            lot_size=mapping.lot_size or instrument.lot_size,
            tick_size=mapping.tick_size or instrument.tick_size,
        )

    def available_brokers(self, instrument_id: str) -> List[str]:
        """List brokers on which the instrument currently resolves"""
        instrument = self.get_instrument(instrument_id)
        if instrument is None:
            return []
        return sorted(b for b, mapping in instrument.brokers.items() if mapping.usable)

    def list_multi_broker(
        self,
        instrument_filter: Optional[InstrumentFilter] = None,
        broker_ids: Sequence[str] = ()
    ) -> MultiBrokerListing:
        """
        List instruments resolvable on every broker in broker_ids.

        Returns a restartable iterable ordered by symbol.
        """
        return MultiBrokerListing(self._table, instrument_filter or InstrumentFilter(), broker_ids)

    def validate_for_strategy(self, strategy, broker_id: str) -> InstrumentValidation:
        """
        Resolve every instrument a strategy references on a broker.

        All failures are collected; nothing short-circuits.

        Args:
            strategy: Object exposing referenced_instruments() -> [(leg_index, instrument_id)]
            broker_id: Broker the strategy will execute on

        Returns:
            InstrumentValidation with one error per failing reference
        """
        errors: List[LegValidationError] = []
        for leg_index, instrument_id in strategy.referenced_instruments():
            try:
                self.resolve(instrument_id, broker_id)
            except InstrumentNotTradableError as e:
                errors.append(LegValidationError(
                    leg_index=leg_index, instrument_id=instrument_id, broker_id=broker_id,
                    error_type="not_tradable", message=str(e)
                ))
            except InstrumentNotFoundError as e:
                errors.append(LegValidationError(
                    leg_index=leg_index, instrument_id=instrument_id, broker_id=broker_id,
                    error_type="not_found", message=str(e)
                ))

        if errors:
            logger.warning(f"Strategy references {len(errors)} unresolvable instrument(s) on {broker_id}")

        return InstrumentValidation(valid=not errors, per_leg_errors=errors)

    def apply_token_refresh(self, broker_id: str, updates: Dict[str, BrokerMapping]) -> int:
        """
        Replace broker mappings for a batch of instruments atomically.

        Args:
            broker_id: Broker whose mapping block is refreshed
            updates: instrument_id -> new BrokerMapping

        Returns:
            Number of instruments updated (unknown ids are skipped)
        """
        with self._write_lock:
            current = self._table
            new_table = dict(current)
            updated = 0
            for instrument_id, mapping in updates.items():
                key = instrument_id.strip().lower()
                instrument = current.get(key)
                if instrument is None:
                    logger.warning(f"Token refresh for unknown instrument {instrument_id} skipped")
                    continue
                brokers = dict(instrument.brokers)
                brokers[broker_id] = mapping
                new_table[key] = instrument.model_copy(update={'brokers': brokers})
                updated += 1
            self._table = new_table

        logger.info(f"Token refresh for {broker_id}: {updated} instrument(s) updated")
        return updated

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "InstrumentResolver":
        return cls(load_instruments(path))


def parse_instrument_id(instrument_id: str) -> Tuple[str, str, str]:
    """
    Split a universal id into (symbol, exchange, segment).

    Ids follow SYMBOL-...-SEGMENT-EXCHANGE, e.g. nifty-bank-idx-nse.
    """
    parts = instrument_id.strip().lower().split('-')
    if len(parts) < 3:
        raise ValueError(f"Malformed instrument id: {instrument_id}")
    exchange = parts[-1].upper()
    segment = parts[-2].upper()
    symbol = '-'.join(parts[:-2]).upper()
    return symbol, exchange, segment


def load_instruments(path: Union[str, Path]) -> List[Instrument]:
    """Load an instrument master from a JSON/YAML list or {'instruments': [...]}"""
    path = Path(path)
    document = load_document(path)
    records = document.get('instruments', []) if isinstance(document, dict) else document

    instruments = []
    for record in records:
        if 'symbol' not in record or 'exchange' not in record:
            symbol, exchange, segment = parse_instrument_id(record['instrument_id'])
            record = {'symbol': symbol, 'exchange': exchange, 'segment': segment, **record}
        instruments.append(Instrument(**record))
    logger.info(f"Loaded {len(instruments)} instruments from {path}")
    return instruments
