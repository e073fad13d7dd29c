#!/usr/bin/env python3
"""
Test suite for InstrumentResolver

Tests fail-closed resolution, per-leg strategy validation, multi-broker
listings and atomic token refresh.
"""

import json
import threading
import pytest

from strategy_backtester.instruments.instrument_models import BrokerMapping, Instrument, InstrumentFilter
from strategy_backtester.instruments.instrument_resolver import (
    InstrumentNotFoundError,
    InstrumentNotTradableError,
    InstrumentResolver,
    load_instruments,
    parse_instrument_id,
)
from strategy_backtester.strategy.strategy_models import StrategyDocument


@pytest.fixture
def resolver():
    return InstrumentResolver([
        Instrument(
            instrument_id='nifty-bank-idx-nse', symbol='NIFTY BANK', exchange='NSE', lot_size=35,
            brokers={
                'angel': BrokerMapping(token='99926009', tradable=True),
                'dhan': BrokerMapping(token='25', tradable=True, lot_size=30),
            },
        ),
        Instrument(
            instrument_id='nifty-50-idx-nse', symbol='NIFTY 50', exchange='NSE', lot_size=75,
            brokers={
                'angel': BrokerMapping(token='99926000', tradable=True),
                'dhan': BrokerMapping(token='13', tradable=False),
            },
        ),
        Instrument(
            instrument_id='sensex-idx-bse', symbol='SENSEX', exchange='BSE', lot_size=20,
            brokers={'angel': BrokerMapping(token='  ', tradable=True)},
        ),
        Instrument(
            instrument_id='reliance-eq-nse', symbol='RELIANCE', exchange='NSE', instrument_type='EQUITY',
            brokers={
                'angel': BrokerMapping(token='2885', tradable=True),
                'dhan': BrokerMapping(token='2885', tradable=True),
            },
        ),
    ])


class TestResolve:
    """Tests for single-instrument resolution"""

    def test_resolves_tradable_mapping(self, resolver):
        ref = resolver.resolve('nifty-bank-idx-nse', 'angel')

        assert ref.token == '99926009'
        assert ref.lot_size == 35
        assert ref.exchange == 'NSE'

    def test_broker_lot_size_override(self, resolver):
        assert resolver.resolve('NIFTY-BANK-IDX-NSE', 'dhan').lot_size == 30

    def test_unknown_instrument(self, resolver):
        with pytest.raises(InstrumentNotFoundError):
            resolver.resolve('finnifty-idx-nse', 'angel')

    def test_missing_broker_mapping(self, resolver):
        with pytest.raises(InstrumentNotFoundError):
            resolver.resolve('sensex-idx-bse', 'dhan')

    def test_not_tradable(self, resolver):
        with pytest.raises(InstrumentNotTradableError):
            resolver.resolve('nifty-50-idx-nse', 'dhan')

    def test_blank_token_is_not_tradable(self, resolver):
        with pytest.raises(InstrumentNotTradableError):
            resolver.resolve('sensex-idx-bse', 'angel')

    def test_available_brokers(self, resolver):
        assert resolver.available_brokers('nifty-bank-idx-nse') == ['angel', 'dhan']
        assert resolver.available_brokers('nifty-50-idx-nse') == ['angel']
        assert resolver.available_brokers('unknown-idx-nse') == []


class TestValidateForStrategy:
    """Tests for strategy-level resolution"""

    def test_collects_every_failing_leg(self, resolver):
        document = StrategyDocument(
            name='Mixed',
            type='time_based',
            instrument='nifty-bank-idx-nse',
            order_legs=[
                {'action': 'SELL', 'quantity': 35},
                {'action': 'SELL', 'quantity': 75, 'instrument_id': 'nifty-50-idx-nse'},
                {'action': 'BUY', 'quantity': 20, 'instrument_id': 'missing-idx-nse'},
            ],
        )

        result = resolver.validate_for_strategy(document, 'dhan')

        assert not result.valid
        errors = {e.leg_index: e.error_type for e in result.per_leg_errors}
        assert errors == {1: 'not_tradable', 2: 'not_found'}

    def test_valid_strategy(self, resolver):
        document = StrategyDocument(
            name='RSI',
            type='indicator_based',
            instruments=[{'instrument_id': 'nifty-50-idx-nse', 'quantity': 75}],
        )

        assert resolver.validate_for_strategy(document, 'angel').valid


class TestListings:
    """Tests for multi-broker listings"""

    def test_lists_instruments_usable_on_all_brokers(self, resolver):
        listing = resolver.list_multi_broker(broker_ids=['angel', 'dhan'])

        assert [i.instrument_id for i in listing] == ['nifty-bank-idx-nse', 'reliance-eq-nse']

    def test_listing_is_restartable(self, resolver):
        listing = resolver.list_multi_broker(broker_ids=['angel'])

        assert list(listing) == list(listing)

    def test_category_filter_and_limit(self, resolver):
        indices = resolver.list_multi_broker(InstrumentFilter(category='indices'), ['angel'])
        limited = resolver.list_multi_broker(InstrumentFilter(limit=1), ['angel'])

        assert [i.symbol for i in indices] == ['NIFTY 50', 'NIFTY BANK']
        assert len(list(limited)) == 1

    def test_unknown_category_rejected(self):
        with pytest.raises(ValueError):
            InstrumentFilter(category='crypto')


class TestTokenRefresh:
    """Tests for atomic mapping swaps"""

    def test_refresh_makes_instrument_tradable(self, resolver):
        updated = resolver.apply_token_refresh('dhan', {
            'nifty-50-idx-nse': BrokerMapping(token='13', tradable=True),
            'unknown-idx-nse': BrokerMapping(token='1', tradable=True),
        })

        assert updated == 1
        assert resolver.resolve('nifty-50-idx-nse', 'dhan').token == '13'

    def test_listing_keeps_its_snapshot(self, resolver):
        listing = resolver.list_multi_broker(broker_ids=['dhan'])
        before = [i.instrument_id for i in listing]

        resolver.apply_token_refresh('dhan', {'nifty-50-idx-nse': BrokerMapping(token='13', tradable=True)})

        assert [i.instrument_id for i in listing] == before
        assert len(list(resolver.list_multi_broker(broker_ids=['dhan']))) == len(before) + 1

    def test_concurrent_readers_never_see_partial_table(self, resolver):
        # Both tokens change together; a reader must see the old pair or the new pair
        seen = []

        def reader():
            for _ in range(200):
                listing = list(resolver.list_multi_broker(broker_ids=['angel']))
                tokens = {i.instrument_id: i.brokers['angel'].token for i in listing}
                seen.append((tokens['nifty-bank-idx-nse'], tokens['reliance-eq-nse']))

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        resolver.apply_token_refresh('angel', {
            'nifty-bank-idx-nse': BrokerMapping(token='new-1', tradable=True),
            'reliance-eq-nse': BrokerMapping(token='new-2', tradable=True),
        })
        for t in threads:
            t.join()

        assert set(seen) <= {('99926009', '2885'), ('new-1', 'new-2')}


class TestLoading:
    """Tests for instrument master files"""

    def test_parse_instrument_id(self):
        assert parse_instrument_id('nifty-bank-idx-nse') == ('NIFTY-BANK', 'NSE', 'IDX')

    def test_malformed_id(self):
        with pytest.raises(ValueError):
            parse_instrument_id('nifty')

    def test_load_fills_symbol_and_exchange(self, tmp_path):
        path = tmp_path / "instruments.json"
        path.write_text(json.dumps({'instruments': [
            {'instrument_id': 'nifty-bank-idx-nse', 'brokers': {'angel': {'token': '99926009', 'tradable': True}}},
        ]}))

        instruments = load_instruments(path)

        assert instruments[0].symbol == 'NIFTY-BANK'
        assert instruments[0].exchange == 'NSE'
        assert InstrumentResolver(instruments).resolve('nifty-bank-idx-nse', 'angel').token == '99926009'


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
