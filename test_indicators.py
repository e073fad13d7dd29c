#!/usr/bin/env python3
"""
Test suite for indicators and entry-condition evaluation

Tests RSI edge cases, comparators, Heikin-Ashi conversion, session VWAP and
entry signals built from normalized conditions.
"""

import numpy as np
import pandas as pd
import pytest

from strategy_backtester.feature_engineering.indicators import (
    FeatureEngineer,
    canonical_comparator,
    canonical_indicator,
    compare_series,
    compute_entry_signal,
)
from strategy_backtester.strategy.strategy_types import EntryCondition


def indexed(bars):
    return bars.set_index('timestamp')


@pytest.fixture
def engineer():
    return FeatureEngineer()


class TestRSI:
    """Tests for RSI boundary behaviour"""

    def test_only_gains_is_100(self, engineer):
        rsi = engineer.compute_rsi(pd.Series(np.arange(100.0, 130.0)), period=14)

        assert rsi.iloc[:12].isna().all()
        assert (rsi.iloc[14:] == 100.0).all()

    def test_only_losses_is_0(self, engineer):
        rsi = engineer.compute_rsi(pd.Series(np.arange(130.0, 100.0, -1.0)), period=14)

        assert (rsi.iloc[14:] == 0.0).all()

    def test_flat_prices_are_neutral(self, engineer):
        rsi = engineer.compute_rsi(pd.Series([100.0] * 30), period=14)

        assert (rsi.iloc[14:] == 50.0).all()

    def test_bounded(self, engineer):
        prices = pd.Series(100 + np.sin(np.linspace(0, 12, 200)) * 5)

        rsi = engineer.compute_rsi(prices).dropna()

        assert ((rsi >= 0) & (rsi <= 100)).all()


class TestCompareSeries:
    """Tests for comparators"""

    def test_crosses_above_and_below(self):
        left = pd.Series([1.0, 2.0, 3.0, 2.0, 1.0])
        right = pd.Series([2.0] * 5)

        assert list(compare_series(left, right, 'Crosses Above')) == [False, False, True, False, False]
        assert list(compare_series(left, right, 'Crosses Below')) == [False, False, False, False, True]

    def test_cross_needs_defined_previous_bar(self):
        left = pd.Series([np.nan, 3.0, 1.0, 3.0])
        right = pd.Series([2.0] * 4)

        assert list(compare_series(left, right, 'Crosses Above')) == [False, False, False, True]

    def test_level_comparators(self):
        left = pd.Series([1.0, 2.0, 3.0])
        right = pd.Series([2.0, 2.0, 2.0])

        assert list(compare_series(left, right, 'Higher than')) == [False, False, True]
        assert list(compare_series(left, right, 'Less than or Equal')) == [True, True, False]
        assert list(compare_series(left, right, 'Equal')) == [False, True, False]

    def test_undefined_operand_is_false(self):
        left = pd.Series([np.nan, 5.0])
        right = pd.Series([1.0, 1.0])

        assert list(compare_series(left, right, 'Higher than')) == [False, True]
        assert list(compare_series(left, right, 'Not Equal')) == [False, True]

    def test_unknown_comparator(self):
        with pytest.raises(ValueError):
            compare_series(pd.Series([1.0]), pd.Series([1.0]), 'Between')


class TestCanonicalNames:
    """Tests for label canonicalization"""

    @pytest.mark.parametrize('label,expected', [
        ('rsi', 'RSI'),
        ('SMA', 'Moving Average'),
        ('macd signal', 'MACD-Signal'),
        ('ltp', 'Price'),
        ('Bollinger Upper', 'Bollinger Upper'),
        ('Ichimoku', None),
    ])
    def test_indicators(self, label, expected):
        assert canonical_indicator(label) == expected

    @pytest.mark.parametrize('label,expected', [
        ('crosses above', 'Crosses Above'),
        ('>', 'Higher than'),
        ('>=', 'Greater than or Equal'),
        ('between', None),
    ])
    def test_comparators(self, label, expected):
        assert canonical_comparator(label) == expected


class TestFrameIndicators:
    """Tests for indicators computed over bar frames"""

    def test_heikin_ashi(self, engineer, bar_factory):
        bars = bar_factory([11, 13], opens=[10, 12], highs=[12, 14], lows=[9, 11])

        ha = engineer.heikin_ashi(bars)

        assert list(ha['close']) == [10.5, 12.5]
        assert list(ha['open']) == [10.5, 10.5]
        assert ha['high'].iloc[1] == 14.0
        assert ha['low'].iloc[1] == 10.5
        assert list(ha['volume']) == list(bars['volume'])

    def test_vwap_resets_each_session(self, engineer, bar_factory):
        day1 = bar_factory([100, 110, 120], start='2024-01-01 09:15', spread=0.0)
        day2 = bar_factory([200, 210], start='2024-01-02 09:15', spread=0.0)
        bars = indexed(pd.concat([day1, day2], ignore_index=True))

        vwap = engineer.compute_vwap(bars)

        assert vwap.iloc[0] == pytest.approx(100.0)
        assert vwap.iloc[2] == pytest.approx(110.0)
        assert vwap.iloc[3] == pytest.approx(200.0)

    def test_moving_average_period(self, engineer, bar_factory):
        bars = indexed(bar_factory([1, 2, 3, 4, 5]))

        sma = engineer.compute_indicator(bars, 'Moving Average', period=3)

        assert sma.iloc[:2].isna().all()
        assert list(sma.iloc[2:]) == [2.0, 3.0, 4.0]

    def test_supertrend_warmup(self, engineer, bar_factory):
        bars = indexed(bar_factory(list(100 + np.arange(15.0))))

        line = engineer.compute_indicator(bars, 'SuperTrend')

        assert len(line) == 15
        assert line.iloc[:9].isna().all()
        assert line.iloc[9:].notna().all()

    def test_unsupported_indicator(self, engineer, bar_factory):
        with pytest.raises(ValueError):
            engineer.compute_indicator(indexed(bar_factory([1, 2])), 'Ichimoku')


class TestEntrySignal:
    """Tests for compute_entry_signal"""

    def test_single_condition(self, bar_factory):
        bars = indexed(bar_factory([100, 101, 102, 104, 105]))
        conditions = [EntryCondition('Price', 'Crosses Above', 'Number', value=103)]

        signal = compute_entry_signal(bars, conditions)

        assert list(signal) == [False, False, False, True, False]

    def test_all_conditions_must_hold(self, bar_factory):
        bars = indexed(bar_factory([100, 101, 102, 104, 105]))
        conditions = [
            EntryCondition('Price', 'Crosses Above', 'Number', value=103),
            EntryCondition('Price', 'Higher than', 'Number', value=104.5),
        ]

        signal = compute_entry_signal(bars, conditions)

        assert not signal.any()

    def test_signal_uses_only_past_bars(self, bar_factory):
        closes = [100, 99, 98, 97, 96, 95, 94, 93, 92, 91, 90, 89, 88, 87, 86, 95, 96, 97, 80, 70]
        bars = indexed(bar_factory(closes))
        conditions = [EntryCondition('RSI', 'Crosses Above', 'Number', period=14, value=30)]

        full = compute_entry_signal(bars, conditions)
        truncated = compute_entry_signal(bars.iloc[:17], conditions)

        assert list(full.iloc[:17]) == list(truncated)

    def test_heikin_ashi_chart(self, bar_factory):
        bars = indexed(bar_factory([100, 101, 102, 104, 105]))
        conditions = [EntryCondition('Price', 'Higher than', 'Number', value=0)]

        signal = compute_entry_signal(bars, conditions, chart_type='Heikin Ashi')

        assert signal.all()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
