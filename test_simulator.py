#!/usr/bin/env python3
"""
Test suite for BacktestSimulator

Tests the bar-by-bar replay: entry window, time exits, equity curve,
determinism, cancellation, intrabar evaluation and indicator entries.
"""

import pandas as pd
import pytest
from datetime import time

from strategy_backtester.backtest.execution_simulator import TransactionCostModel
from strategy_backtester.backtest.simulator import (
    BacktestCancelledError,
    BacktestSimulator,
    CancellationToken,
)
from strategy_backtester.config.config_schema import TransactionCostConfig
from strategy_backtester.risk.risk_engine import ExitReason
from strategy_backtester.risk.trailing_stop import SimulationError
from strategy_backtester.strategy.strategy_types import (
    EntryCondition,
    IndicatorBasedStrategy,
    OrderLeg,
    RiskManagement,
    Side,
    StrategyInstrument,
    Threshold,
    ThresholdType,
    TimeBasedStrategy,
)

BANK = 'nifty-bank-idx-nse'
WEEKDAYS_ONLY = (True, True, True, True, True, False, False)


def time_strategy(legs, start='09:20', square_off='09:45', risk=None):
    return TimeBasedStrategy(
        name='Test Straddle',
        instrument_id=BANK,
        start_time=time.fromisoformat(start),
        square_off_time=time.fromisoformat(square_off),
        trading_days=WEEKDAYS_ONLY,
        legs=tuple(legs),
        interval='5m',
        risk=risk or RiskManagement(),
    )


def leg(action=Side.BUY, quantity=10, stop_loss=Threshold(), leg_id='leg-1'):
    return OrderLeg(leg_id=leg_id, instrument_id=BANK, action=action, quantity=quantity, stop_loss=stop_loss,
                    instrument_type='FUT')


@pytest.fixture
def simulator():
    return BacktestSimulator(cost_model=TransactionCostModel(TransactionCostConfig(fixed_cost_per_order=20.0)))


class TestTimeBasedReplay:
    """Tests for a single time-based leg"""

    def test_entry_at_start_and_time_exit(self, simulator, bar_factory):
        # 09:15 .. 10:00, one bar every 5 minutes
        bars = bar_factory([100, 101, 102, 103, 104, 105, 106, 107, 108, 109])

        run = simulator.run(time_strategy([leg()]), {BANK: bars}, 100000.0)

        assert len(run.trades) == 1
        trade = run.trades[0]
        assert trade.entry_price == pytest.approx(101.0)
        assert trade.exit_price == pytest.approx(106.0)
        assert trade.exit_reason == ExitReason.TIME
        assert trade.pnl == pytest.approx(50.0)
        assert trade.transaction_cost == pytest.approx(40.0)
        assert trade.entry_timestamp.time() == time(9, 20)
        assert trade.exit_timestamp.time() == time(9, 45)

    def test_equity_curve_has_one_point_per_step(self, simulator, bar_factory):
        bars = bar_factory([100, 101, 102, 103, 104, 105, 106, 107, 108, 109])

        run = simulator.run(time_strategy([leg()]), {BANK: bars}, 100000.0)

        assert len(run.equity_curve) == len(bars)
        expected = run.initial_capital + sum(t.pnl for t in run.trades) - sum(t.transaction_cost for t in run.trades)
        assert run.final_equity == pytest.approx(expected)
        assert run.final_equity == pytest.approx(100010.0)

    def test_equity_changes_only_on_closes(self, simulator, bar_factory):
        bars = bar_factory([100, 101, 102, 103, 104, 105, 106, 107, 108, 109])

        run = simulator.run(time_strategy([leg()]), {BANK: bars}, 100000.0)

        equities = [p.equity for p in run.equity_curve]
        assert equities[:6] == [100000.0] * 6
        assert equities[6:] == [pytest.approx(100010.0)] * 4

    def test_stop_loss_then_second_cycle(self, simulator, bar_factory):
        strategy = time_strategy(
            [leg(Side.SELL, 35, stop_loss=Threshold(ThresholdType.POINTS, 30))],
            square_off='09:50',
            risk=RiskManagement(max_trade_cycle=2),
        )
        bars = bar_factory([100, 100, 131, 131, 125, 120, 118, 117])

        run = simulator.run(strategy, {BANK: bars}, 100000.0)

        assert [t.exit_reason for t in run.trades] == [ExitReason.SL, ExitReason.TIME]
        assert run.trades[0].pnl == pytest.approx(-1085.0)
        assert run.trades[1].cycle == 2
        assert run.trades[1].entry_price == pytest.approx(131.0)

    def test_session_end_closes_open_legs(self, simulator, bar_factory):
        day1 = bar_factory([100, 101, 102, 103], start='2024-01-01 09:15')
        day2 = bar_factory([200, 202, 204, 206], start='2024-01-02 09:15')
        bars = pd.concat([day1, day2], ignore_index=True)

        run = simulator.run(time_strategy([leg()], square_off='15:15'), {BANK: bars}, 100000.0)

        assert len(run.trades) == 2
        assert all(t.exit_reason == ExitReason.TIME for t in run.trades)
        assert run.trades[0].exit_timestamp.date() != run.trades[1].exit_timestamp.date()
        assert len(run.equity_curve) == 8

    def test_no_trades_on_inactive_days(self, simulator, bar_factory):
        # 2024-01-06 is a Saturday
        bars = bar_factory([100, 101, 102, 103, 104], start='2024-01-06 09:15')

        run = simulator.run(time_strategy([leg()]), {BANK: bars}, 100000.0)

        assert run.trades == ()
        assert run.final_equity == pytest.approx(100000.0)

    def test_no_trade_after_time_limits_entries(self, simulator, bar_factory):
        strategy = time_strategy(
            [leg()],
            start='09:20',
            square_off='10:00',
            risk=RiskManagement(no_trade_after_time=time(9, 30)),
        )
        bars = bar_factory([100, 101, 102, 103, 104, 105, 106, 107, 108, 109])

        run = simulator.run(strategy, {BANK: bars}, 100000.0)

        assert len(run.trades) == 1
        assert run.trades[0].exit_timestamp.time() == time(9, 30)


class TestRunProperties:
    """Tests for determinism, cancellation and malformed input"""

    def test_deterministic(self, simulator, bar_factory):
        strategy = time_strategy(
            [leg(Side.SELL, 35, stop_loss=Threshold(ThresholdType.POINTS, 2))],
            square_off='10:00',
            risk=RiskManagement(max_trade_cycle=3),
        )
        bars = bar_factory([100, 100, 103, 101, 104, 99, 98, 97, 102, 101])

        first = simulator.run(strategy, {BANK: bars}, 100000.0)
        second = simulator.run(strategy, {BANK: bars}, 100000.0)

        assert first.trades == second.trades
        assert first.equity_curve == second.equity_curve

    def test_cancelled_run_raises(self, simulator, bar_factory):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(BacktestCancelledError):
            simulator.run(time_strategy([leg()]), {BANK: bar_factory([100, 101, 102])}, 100000.0, cancel_token=token)

    def test_unordered_bars_rejected(self, simulator, bar_factory):
        bars = bar_factory([100, 101, 102]).iloc[[0, 2, 1]]

        with pytest.raises(SimulationError):
            simulator.run(time_strategy([leg()]), {BANK: bars}, 100000.0)

    def test_missing_instrument_rejected(self, simulator, bar_factory):
        with pytest.raises(SimulationError):
            simulator.run(time_strategy([leg()]), {'nifty-50-idx-nse': bar_factory([100, 101])}, 100000.0)

    def test_non_positive_capital_rejected(self, simulator, bar_factory):
        with pytest.raises(SimulationError):
            simulator.run(time_strategy([leg()]), {BANK: bar_factory([100, 101])}, 0.0)


class TestIntrabarReplay:
    """Tests for price_reference='intrabar'"""

    def test_wick_triggers_stop_only_in_intrabar_mode(self, bar_factory):
        bars = bar_factory(
            closes=[100, 100, 95, 96, 97, 98, 99, 99],
            opens=[100, 100, 99, 95, 96, 97, 98, 99],
            lows=[99, 99, 85, 94, 95, 96, 97, 98],
        )
        strategy = time_strategy([leg(Side.BUY, 1, stop_loss=Threshold(ThresholdType.POINTS, 10))])
        costs = TransactionCostModel(TransactionCostConfig(fixed_cost_per_order=0.0))

        close_run = BacktestSimulator(costs, price_reference='close').run(strategy, {BANK: bars}, 100000.0)
        intrabar_run = BacktestSimulator(costs, price_reference='intrabar').run(strategy, {BANK: bars}, 100000.0)

        assert close_run.trades[0].exit_reason == ExitReason.TIME
        assert intrabar_run.trades[0].exit_reason == ExitReason.SL
        assert intrabar_run.trades[0].exit_price == pytest.approx(90.0)


class TestOptionReplay:
    """Tests for CE/PE legs priced off the underlying"""

    @staticmethod
    def short_straddle():
        legs = [
            OrderLeg(leg_id='ce', instrument_id=BANK, action=Side.SELL, quantity=15, instrument_type='CE'),
            OrderLeg(leg_id='pe', instrument_id=BANK, action=Side.SELL, quantity=15, instrument_type='PE'),
        ]
        return time_strategy(legs)

    def test_falling_index_moves_legs_apart(self, simulator, bar_factory):
        # Monday 2024-01-01; the weekly contract expires Thursday 2024-01-04
        bars = bar_factory([48060, 48040, 47950, 47850, 47750, 47650, 47550, 47500, 47450, 47400],
                           start='2024-01-01 09:15')

        run = simulator.run(self.short_straddle(), {BANK: bars}, 500000.0)

        trades = {t.leg_id: t for t in run.trades}
        assert trades['ce'].symbol == 'BANKNIFTY04JAN2448000CE'
        assert trades['pe'].symbol == 'BANKNIFTY04JAN2448000PE'
        assert trades['ce'].instrument_id == BANK
        # Short call gains and short put loses as the index drops
        assert trades['ce'].exit_price < trades['ce'].entry_price
        assert trades['pe'].exit_price > trades['pe'].entry_price
        assert trades['ce'].pnl > 0
        assert trades['pe'].pnl < 0
        # Premiums, not index levels
        assert trades['ce'].entry_price < 1000

    def test_unknown_expiry_rejected(self, simulator, bar_factory):
        strategy = time_strategy([OrderLeg(leg_id='ce', instrument_id=BANK, action=Side.SELL, quantity=15,
                                           instrument_type='CE', expiry='Daily')])

        with pytest.raises(SimulationError):
            simulator.run(strategy, {BANK: bar_factory([48000, 48010])}, 100000.0)


class TestIndicatorReplay:
    """Tests for indicator-based entries"""

    def test_price_crossing_above_number_enters(self, simulator, bar_factory):
        strategy = IndicatorBasedStrategy(
            name='Breakout',
            instruments=(StrategyInstrument(instrument_id=BANK, quantity=5),),
            entry_conditions=(EntryCondition('Price', 'Crosses Above', 'Number', value=103),),
            start_time=time(9, 15),
            square_off_time=time(9, 55),
            trading_days=WEEKDAYS_ONLY,
            interval='5m',
            side=Side.BUY,
            take_profit=Threshold(ThresholdType.POINTS, 3),
        )
        bars = bar_factory([100, 101, 102, 104, 105, 106, 108, 107, 106, 105])

        run = simulator.run(strategy, {BANK: bars}, 50000.0)

        assert len(run.trades) == 1
        trade = run.trades[0]
        assert trade.leg_id == BANK
        assert trade.entry_price == pytest.approx(104.0)
        assert trade.exit_reason == ExitReason.TP
        assert trade.exit_price == pytest.approx(108.0)
        assert trade.pnl == pytest.approx(20.0)
        assert run.strategy_type == 'indicator_based'


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
