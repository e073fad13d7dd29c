#!/usr/bin/env python3
"""
Test suite for trailing stop updates

Tests trail-profit stepping, lock-and-trail locking and the rule that a stop
never loosens, for long and short legs.
"""

import pytest

from strategy_backtester.risk.trailing_stop import SimulationError, TrailingState, update_trailing_stop
from strategy_backtester.strategy.strategy_types import LockAndTrail, NoTrailing, TrailProfit


class TestTrailProfit:
    """Tests for stepwise profit trailing"""

    def test_no_move_before_first_step(self):
        state = TrailingState(entry_price=100.0, direction=1)
        rule = TrailProfit(on_every_increase_of=10, trail_by=5)

        assert update_trailing_stop(state, rule, 109.0) is None

    def test_long_stop_moves_per_whole_step(self):
        state = TrailingState(entry_price=100.0, direction=1)
        rule = TrailProfit(on_every_increase_of=10, trail_by=5)

        assert update_trailing_stop(state, rule, 110.0) == pytest.approx(105.0)
        assert update_trailing_stop(state, rule, 125.0) == pytest.approx(110.0)

    def test_short_stop_moves_down(self):
        state = TrailingState(entry_price=100.0, direction=-1)
        rule = TrailProfit(on_every_increase_of=10, trail_by=5)

        assert update_trailing_stop(state, rule, 75.0) == pytest.approx(90.0)

    def test_stop_never_loosens_on_retracing_path(self):
        state = TrailingState(entry_price=100.0, direction=1, current_stop=95.0)
        rule = TrailProfit(on_every_increase_of=10, trail_by=5)

        stops = []
        for price in [104, 112, 131, 118, 102, 126, 99, 140]:
            stops.append(update_trailing_stop(state, rule, float(price)))

        assert all(b >= a for a, b in zip(stops, stops[1:]))
        assert stops[-1] == pytest.approx(120.0)

    def test_initial_stop_kept_until_trail_improves_it(self):
        state = TrailingState(entry_price=100.0, direction=1, current_stop=108.0)
        rule = TrailProfit(on_every_increase_of=10, trail_by=5)

        # One step would put the stop at 105, below the existing 108
        assert update_trailing_stop(state, rule, 111.0) == pytest.approx(108.0)

    def test_steps_are_money_across_quantity(self):
        # 10 units: 100 of profit is a 10-point move, the trail of 50 sits 5 points above entry
        state = TrailingState(entry_price=100.0, direction=1, quantity=10)
        rule = TrailProfit(on_every_increase_of=100, trail_by=50)

        assert update_trailing_stop(state, rule, 109.0) is None
        assert update_trailing_stop(state, rule, 110.0) == pytest.approx(105.0)
        assert state.peak_favorable_excursion == pytest.approx(100.0)


class TestLockAndTrail:
    """Tests for profit locking"""

    def test_lock_engages_at_profit_reaches(self):
        state = TrailingState(entry_price=10000.0, direction=1)
        rule = LockAndTrail(profit_reaches=1000, lock_profit_at=500, on_every_increase_of=200, trail_by=100)

        assert update_trailing_stop(state, rule, 10900.0) is None
        assert update_trailing_stop(state, rule, 11000.0) == pytest.approx(10500.0)
        assert state.locked_floor == pytest.approx(10500.0)

    def test_trails_above_floor(self):
        state = TrailingState(entry_price=10000.0, direction=1)
        rule = LockAndTrail(profit_reaches=1000, lock_profit_at=500, on_every_increase_of=200, trail_by=100)

        update_trailing_stop(state, rule, 11000.0)
        assert update_trailing_stop(state, rule, 11450.0) == pytest.approx(10700.0)
        # Pullback keeps the best stop
        assert update_trailing_stop(state, rule, 10800.0) == pytest.approx(10700.0)

    def test_lock_fix_profit_stays_at_floor(self):
        state = TrailingState(entry_price=200.0, direction=-1)
        rule = LockAndTrail(profit_reaches=20, lock_profit_at=5)

        update_trailing_stop(state, rule, 180.0)
        assert update_trailing_stop(state, rule, 120.0) == pytest.approx(195.0)

    def test_short_lot_locks_money_floor(self):
        state = TrailingState(entry_price=300.0, direction=-1, quantity=25)
        rule = LockAndTrail(profit_reaches=1000, lock_profit_at=500)

        assert update_trailing_stop(state, rule, 261.0) is None
        # 1000 over 25 units is a 40-point drop; 500 locks 20 points below entry
        assert update_trailing_stop(state, rule, 260.0) == pytest.approx(280.0)


class TestInvariants:
    """Tests for failure semantics"""

    def test_loosening_move_raises(self):
        state = TrailingState(entry_price=100.0, direction=1, current_stop=110.0)

        with pytest.raises(SimulationError):
            state.move_stop(105.0)

    def test_short_loosening_move_raises(self):
        state = TrailingState(entry_price=100.0, direction=-1, current_stop=90.0)

        with pytest.raises(SimulationError):
            state.move_stop(95.0)

    def test_unknown_rule_raises(self):
        state = TrailingState(entry_price=100.0, direction=1)

        with pytest.raises(SimulationError):
            update_trailing_stop(state, object(), 101.0)

    def test_no_trailing_leaves_stop(self):
        state = TrailingState(entry_price=100.0, direction=1, current_stop=90.0)

        assert update_trailing_stop(state, NoTrailing(), 150.0) == pytest.approx(90.0)
        assert state.peak_favorable_excursion == pytest.approx(50.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
