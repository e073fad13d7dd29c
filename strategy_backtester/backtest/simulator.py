"""
Backtest Simulator - deterministic bar-by-bar replay of one strategy.

For every step on the merged timeline of all referenced instruments:
1. Entry evaluation for each cycle group
2. Risk update (trailing stops, close rules) via the RiskEngine
3. Transaction costs for legs closed on this step
4. One equity point: initial capital + realized P&L - costs

CE/PE legs of time-based strategies are priced as options written on the
underlying's bars; FUT/EQ legs and indicator-based instruments trade the bars
themselves.

Bars are the only input; the loop reads no clock and draws no random numbers,
so the same strategy and bars always produce the same run.
"""

import logging
import threading
import uuid
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np
import pandas as pd

from strategy_backtester.backtest.execution_simulator import TransactionCostModel
from strategy_backtester.data_ingestion.historical_data_provider import normalize_bars
from strategy_backtester.database.backtest_models import BacktestRun, EquityPoint, Trade
from strategy_backtester.feature_engineering.indicators import FeatureEngineer, compute_entry_signal
from strategy_backtester.instruments.option_pricing import DEFAULT_VOLATILITY, OptionLegSpec
from strategy_backtester.risk.risk_engine import BarQuote, LegRuntime, LegTemplate, RiskEngine
from strategy_backtester.risk.trailing_stop import SimulationError
from strategy_backtester.strategy.strategy_types import (
    IndicatorBasedStrategy,
    OrderLeg,
    Strategy,
    TimeBasedStrategy,
    entry_cutoff,
)

logger = logging.getLogger(__name__)


class BacktestCancelledError(Exception):
    """Run was cancelled between steps; no partial result exists"""
    pass


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running simulation"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _InstrumentSeries:
    """Bars of one instrument aligned to the run timeline"""

    def __init__(self, bars: pd.DataFrame, timeline: pd.DatetimeIndex):
        aligned = bars.reindex(timeline)
        self.has_bar = aligned['close'].notna().to_numpy()
        close = aligned['close'].ffill()
        # Steps without a bar carry the last close as a flat quote
        self.close = close.to_numpy()
        self.open = aligned['open'].fillna(close).to_numpy()
        self.high = aligned['high'].fillna(close).to_numpy()
        self.low = aligned['low'].fillna(close).to_numpy()
        self.entry_signal: Optional[np.ndarray] = None

    def quote(self, i: int) -> Optional[BarQuote]:
        if np.isnan(self.close[i]):
            return None
        return BarQuote(open=self.open[i], high=self.high[i], low=self.low[i], close=self.close[i])


class BacktestSimulator:
    """
    Replays a validated strategy over historical bars.

    One simulator can run many backtests; all per-run state lives inside run().
    """

    def __init__(
        self,
        cost_model: Optional[TransactionCostModel] = None,
        price_reference: Literal['close', 'intrabar'] = 'close',
        timezone: str = "Asia/Kolkata",
        symbols: Optional[Dict[str, str]] = None,
        option_volatility: float = DEFAULT_VOLATILITY
    ):
        """
        Initialize simulator.

        Args:
            cost_model: Slippage and transaction cost model
            price_reference: 'close' or 'intrabar' evaluation of stops and targets
            timezone: Exchange timezone for time-of-day and weekday rules
            symbols: instrument_id -> display symbol for trades
            option_volatility: Annualized volatility for pricing CE/PE legs
        """
        self.cost_model = cost_model or TransactionCostModel()
        self.price_reference = price_reference
        self.timezone = timezone
        self.symbols = symbols or {}
        self.option_volatility = option_volatility
        self.feature_engineer = FeatureEngineer()

    def run(
        self,
        strategy: Strategy,
        bars: Dict[str, pd.DataFrame],
        initial_capital: float,
        period: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None
    ) -> BacktestRun:
        """
        Simulate a strategy.

        Args:
            strategy: Normalized strategy (output of StrategyValidator)
            bars: instrument_id -> chronologically ordered OHLCV frame
            initial_capital: Starting capital
            period: Requested period label, recorded on the run
            cancel_token: Checked between steps
            run_id: Identifier for the sealed run (generated when omitted)

        Returns:
            Sealed BacktestRun (without metrics)

        Raises:
            SimulationError: Invariant violation or malformed bar input
            BacktestCancelledError: Cancelled before completion
        """
        if initial_capital <= 0:
            raise SimulationError(f"initial_capital must be positive, got {initial_capital}")

        frames = self._prepare_frames(strategy, bars)
        timeline = frames[0][1].index
        for _, frame in frames[1:]:
            timeline = timeline.union(frame.index)
        if len(timeline) == 0:
            raise SimulationError(f"No bars to simulate for strategy '{strategy.name}'")

        series = {inst: _InstrumentSeries(frame, timeline) for inst, frame in frames}
        groups = self._build_groups(strategy)
        if isinstance(strategy, IndicatorBasedStrategy):
            for inst, frame in frames:
                signal = compute_entry_signal(frame, strategy.entry_conditions, strategy.chart_type, self.feature_engineer)
                series[inst].entry_signal = signal.reindex(timeline, fill_value=False).to_numpy(dtype=bool)

        local_dates = timeline.date
        local_times = timeline.time
        weekdays = timeline.weekday
        session_end = np.append(local_dates[1:] != local_dates[:-1], True)
        timestamps = timeline.to_pydatetime()

        cutoff = entry_cutoff(strategy)
        engine = RiskEngine(strategy.risk, self.price_reference)
        realized_pnl = 0.0
        total_costs = 0.0
        trades: List[Trade] = []
        equity_curve: List[EquityPoint] = []

        logger.info(f"Simulating '{strategy.name}' over {len(timeline)} steps "
                    f"({timeline[0]} to {timeline[-1]})")

        for i in range(len(timeline)):
            if cancel_token is not None and cancel_token.cancelled:
                logger.warning(f"Backtest of '{strategy.name}' cancelled at step {i}")
                raise BacktestCancelledError(f"Backtest of '{strategy.name}' cancelled")

            timestamp = timestamps[i]
            bar_time = local_times[i]
            engine.start_session(local_dates[i])

            quotes = {}
            for inst, s in series.items():
                quote = s.quote(i)
                if quote is not None:
                    quotes[inst] = quote

            # 1. Entries
            in_window = (
                strategy.trading_days[weekdays[i]]
                and strategy.start_time <= bar_time < cutoff
                and not session_end[i]
            )
            if in_window:
                for group_id, templates in groups:
                    if not engine.can_enter(group_id):
                        continue
                    if not all(series[t.instrument_id].has_bar[i] for t in templates):
                        continue
                    signal = series[templates[0].instrument_id].entry_signal
                    if signal is not None and not signal[i]:
                        continue
                    engine.enter_group(templates, quotes, timestamp)

            # 2. Risk update
            time_exit = bar_time >= cutoff or bool(session_end[i])
            exits = engine.update_bar(quotes, timestamp, time_exit=time_exit)

            # 3. Costs
            for intent in exits:
                trade = self._build_trade(engine.find_leg(intent.leg_id, intent.cycle))
                realized_pnl += trade.pnl
                total_costs += trade.transaction_cost
                trades.append(trade)

            # 4. Equity
            equity_curve.append(EquityPoint(timestamp=timestamp, equity=initial_capital + realized_pnl - total_costs))

        if engine.open_legs():
            raise SimulationError(f"{len(engine.open_legs())} leg(s) still open after the final bar")

        run = BacktestRun(
            run_id=run_id or uuid.uuid4().hex,
            strategy_ref=strategy.name,
            strategy_type='time_based' if isinstance(strategy, TimeBasedStrategy) else 'indicator_based',
            period=period,
            start=timestamps[0],
            end=timestamps[-1],
            initial_capital=initial_capital,
            trades=tuple(trades),
            equity_curve=tuple(equity_curve),
        )

        logger.info(f"Simulation of '{strategy.name}' complete: {len(trades)} trades, "
                    f"final equity {run.final_equity:,.2f}")
        return run

    def _prepare_frames(self, strategy: Strategy, bars: Dict[str, pd.DataFrame]) -> List[Tuple[str, pd.DataFrame]]:
        lowered = {k.lower(): v for k, v in bars.items()}
        frames = []
        for instrument_id in strategy.instrument_ids:
            frame = lowered.get(instrument_id)
            if frame is None:
                raise SimulationError(f"No bars supplied for {instrument_id}")
            try:
                frames.append((instrument_id, normalize_bars(frame, self.timezone)))
            except ValueError as e:
                raise SimulationError(f"Bad bar series for {instrument_id}: {e}") from e
        return frames

    def _build_groups(self, strategy: Strategy) -> List[Tuple[str, Tuple[LegTemplate, ...]]]:
        """Cycle groups: all legs together for time-based, one per instrument for indicator-based"""
        if isinstance(strategy, TimeBasedStrategy):
            templates = tuple(
                LegTemplate(
                    leg_id=leg.leg_id,
                    group_id='legs',
                    instrument_id=leg.instrument_id,
                    side=leg.action,
                    quantity=leg.quantity,
                    stop_loss=leg.stop_loss,
                    take_profit=leg.take_profit,
                    option=self._option_spec(leg),
                )
                for leg in strategy.legs
            )
            return [('legs', templates)]

        if isinstance(strategy, IndicatorBasedStrategy):
            return [
                (inst.instrument_id, (LegTemplate(
                    leg_id=inst.instrument_id,
                    group_id=inst.instrument_id,
                    instrument_id=inst.instrument_id,
                    side=strategy.side,
                    quantity=inst.quantity,
                    stop_loss=strategy.stop_loss,
                    take_profit=strategy.take_profit,
                ),))
                for inst in strategy.instruments
            ]

        raise SimulationError(f"Unknown strategy type: {type(strategy).__name__}")

    def _option_spec(self, leg: OrderLeg) -> Optional[OptionLegSpec]:
        if not leg.is_option:
            return None
        try:
            return OptionLegSpec.for_underlying(
                leg.instrument_id, leg.instrument_type, leg.strike_selection, leg.expiry, self.option_volatility
            )
        except ValueError as e:
            raise SimulationError(f"Option leg {leg.leg_id} cannot be priced: {e}") from e

    def _build_trade(self, leg: LegRuntime) -> Trade:
        template = leg.template
        execution = self.cost_model.execute_round_trip(
            template.side, leg.entry_price, leg.exit_price, template.quantity
        )
        pnl = template.side.direction * (execution.exit_fill - execution.entry_fill) * template.quantity

        return Trade(
            symbol=leg.contract_symbol or self.symbols.get(template.instrument_id, template.instrument_id.upper()),
            instrument_id=template.instrument_id,
            leg_id=template.leg_id,
            cycle=leg.cycle,
            side=template.side,
            entry_price=execution.entry_fill,
            exit_price=execution.exit_fill,
            quantity=template.quantity,
            pnl=pnl,
            transaction_cost=execution.transaction_cost,
            exit_reason=leg.exit_reason,
            entry_timestamp=leg.entry_timestamp,
            exit_timestamp=leg.exit_timestamp,
        )
