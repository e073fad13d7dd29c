"""
Backtest Engine - Orchestrates one backtest request end to end.

validate strategy -> resolve period -> load bars (cached, retried)
-> simulate -> compute metrics -> seal -> persist -> log
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Optional, Union

import pandas as pd

from strategy_backtester.backtest.execution_simulator import TransactionCostModel
from strategy_backtester.backtest.performance_metrics import PerformanceMetricsCalculator
from strategy_backtester.backtest.simulator import BacktestSimulator, CancellationToken
from strategy_backtester.config.config_schema import Config
from strategy_backtester.data_ingestion.historical_data_provider import BarCache, HistoricalDataProvider
from strategy_backtester.data_ingestion.price_volume_ingestor import PriceVolumeIngestor
from strategy_backtester.database.backtest_models import BacktestDatabase, BacktestRun
from strategy_backtester.instruments.instrument_resolver import InstrumentResolver
from strategy_backtester.strategy.strategy_models import StrategyDocument
from strategy_backtester.strategy.strategy_validator import StrategyValidator
from strategy_backtester.utils.logging_json import JSONLogger

logger = logging.getLogger(__name__)

PERIODS = {
    '1m': pd.DateOffset(months=1),
    '3m': pd.DateOffset(months=3),
    '6m': pd.DateOffset(months=6),
    '1y': pd.DateOffset(years=1),
}


def resolve_period(period: str, end: Union[str, date, datetime, None] = None) -> tuple:
    """
    Turn a period label into a (start_date, end_date) window ending at end.

    Raises:
        ValueError: Unknown period label
    """
    if period not in PERIODS:
        raise ValueError(f"Unknown period '{period}'. Expected one of {sorted(PERIODS)}")
    end_ts = pd.Timestamp(end) if end is not None else pd.Timestamp(date.today())
    start_ts = end_ts - PERIODS[period]
    return start_ts.date(), end_ts.date()


class BacktestEngine:
    """
    Historical backtesting engine.

    Wires the validator, bar cache, simulator, metrics calculator and
    database together for single requests. Safe to share between worker
    threads: per-run state lives in the simulator call.
    """

    def __init__(
        self,
        config: Config,
        resolver: InstrumentResolver,
        provider: Optional[HistoricalDataProvider] = None,
        database: Optional[BacktestDatabase] = None,
        json_logger: Optional[JSONLogger] = None,
        bar_cache: Optional[BarCache] = None
    ):
        """
        Initialize backtest engine.

        Args:
            config: Root configuration
            resolver: Instrument resolver with the current mapping table
            provider: Historical data provider (yfinance ingestor when omitted)
            database: Where sealed runs are persisted (None: not persisted)
            json_logger: Structured run/trade log (optional)
            bar_cache: Shared cache; built around provider when omitted
        """
        self.config = config
        self.resolver = resolver
        self.database = database
        self.json_logger = json_logger

        if bar_cache is None:
            if provider is None:
                provider = PriceVolumeIngestor(
                    cache_db_path=config.data.cache_db_path,
                    ticker_map=config.data.ticker_map,
                    timezone=config.simulation.timezone,
                    allow_download=config.data.provider == "yfinance",
                )
            bar_cache = BarCache(
                provider,
                max_retries=config.data.max_retries,
                base_delay=config.data.base_delay_seconds,
                max_gap_days=config.data.max_gap_days,
                timezone=config.simulation.timezone,
            )
        self.bar_cache = bar_cache

        self.cost_model = TransactionCostModel(config.costs)
        self.metrics_calculator = PerformanceMetricsCalculator(config.simulation.periods_per_year)

        logger.info("BacktestEngine initialized")
        logger.info(f"  Price reference: {config.simulation.price_reference}, timezone: {config.simulation.timezone}")

    def run_backtest(
        self,
        strategy_document: Union[dict, StrategyDocument],
        period: str = '3m',
        initial_capital: Optional[float] = None,
        end_date: Union[str, date, datetime, None] = None,
        broker_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None
    ) -> BacktestRun:
        """
        Run a backtest request.

        Args:
            strategy_document: Strategy as submitted (dict or parsed document)
            period: '1m', '3m', '6m' or '1y'
            initial_capital: Starting capital (config default when omitted)
            end_date: Last day of the window (today when omitted)
            broker_id: Broker the strategy targets (config default when omitted)
            cancel_token: Cooperative cancellation
            run_id: Identifier for the run

        Returns:
            Sealed BacktestRun with metrics

        Raises:
            StrategyValidationError: Strategy rejected
            DataUnavailableError: Bars missing after retries
            SimulationError: Invariant violated during the replay
            BacktestCancelledError: Cancelled before completion
        """
        broker_id = broker_id or self.config.brokers.default_broker
        if broker_id not in self.config.brokers.supported:
            raise ValueError(f"Unsupported broker '{broker_id}'. Supported: {self.config.brokers.supported}")
        initial_capital = initial_capital or self.config.simulation.default_initial_capital

        logger.info("=" * 80)
        logger.info(f"BACKTEST REQUEST: period={period}, capital={initial_capital:,.2f}, broker={broker_id}")
        logger.info("=" * 80)

        try:
            validator = StrategyValidator(self.resolver, broker_id)
            strategy = validator.validate(strategy_document).raise_for_errors()

            start, end = resolve_period(period, end_date)
            bars = {
                instrument_id: self.bar_cache.get_bars(instrument_id, start, end, strategy.interval)
                for instrument_id in strategy.instrument_ids
            }

            simulator = BacktestSimulator(
                cost_model=self.cost_model,
                price_reference=self.config.simulation.price_reference,
                timezone=self.config.simulation.timezone,
                symbols=self._symbols(strategy.instrument_ids),
                option_volatility=self.config.simulation.option_volatility,
            )
            run = simulator.run(
                strategy, bars, initial_capital,
                period=period, cancel_token=cancel_token, run_id=run_id,
            )
            run = run.with_metrics(self.metrics_calculator.calculate_metrics(run))

        except Exception as e:
            logger.error(f"Backtest failed: {e}", exc_info=True)
            if self.json_logger is not None:
                self.json_logger.log_error('backtest_engine', type(e).__name__, str(e), {'run_id': run_id, 'period': period})
            raise

        if self.database is not None:
            self.database.save_run(run)
        if self.json_logger is not None:
            self.json_logger.log_run(run)

        logger.info(f"Backtest complete: {self.metrics_calculator.summarize(run.metrics)}")
        return run

    def _symbols(self, instrument_ids) -> Dict[str, str]:
        symbols = {}
        for instrument_id in instrument_ids:
            instrument = self.resolver.get_instrument(instrument_id)
            if instrument is not None:
                symbols[instrument_id] = instrument.symbol
        return symbols


def to_response(run: BacktestRun) -> Dict[str, Any]:
    """Backtest response body: trades, equity curve and metrics"""
    return {
        'run_id': run.run_id,
        'strategy': run.strategy_ref,
        'period': run.period,
        'initial_capital': run.initial_capital,
        'trades': [t.model_dump(mode='json') for t in run.trades],
        'equity_curve': [p.model_dump(mode='json') for p in run.equity_curve],
        'metrics': run.metrics.model_dump(mode='json') if run.metrics else None,
    }
