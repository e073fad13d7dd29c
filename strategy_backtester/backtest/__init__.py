"""
Backtest Module - Historical strategy testing.

This module provides backtesting for time-based and indicator-based
multi-leg strategies, including:

- Deterministic bar-by-bar simulation
- Transaction cost and slippage modelling
- Performance metrics calculation
- Report generation
- Concurrent execution of independent runs
"""

from strategy_backtester.backtest.backtest_engine import BacktestEngine, resolve_period, to_response
from strategy_backtester.backtest.execution_simulator import (
    ExecutionResult,
    TransactionCostModel
)
from strategy_backtester.backtest.performance_metrics import PerformanceMetricsCalculator
from strategy_backtester.backtest.report_generator import ReportGenerator
from strategy_backtester.backtest.runner import BacktestOutcome, BacktestRequest, BacktestRunner
from strategy_backtester.backtest.simulator import (
    BacktestCancelledError,
    BacktestSimulator,
    CancellationToken
)

__all__ = [
    'BacktestEngine',
    'resolve_period',
    'to_response',
    'ExecutionResult',
    'TransactionCostModel',
    'PerformanceMetricsCalculator',
    'ReportGenerator',
    'BacktestOutcome',
    'BacktestRequest',
    'BacktestRunner',
    'BacktestCancelledError',
    'BacktestSimulator',
    'CancellationToken'
]
