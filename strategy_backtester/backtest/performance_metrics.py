"""
Performance Metrics Calculator for Backtesting.

Derives return, risk and trade statistics from a sealed backtest run. The
calculation reads only the run's trades and equity curve, so recomputing it
from a persisted run reproduces the same numbers.
"""

import logging
import math
import numpy as np
import pandas as pd
from typing import Any, Dict, List

from strategy_backtester.database.backtest_models import BacktestMetrics, BacktestRun, Trade

logger = logging.getLogger(__name__)


class PerformanceMetricsCalculator:
    """
    Calculates performance metrics from backtest results.

    Computes returns, drawdown, Sharpe ratio and trade statistics.
    """

    def __init__(self, periods_per_year: int = 252):
        """
        Initialize metrics calculator.

        Args:
            periods_per_year: Annualization factor for daily equity returns
        """
        self.periods_per_year = periods_per_year

    def calculate_metrics(self, run: BacktestRun) -> BacktestMetrics:
        """
        Calculate all performance metrics for a backtest run.

        Args:
            run: Sealed backtest run

        Returns:
            BacktestMetrics with all calculated metrics
        """
        logger.info(f"Calculating metrics for backtest run {run.run_id}")

        equity_curve = self._equity_frame(run)

        return_metrics = self._calculate_return_metrics(run)
        risk_metrics = self._calculate_risk_metrics(equity_curve, run.initial_capital)
        trade_stats = self._calculate_trade_statistics(list(run.trades))

        metrics = BacktestMetrics(**return_metrics, **risk_metrics, **trade_stats)

        logger.info("Metrics calculation complete")
        return metrics

    @staticmethod
    def _equity_frame(run: BacktestRun) -> pd.Series:
        if not run.equity_curve:
            return pd.Series(dtype=float)
        index = pd.DatetimeIndex([pd.Timestamp(p.timestamp) for p in run.equity_curve])
        return pd.Series([p.equity for p in run.equity_curve], index=index, dtype=float)

    def _calculate_return_metrics(self, run: BacktestRun) -> Dict[str, Any]:
        """Calculate return-based metrics."""
        initial = run.initial_capital
        total_pnl = sum(t.pnl for t in run.trades)
        total_costs = sum(t.transaction_cost for t in run.trades)
        net_pnl = total_pnl - total_costs

        return {
            'total_pnl': round(total_pnl, 2),
            'total_return_pct': round(total_pnl / initial * 100, 2),
            'total_transaction_costs': round(total_costs, 2),
            'net_pnl': round(net_pnl, 2),
            'net_return_pct': round(net_pnl / initial * 100, 2),
            'final_equity': round(run.final_equity, 2),
        }

    def _calculate_risk_metrics(self, equity_curve: pd.Series, initial_capital: float) -> Dict[str, Any]:
        """Calculate drawdown and Sharpe ratio."""
        if equity_curve.empty:
            return {}

        # Maximum drawdown, with the starting capital as the first peak
        running_max = equity_curve.cummax().clip(lower=initial_capital)
        drawdown = (equity_curve - running_max) / running_max * 100
        max_drawdown_pct = min(float(drawdown.min()), 0.0)
        max_drawdown_timestamp = drawdown.idxmin().to_pydatetime() if max_drawdown_pct < 0 else None

        # Sharpe on daily equity returns
        daily_equity = equity_curve.groupby(equity_curve.index.date).last()
        values = np.concatenate([[initial_capital], daily_equity.to_numpy()])
        returns = np.diff(values) / values[:-1]

        sharpe_ratio = None
        if len(returns) > 0:
            std = float(np.std(returns))
            if std > 1e-12:
                sharpe_ratio = round(float(np.mean(returns)) / std * math.sqrt(self.periods_per_year), 2)

        return {
            'max_drawdown_pct': round(max_drawdown_pct, 2),
            'max_drawdown_timestamp': max_drawdown_timestamp,
            'sharpe_ratio': sharpe_ratio,
        }

    def _calculate_trade_statistics(self, trades: List[Trade]) -> Dict[str, Any]:
        """Calculate trade-level statistics."""
        if not trades:
            return {'total_trades': 0}

        pnl = pd.Series([t.pnl for t in trades], dtype=float)
        wins = pnl[pnl > 0]
        losses = pnl[pnl < 0]

        gross_loss = abs(losses.sum())
        profit_factor = round(wins.sum() / gross_loss, 2) if gross_loss > 0 else None

        return {
            'total_trades': len(trades),
            'winning_trades': len(wins),
            'losing_trades': len(losses),
            'win_rate': round(len(wins) / len(trades) * 100, 2),
            'avg_win': round(wins.mean(), 2) if len(wins) > 0 else None,
            'avg_loss': round(losses.mean(), 2) if len(losses) > 0 else None,
            'largest_win': round(wins.max(), 2) if len(wins) > 0 else None,
            'largest_loss': round(losses.min(), 2) if len(losses) > 0 else None,
            'profit_factor': profit_factor,
            'max_consecutive_wins': self._max_consecutive(pnl > 0),
            'max_consecutive_losses': self._max_consecutive(pnl < 0),
        }

    @staticmethod
    def _max_consecutive(series: pd.Series) -> int:
        """Longest run of True values."""
        max_count = 0
        current_count = 0

        for value in series:
            if value:
                current_count += 1
                max_count = max(max_count, current_count)
            else:
                current_count = 0

        return max_count

    def summarize(self, metrics: BacktestMetrics) -> str:
        """One-line summary for logs"""
        sharpe = f"{metrics.sharpe_ratio:.2f}" if metrics.sharpe_ratio is not None else "n/a"
        return (f"{metrics.total_trades} trades, win rate {metrics.win_rate:.1f}%, "
                f"net {metrics.net_pnl:,.2f} ({metrics.net_return_pct:+.2f}%), "
                f"max DD {metrics.max_drawdown_pct:.2f}%, Sharpe {sharpe}")
