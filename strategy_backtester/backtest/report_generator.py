"""
Backtest Report Generator.

Generates markdown reports from sealed backtest runs.
"""

import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Optional

from strategy_backtester.database.backtest_models import BacktestMetrics, BacktestRun
from strategy_backtester.backtest.performance_metrics import PerformanceMetricsCalculator

logger = logging.getLogger(__name__)


def _money(value: Optional[float]) -> str:
    return f"₹{value:,.2f}" if value is not None else "N/A"


class ReportGenerator:
    """
    Generates markdown reports from backtest results.
    """

    def __init__(self, metrics_calculator: Optional[PerformanceMetricsCalculator] = None, max_trade_rows: int = 100):
        """
        Initialize report generator.

        Args:
            metrics_calculator: Used when the run carries no metrics yet
            max_trade_rows: Trades listed in the trade log
        """
        self.metrics_calculator = metrics_calculator or PerformanceMetricsCalculator()
        self.max_trade_rows = max_trade_rows

    def render(self, run: BacktestRun) -> str:
        """Build the report text for a run"""
        metrics = run.metrics or self.metrics_calculator.calculate_metrics(run)

        report_parts = [
            self._generate_header(run),
            self._generate_summary(run, metrics),
            self._generate_performance_metrics(metrics),
            self._generate_trade_statistics(run, metrics),
            self._generate_equity_curve_data(run),
            self._generate_trade_log(run),
            self._generate_footer(),
        ]
        return "\n\n".join(report_parts)

    def generate_report(self, run: BacktestRun, output_path: str = "BACKTEST_REPORT.md") -> str:
        """
        Generate complete backtest report.

        Args:
            run: Sealed backtest run
            output_path: Where to save the report

        Returns:
            Path of the written report
        """
        logger.info(f"Generating report for backtest run {run.run_id}")

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            f.write(self.render(run))

        logger.info(f"Report generated: {path}")
        return str(path)

    def _generate_header(self, run: BacktestRun) -> str:
        period = f" ({run.period})" if run.period else ""
        start = run.start.strftime('%Y-%m-%d %H:%M') if run.start else "N/A"
        end = run.end.strftime('%Y-%m-%d %H:%M') if run.end else "N/A"

        return f"""# Backtest Results: {run.strategy_ref}

**Strategy Type:** {run.strategy_type}
**Test Period:** {start} to {end}{period}
**Run ID:** `{run.run_id}`
**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}

---"""

    def _generate_summary(self, run: BacktestRun, metrics: BacktestMetrics) -> str:
        return f"""## Executive Summary

- **Initial Capital:** {_money(run.initial_capital)}
- **Final Equity:** {_money(metrics.final_equity)}
- **Net P&L:** {_money(metrics.net_pnl)} ({metrics.net_return_pct:+.2f}%)
- **Total Trades:** {metrics.total_trades}
- **Win Rate:** {metrics.win_rate:.1f}% ({metrics.winning_trades}W / {metrics.losing_trades}L)"""

    def _generate_performance_metrics(self, metrics: BacktestMetrics) -> str:
        sharpe = f"{metrics.sharpe_ratio:.2f}" if metrics.sharpe_ratio is not None else "N/A"
        dd_at = metrics.max_drawdown_timestamp.strftime('%Y-%m-%d %H:%M') if metrics.max_drawdown_timestamp else "N/A"

        return f"""## Performance Metrics

| Metric | Value |
|--------|-------|
| Gross P&L | {_money(metrics.total_pnl)} |
| Gross Return | {metrics.total_return_pct:.2f}% |
| Transaction Costs | {_money(metrics.total_transaction_costs)} |
| Net Return | {metrics.net_return_pct:.2f}% |
| Max Drawdown | {metrics.max_drawdown_pct:.2f}% (at {dd_at}) |
| Sharpe Ratio | {sharpe} |"""

    def _generate_trade_statistics(self, run: BacktestRun, metrics: BacktestMetrics) -> str:
        if metrics.total_trades == 0:
            return "## Trade Statistics\n\nNo trades were executed."

        profit_factor = f"{metrics.profit_factor:.2f}" if metrics.profit_factor is not None else "N/A"
        lines = [
            "## Trade Statistics",
            "",
            f"- **Average Win:** {_money(metrics.avg_win)}",
            f"- **Average Loss:** {_money(metrics.avg_loss)}",
            f"- **Largest Win:** {_money(metrics.largest_win)}",
            f"- **Largest Loss:** {_money(metrics.largest_loss)}",
            f"- **Profit Factor:** {profit_factor}",
            f"- **Longest Winning Streak:** {metrics.max_consecutive_wins}",
            f"- **Longest Losing Streak:** {metrics.max_consecutive_losses}",
            "",
            "### Exit Reasons",
            "",
            "| Reason | Trades |",
            "|--------|--------|",
        ]
        reasons = Counter(t.exit_reason.value for t in run.trades)
        for reason, count in sorted(reasons.items()):
            lines.append(f"| {reason} | {count} |")
        return "\n".join(lines)

    def _generate_equity_curve_data(self, run: BacktestRun) -> str:
        if not run.equity_curve:
            return "## Equity Curve\n\nNo equity data."

        # End-of-day equity
        daily = {}
        for point in run.equity_curve:
            daily[point.timestamp.date()] = point.equity

        lines = ["## Equity Curve (end of day)", "", "| Date | Equity |", "|------|--------|"]
        for day, equity in daily.items():
            lines.append(f"| {day} | {_money(equity)} |")
        return "\n".join(lines)

    def _generate_trade_log(self, run: BacktestRun) -> str:
        if not run.trades:
            return "## Trade Log\n\nNo trades."

        lines = [
            "## Trade Log",
            "",
            "| # | Leg | Symbol | Side | Qty | Entry | Exit | P&L | Costs | Reason | Entry Time | Exit Time |",
            "|---|-----|--------|------|-----|-------|------|-----|-------|--------|------------|-----------|",
        ]
        for i, t in enumerate(run.trades[:self.max_trade_rows], start=1):
            lines.append(
                f"| {i} | {t.leg_id} (c{t.cycle}) | {t.symbol} | {t.side.value} | {t.quantity} | "
                f"{t.entry_price:.2f} | {t.exit_price:.2f} | {t.pnl:,.2f} | {t.transaction_cost:,.2f} | "
                f"{t.exit_reason.value} | {t.entry_timestamp:%Y-%m-%d %H:%M} | {t.exit_timestamp:%Y-%m-%d %H:%M} |"
            )
        if len(run.trades) > self.max_trade_rows:
            lines.append(f"\n_{len(run.trades) - self.max_trade_rows} more trades not shown._")
        return "\n".join(lines)

    def _generate_footer(self) -> str:
        return "---\n\n*Report generated by strategy_backtester*"
