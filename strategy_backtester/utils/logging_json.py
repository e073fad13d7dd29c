"""
JSON logging utilities for backtest runs and trades.

Completed runs, their trades and failures are logged in structured JSON format
for analysis and debugging.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from strategy_backtester.database.backtest_models import BacktestRun, Trade

logger = logging.getLogger(__name__)


class JSONLogger:
    """
    Structured JSON logging for backtest outcomes.

    Writes newline-delimited JSON (JSONL) format for easy parsing and analysis.
    """

    def __init__(self, log_path: str = "logs/backtest_log.jsonl"):
        """
        Initialize JSON logger.

        Args:
            log_path: Path to JSONL log file
        """
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"JSONLogger initialized: {self.log_path}")

    def _write_entry(self, entry: Dict[str, Any]):
        """Write a single JSON entry to log file"""
        with open(self.log_path, 'a') as f:
            json.dump(entry, f, default=str)
            f.write('\n')

    def log_trade(self, run_id: str, trade: Trade):
        """
        Log one closed trade.

        Args:
            run_id: Run the trade belongs to
            trade: Closed trade
        """
        entry = {'type': 'trade', 'run_id': run_id}
        entry.update(trade.model_dump(mode='json'))
        self._write_entry(entry)

    def log_run_summary(self, run: BacktestRun):
        """
        Log run-level results.

        Args:
            run: Sealed backtest run
        """
        entry = {
            'type': 'run_summary',
            'run_id': run.run_id,
            'timestamp': datetime.now().isoformat(),
            'strategy': run.strategy_ref,
            'strategy_type': run.strategy_type,
            'period': run.period,
            'start': run.start.isoformat() if run.start else None,
            'end': run.end.isoformat() if run.end else None,
            'initial_capital': run.initial_capital,
            'final_equity': run.final_equity,
            'metrics': run.metrics.model_dump(mode='json') if run.metrics else None,
        }

        self._write_entry(entry)
        logger.info(f"Logged run summary for {run.strategy_ref} (run_id: {run.run_id})")

    def log_run(self, run: BacktestRun):
        """Log every trade of a run followed by its summary"""
        for trade in run.trades:
            self.log_trade(run.run_id, trade)
        self.log_run_summary(run)

    def log_error(
        self,
        component: str,
        error_type: str,
        error_message: str,
        context: Optional[Dict] = None
    ):
        """
        Log errors and exceptions.

        Args:
            component: Component where error occurred
            error_type: Error type/class
            error_message: Error message
            context: Additional context
        """
        entry = {
            'type': 'error',
            'timestamp': datetime.now().isoformat(),
            'component': component,
            'error_type': error_type,
            'error_message': error_message,
            'context': context or {}
        }

        self._write_entry(entry)
        logger.error(f"Logged error in {component}: {error_message}")

    def read_logs(self, entry_type: str = None, limit: int = 100) -> list:
        """
        Read log entries from file.

        Args:
            entry_type: Filter by entry type (trade/run_summary/error)
            limit: Maximum entries to return

        Returns:
            List of log entries
        """
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, 'r') as f:
            for line in f:
                if not line.strip():
                    continue

                try:
                    entry = json.loads(line)

                    if entry_type is None or entry.get('type') == entry_type:
                        entries.append(entry)

                        if len(entries) >= limit:
                            break

                except json.JSONDecodeError:
                    logger.warning(f"Failed to parse log line: {line[:100]}")

        return entries
