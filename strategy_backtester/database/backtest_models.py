"""
Backtest result models and SQLite persistence.

A BacktestRun is sealed (immutable) before anyone outside the simulator sees
it. Only sealed runs are persisted, each in a single transaction, so a failed
or cancelled run never leaves partial rows behind.
"""

import json
import sqlite3
import logging
from datetime import datetime
from typing import Optional, Literal, List, Tuple
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from strategy_backtester.risk.risk_engine import ExitReason
from strategy_backtester.strategy.strategy_types import Side

logger = logging.getLogger(__name__)


class Trade(BaseModel):
    """One closed leg. pnl is raw, before transaction costs."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    instrument_id: str
    leg_id: str
    cycle: int = Field(..., ge=1, description="Trade cycle of the leg within its day")
    side: Side
    entry_price: float
    exit_price: float
    quantity: int = Field(..., gt=0)
    pnl: float
    transaction_cost: float = Field(default=0.0, ge=0)
    exit_reason: ExitReason
    entry_timestamp: datetime
    exit_timestamp: datetime

    @property
    def net_pnl(self) -> float:
        return self.pnl - self.transaction_cost


class EquityPoint(BaseModel):
    """Equity after one bar step."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    equity: float


class BacktestMetrics(BaseModel):
    """Performance metrics derived from a sealed run."""
    model_config = ConfigDict(frozen=True)

    # Return metrics
    total_pnl: float = 0.0
    total_return_pct: float = 0.0
    total_transaction_costs: float = 0.0
    net_pnl: float = 0.0
    net_return_pct: float = 0.0
    final_equity: float = 0.0

    # Trade statistics
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = Field(default=0.0, ge=0, le=100)
    avg_win: Optional[float] = None
    avg_loss: Optional[float] = None
    largest_win: Optional[float] = None
    largest_loss: Optional[float] = None
    profit_factor: Optional[float] = None
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0

    # Risk metrics
    max_drawdown_pct: float = Field(default=0.0, le=0)
    max_drawdown_timestamp: Optional[datetime] = None
    sharpe_ratio: Optional[float] = None


class BacktestRun(BaseModel):
    """Sealed result of one simulation."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    strategy_ref: str = Field(..., description="Strategy name")
    strategy_type: Literal['time_based', 'indicator_based']
    period: Optional[str] = Field(None, description="Requested period (1m, 3m, 6m, 1y)")
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    initial_capital: float = Field(..., gt=0)
    trades: Tuple[Trade, ...] = ()
    equity_curve: Tuple[EquityPoint, ...] = ()
    metrics: Optional[BacktestMetrics] = None
    status: Literal['completed'] = 'completed'
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def total_pnl(self) -> float:
        return sum(t.pnl for t in self.trades)

    @property
    def total_transaction_costs(self) -> float:
        return sum(t.transaction_cost for t in self.trades)

    @property
    def final_equity(self) -> float:
        if self.equity_curve:
            return self.equity_curve[-1].equity
        return self.initial_capital

    def with_metrics(self, metrics: BacktestMetrics) -> "BacktestRun":
        return self.model_copy(update={'metrics': metrics})


SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS backtest_runs (
        run_id TEXT PRIMARY KEY,
        strategy_ref TEXT NOT NULL,
        strategy_type TEXT NOT NULL,
        period TEXT,
        start_ts TEXT,
        end_ts TEXT,
        initial_capital REAL NOT NULL,
        final_equity REAL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        metrics_json TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS backtest_trades (
        run_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        symbol TEXT,
        instrument_id TEXT,
        leg_id TEXT,
        cycle INTEGER,
        side TEXT,
        entry_price REAL,
        exit_price REAL,
        quantity INTEGER,
        pnl REAL,
        transaction_cost REAL,
        exit_reason TEXT,
        entry_timestamp TEXT,
        exit_timestamp TEXT,
        PRIMARY KEY (run_id, seq),
        FOREIGN KEY (run_id) REFERENCES backtest_runs(run_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS backtest_equity (
        run_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        equity REAL NOT NULL,
        PRIMARY KEY (run_id, seq),
        FOREIGN KEY (run_id) REFERENCES backtest_runs(run_id)
    )
    ''',
]


def init_backtest_db(db_path: str) -> None:
    """
    Initialize backtest database with required schema.

    Args:
        db_path: Path to SQLite database file
    """
    db_file = Path(db_path)
    db_file.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
        logger.info(f"Backtest database initialized: {db_path}")
    finally:
        conn.close()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BacktestDatabase:
    """
    Helper class for persisting sealed backtest runs.
    """

    def __init__(self, db_path: str):
        """
        Initialize database helper.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = db_path
        init_backtest_db(db_path)

    def save_run(self, run: BacktestRun) -> str:
        """
        Persist a sealed run with its trades, equity curve and metrics.

        Everything is written in one transaction; on any error nothing is kept.

        Returns:
            The run id
        """
        if run.status != 'completed':
            raise ValueError(f"Only sealed runs can be persisted (status={run.status})")

        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    '''
                    INSERT INTO backtest_runs
                    (run_id, strategy_ref, strategy_type, period, start_ts, end_ts, initial_capital,
                     final_equity, status, created_at, metrics_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (
                        run.run_id, run.strategy_ref, run.strategy_type, run.period,
                        _iso(run.start), _iso(run.end), run.initial_capital, run.final_equity,
                        run.status, run.created_at.isoformat(),
                        run.metrics.model_dump_json() if run.metrics else None,
                    )
                )
                conn.executemany(
                    '''
                    INSERT INTO backtest_trades
                    (run_id, seq, symbol, instrument_id, leg_id, cycle, side, entry_price, exit_price,
                     quantity, pnl, transaction_cost, exit_reason, entry_timestamp, exit_timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    [
                        (
                            run.run_id, seq, t.symbol, t.instrument_id, t.leg_id, t.cycle, t.side.value,
                            t.entry_price, t.exit_price, t.quantity, t.pnl, t.transaction_cost,
                            t.exit_reason.value, t.entry_timestamp.isoformat(), t.exit_timestamp.isoformat(),
                        )
                        for seq, t in enumerate(run.trades)
                    ]
                )
                conn.executemany(
                    'INSERT INTO backtest_equity (run_id, seq, timestamp, equity) VALUES (?, ?, ?, ?)',
                    [(run.run_id, seq, p.timestamp.isoformat(), p.equity) for seq, p in enumerate(run.equity_curve)]
                )
        finally:
            conn.close()

        logger.info(f"Saved backtest run {run.run_id}: {len(run.trades)} trades, {len(run.equity_curve)} equity points")
        return run.run_id

    def load_run(self, run_id: str) -> Optional[BacktestRun]:
        """Reconstruct a persisted run, or None if unknown"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            row = conn.execute('SELECT * FROM backtest_runs WHERE run_id = ?', (run_id,)).fetchone()
            if row is None:
                return None
            trade_rows = conn.execute(
                'SELECT * FROM backtest_trades WHERE run_id = ? ORDER BY seq', (run_id,)
            ).fetchall()
            equity_rows = conn.execute(
                'SELECT timestamp, equity FROM backtest_equity WHERE run_id = ? ORDER BY seq', (run_id,)
            ).fetchall()
        finally:
            conn.close()

        trades = tuple(
            Trade(
                symbol=r['symbol'], instrument_id=r['instrument_id'], leg_id=r['leg_id'], cycle=r['cycle'],
                side=Side(r['side']), entry_price=r['entry_price'], exit_price=r['exit_price'],
                quantity=r['quantity'], pnl=r['pnl'], transaction_cost=r['transaction_cost'],
                exit_reason=ExitReason(r['exit_reason']),
                entry_timestamp=_parse(r['entry_timestamp']), exit_timestamp=_parse(r['exit_timestamp']),
            )
            for r in trade_rows
        )
        equity_curve = tuple(EquityPoint(timestamp=_parse(r['timestamp']), equity=r['equity']) for r in equity_rows)
        metrics = BacktestMetrics(**json.loads(row['metrics_json'])) if row['metrics_json'] else None

        return BacktestRun(
            run_id=row['run_id'],
            strategy_ref=row['strategy_ref'],
            strategy_type=row['strategy_type'],
            period=row['period'],
            start=_parse(row['start_ts']),
            end=_parse(row['end_ts']),
            initial_capital=row['initial_capital'],
            trades=trades,
            equity_curve=equity_curve,
            metrics=metrics,
            status=row['status'],
            created_at=_parse(row['created_at']),
        )

    def list_runs(self, strategy_ref: Optional[str] = None) -> List[dict]:
        """Summaries of persisted runs, newest first"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            query = 'SELECT run_id, strategy_ref, period, start_ts, end_ts, initial_capital, final_equity, created_at FROM backtest_runs'
            params: tuple = ()
            if strategy_ref is not None:
                query += ' WHERE strategy_ref = ?'
                params = (strategy_ref,)
            query += ' ORDER BY created_at DESC'
            return [dict(r) for r in conn.execute(query, params).fetchall()]
        finally:
            conn.close()
