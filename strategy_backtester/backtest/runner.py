"""
Backtest Runner - concurrent execution of independent backtest requests.

Requests run on a fixed-size worker pool (CPU count by default). Each request
gets its own cancellation token; a cancelled or failed request yields no run.
"""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from strategy_backtester.backtest.backtest_engine import BacktestEngine
from strategy_backtester.backtest.simulator import BacktestCancelledError, CancellationToken
from strategy_backtester.database.backtest_models import BacktestRun

logger = logging.getLogger(__name__)


@dataclass
class BacktestRequest:
    request_id: str
    strategy_document: dict
    period: str = '3m'
    initial_capital: Optional[float] = None
    end_date: Optional[str] = None
    broker_id: Optional[str] = None


@dataclass
class BacktestOutcome:
    """Result of one request: a sealed run, or the error that stopped it"""
    request_id: str
    run: Optional[BacktestRun] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.run is not None


@dataclass
class _Submission:
    request: BacktestRequest
    token: CancellationToken = field(default_factory=CancellationToken)
    future: Optional[Future] = None


class BacktestRunner:
    """
    Runs backtest requests on a shared worker pool.

    Example:
        with BacktestRunner(engine) as runner:
            runner.submit(BacktestRequest('a', strategy_a))
            runner.submit(BacktestRequest('b', strategy_b))
            outcomes = runner.wait_all()
    """

    def __init__(self, engine: BacktestEngine, max_workers: Optional[int] = None):
        """
        Args:
            engine: Engine shared by all workers
            max_workers: Pool size (CPU count when None)
        """
        self.engine = engine
        self.max_workers = max_workers or os.cpu_count() or 1
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="backtest")
        self._submissions: Dict[str, _Submission] = {}
        self._lock = threading.Lock()
        logger.info(f"BacktestRunner started with {self.max_workers} workers")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    def submit(self, request: BacktestRequest) -> Future:
        with self._lock:
            if request.request_id in self._submissions:
                raise ValueError(f"Duplicate request id: {request.request_id}")

            submission = _Submission(request=request)
            submission.future = self._executor.submit(self._execute, submission)
            self._submissions[request.request_id] = submission
        return submission.future

    def cancel(self, request_id: str) -> bool:
        """Request cancellation; queued requests never start, running ones stop between bars"""
        with self._lock:
            submission = self._submissions.get(request_id)
        if submission is None:
            return False
        submission.token.cancel()
        submission.future.cancel()
        logger.info(f"Cancellation requested for {request_id}")
        return True

    def _execute(self, submission: _Submission) -> BacktestOutcome:
        request = submission.request
        try:
            run = self.engine.run_backtest(
                request.strategy_document,
                period=request.period,
                initial_capital=request.initial_capital,
                end_date=request.end_date,
                broker_id=request.broker_id,
                cancel_token=submission.token,
                run_id=request.request_id,
            )
            return BacktestOutcome(request_id=request.request_id, run=run)
        except Exception as e:
            logger.error(f"Request {request.request_id} failed: {e}")
            return BacktestOutcome(request_id=request.request_id, error=e)

    def wait_all(self, timeout: Optional[float] = None) -> Dict[str, BacktestOutcome]:
        """
        Collect outcomes of every submitted request.

        Collected requests are forgotten, so a later wait_all only reports
        requests submitted after this one returned.
        """
        outcomes: Dict[str, BacktestOutcome] = {}
        with self._lock:
            submissions = dict(self._submissions)
        pending = {s.future: rid for rid, s in submissions.items()}

        for future in as_completed([f for f in pending if not f.cancelled()], timeout=timeout):
            outcome = future.result()
            outcomes[outcome.request_id] = outcome

        for future, request_id in pending.items():
            if future.cancelled():
                outcomes[request_id] = BacktestOutcome(
                    request_id=request_id, error=BacktestCancelledError(f"Request {request_id} cancelled before start")
                )

        with self._lock:
            for request_id in outcomes:
                if self._submissions.get(request_id) is submissions[request_id]:
                    del self._submissions[request_id]
        return outcomes

    def run_all(self, requests: List[BacktestRequest], timeout: Optional[float] = None) -> Dict[str, BacktestOutcome]:
        for request in requests:
            self.submit(request)
        return self.wait_all(timeout=timeout)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
