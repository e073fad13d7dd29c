"""
Historical bar access with retries and a shared read-only cache.

Providers return OHLCV frames for (instrument, start, end, interval). The
BarCache sits in front of a provider: it retries failed fetches with
exponential backoff, refuses windows the data does not cover, and shares each
loaded series between concurrent backtests.
"""

import logging
import threading
import time
from datetime import date, datetime
from functools import wraps
from typing import Dict, Optional, Protocol, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

BAR_COLUMNS = ['open', 'high', 'low', 'close', 'volume']

DateLike = Union[str, date, datetime, pd.Timestamp]


class DataUnavailableError(Exception):
    """Historical data missing for a requested window after all retries"""

    def __init__(self, instrument_id: str, start, end, reason: str = ""):
        self.instrument_id = instrument_id
        self.start = start
        self.end = end
        message = f"No data for {instrument_id} between {start} and {end}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


def retry_with_backoff(max_retries=3, base_delay=1.0):
    """Decorator for retry logic with exponential backoff"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if attempt == max_retries - 1:
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay}s...")
                    time.sleep(delay)
            return None
        return wrapper
    return decorator


class HistoricalDataProvider(Protocol):
    def get_bars(self, instrument_id: str, start: DateLike, end: DateLike, interval: str) -> pd.DataFrame:
        ...


def to_timestamp(value: DateLike, timezone: str, end_of_day: bool = False) -> pd.Timestamp:
    """Convert a date/datetime to a tz-aware Timestamp in the exchange timezone"""
    ts = pd.Timestamp(value)
    if end_of_day and isinstance(value, (str, date)) and not isinstance(value, datetime) and ts == ts.normalize():
        ts = ts + pd.Timedelta(days=1) - pd.Timedelta(microseconds=1)
    if ts.tzinfo is None:
        return ts.tz_localize(timezone)
    return ts.tz_convert(timezone)


def normalize_bars(bars: pd.DataFrame, timezone: str = "Asia/Kolkata") -> pd.DataFrame:
    """
    Standardize a bar frame: tz-aware DatetimeIndex named 'timestamp' and
    lower-case OHLCV columns.

    Raises:
        ValueError: Missing columns, or timestamps not strictly increasing
    """
    df = bars.copy()
    df.columns = [str(c).lower() for c in df.columns]

    if 'timestamp' in df.columns:
        df = df.set_index('timestamp')
    index = pd.DatetimeIndex(pd.to_datetime(df.index))
    index = index.tz_localize(timezone) if index.tz is None else index.tz_convert(timezone)
    df.index = index
    df.index.name = 'timestamp'

    if 'volume' not in df.columns:
        df['volume'] = 0
    missing = [c for c in BAR_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Bar frame missing columns: {missing}")

    if not df.index.is_monotonic_increasing or df.index.has_duplicates:
        raise ValueError("Bar timestamps must be strictly increasing")

    return df[BAR_COLUMNS].astype(float)


class InMemoryBarProvider:
    """Serves bars from frames held in memory (replays, tests)"""

    def __init__(self, frames: Dict[str, pd.DataFrame], timezone: str = "Asia/Kolkata"):
        self.timezone = timezone
        self._frames = {k.lower(): normalize_bars(v, timezone) for k, v in frames.items()}

    def get_bars(self, instrument_id: str, start: DateLike, end: DateLike, interval: str) -> pd.DataFrame:
        frame = self._frames.get(instrument_id.lower())
        if frame is None:
            return pd.DataFrame(columns=BAR_COLUMNS)
        start_ts = to_timestamp(start, self.timezone)
        end_ts = to_timestamp(end, self.timezone, end_of_day=True)
        return frame.loc[(frame.index >= start_ts) & (frame.index <= end_ts)]


CacheKey = Tuple[str, str, str, str]


class BarCache:
    """
    Shared bar cache keyed by (instrument, start, end, interval).

    Each key is fetched once under its own lock, so a slow or failing fetch
    only holds up callers waiting on the same key. Entries are never modified
    afterwards; callers must treat returned frames as read-only.
    """

    def __init__(
        self,
        provider: HistoricalDataProvider,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_gap_days: int = 5,
        timezone: str = "Asia/Kolkata"
    ):
        """
        Args:
            provider: Underlying data provider
            max_retries: Retries after the first failed attempt
            base_delay: Initial backoff delay in seconds (doubles per retry)
            max_gap_days: Uncovered days tolerated at either end of a window
            timezone: Exchange timezone
        """
        self.provider = provider
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_gap_days = max_gap_days
        self.timezone = timezone
        self._entries: Dict[CacheKey, pd.DataFrame] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[CacheKey, threading.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get_bars(self, instrument_id: str, start: DateLike, end: DateLike, interval: str) -> pd.DataFrame:
        """
        Return bars for a window, fetching on first use.

        Raises:
            DataUnavailableError: Fetch kept failing or the data does not cover the window
        """
        start_ts = to_timestamp(start, self.timezone)
        end_ts = to_timestamp(end, self.timezone, end_of_day=True)
        key = (instrument_id.lower(), start_ts.isoformat(), end_ts.isoformat(), interval)

        cached = self._entries.get(key)
        if cached is not None:
            return cached

        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            cached = self._entries.get(key)
            if cached is not None:
                return cached

            fetch = retry_with_backoff(self.max_retries + 1, self.base_delay)(self._fetch_covered)
            try:
                bars = fetch(instrument_id, start_ts, end_ts, interval)
            except DataUnavailableError:
                raise
            except Exception as e:
                raise DataUnavailableError(instrument_id, start_ts, end_ts, str(e)) from e

            with self._lock:
                self._entries[key] = bars
            logger.info(f"Cached {len(bars)} {interval} bars for {instrument_id} ({start_ts.date()} to {end_ts.date()})")
            return bars

    def _fetch_covered(self, instrument_id: str, start: pd.Timestamp, end: pd.Timestamp, interval: str) -> pd.DataFrame:
        raw = self.provider.get_bars(instrument_id, start, end, interval)
        if raw is None or raw.empty:
            raise _CoverageGap(f"provider returned no bars for {instrument_id} ({start.date()} to {end.date()})")

        bars = normalize_bars(raw, self.timezone)
        max_gap = pd.Timedelta(days=self.max_gap_days)
        first, last = bars.index[0], bars.index[-1]
        if first.normalize() - start.normalize() > max_gap:
            raise _CoverageGap(f"missing {instrument_id} bars from {start.date()} to {first.date()}")
        if end.normalize() - last.normalize() > max_gap:
            raise _CoverageGap(f"missing {instrument_id} bars from {last.date()} to {end.date()}")
        return bars

    def clear(self):
        with self._lock:
            self._entries = {}
            self._key_locks = {}


class _CoverageGap(Exception):
    """Provider answered but did not cover the window; retried like any fetch failure"""
    pass
