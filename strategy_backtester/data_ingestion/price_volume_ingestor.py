"""
Historical OHLCV bars from yfinance with SQLite caching.
"""

import pandas as pd
import yfinance as yf
from pathlib import Path
from typing import Dict, Optional
from datetime import datetime
import sqlite3
import logging

from strategy_backtester.data_ingestion.historical_data_provider import (
    BAR_COLUMNS,
    DateLike,
    normalize_bars,
    to_timestamp,
)

logger = logging.getLogger(__name__)

# Intervals yfinance serves natively
YFINANCE_INTERVALS = ('1m', '2m', '5m', '15m', '30m', '60m', '90m', '1h', '1d')

# Intervals built by resampling a finer native interval
RESAMPLED_INTERVALS = {
    '3m': ('1m', '3min'),
    '10m': ('5m', '10min'),
}


class PriceVolumeIngestor:
    """Fetch and cache OHLCV data from yfinance, addressed by universal instrument id"""

    def __init__(
        self,
        cache_db_path: str = "data/price_cache.db",
        ticker_map: Optional[Dict[str, str]] = None,
        timezone: str = "Asia/Kolkata",
        use_cache: bool = True,
        allow_download: bool = True
    ):
        """
        Initialize price ingestor with SQLite cache.

        Args:
            cache_db_path: Path to SQLite database for caching
            ticker_map: Universal instrument id -> yfinance ticker
            timezone: Exchange timezone bars are converted to
            use_cache: Whether to read/write the cache
            allow_download: False serves the SQLite cache only
        """
        self.cache_db_path = Path(cache_db_path)
        self.cache_db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ticker_map = {k.lower(): v for k, v in (ticker_map or {}).items()}
        self.timezone = timezone
        self.use_cache = use_cache
        self.allow_download = allow_download
        self._init_cache_db()

    def _init_cache_db(self):
        """Initialize cache database schema"""
        conn = sqlite3.connect(self.cache_db_path)
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS price_data (
                instrument_id TEXT,
                timestamp TEXT,
                interval TEXT,
                open REAL,
                high REAL,
                low REAL,
                close REAL,
                volume REAL,
                fetched_at TEXT,
                PRIMARY KEY (instrument_id, timestamp, interval)
            )
        ''')

        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_instrument_interval
            ON price_data(instrument_id, interval, timestamp)
        ''')

        conn.commit()
        conn.close()

    def ticker_for(self, instrument_id: str) -> str:
        ticker = self.ticker_map.get(instrument_id.lower())
        if ticker is None:
            raise KeyError(f"No yfinance ticker mapped for {instrument_id}")
        return ticker

    def _fetch_from_yfinance(
        self,
        ticker: str,
        interval: str,
        start: pd.Timestamp,
        end: pd.Timestamp
    ) -> pd.DataFrame:
        """
        Fetch data from yfinance.

        Args:
            ticker: yfinance ticker (e.g. '^NSEBANK')
            interval: Native yfinance interval
            start: Window start
            end: Window end

        Returns:
            DataFrame with OHLCV data indexed by timestamp
        """
        df = yf.Ticker(ticker).history(
            start=start.to_pydatetime(),
            end=(end + pd.Timedelta(days=1)).normalize().to_pydatetime(),
            interval=interval,
            auto_adjust=True,
            actions=False
        )

        if df.empty:
            logger.warning(f"No data returned for {ticker}")
            return pd.DataFrame()

        df.columns = df.columns.str.lower()
        df.index.name = 'timestamp'
        return normalize_bars(df, self.timezone)

    def _cache_data(self, instrument_id: str, interval: str, df: pd.DataFrame):
        """Cache data to SQLite"""
        if df.empty:
            return

        fetched_at = datetime.now().isoformat()
        rows = [
            (instrument_id, ts.isoformat(), interval, row.open, row.high, row.low, row.close, row.volume, fetched_at)
            for ts, row in zip(df.index, df.itertuples(index=False))
        ]

        conn = sqlite3.connect(self.cache_db_path)
        with conn:
            conn.executemany('''
                INSERT OR REPLACE INTO price_data
                (instrument_id, timestamp, interval, open, high, low, close, volume, fetched_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', rows)
        conn.close()

    def _get_cached_data(
        self,
        instrument_id: str,
        interval: str,
        start: pd.Timestamp,
        end: pd.Timestamp
    ) -> Optional[pd.DataFrame]:
        """Retrieve cached data from SQLite"""
        conn = sqlite3.connect(self.cache_db_path)

        query = '''
            SELECT timestamp, open, high, low, close, volume
            FROM price_data
            WHERE instrument_id = ? AND interval = ?
            AND timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp
        '''

        df = pd.read_sql_query(
            query,
            conn,
            params=(instrument_id, interval, start.isoformat(), end.isoformat())
        )
        conn.close()

        if df.empty:
            return None

        df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
        return normalize_bars(df, self.timezone)

    def get_bars(self, instrument_id: str, start: DateLike, end: DateLike, interval: str) -> pd.DataFrame:
        """
        Fetch bars for one instrument.

        Args:
            instrument_id: Universal instrument id
            start: Window start
            end: Window end (a bare date covers the whole day)
            interval: Bar interval ('1m', '3m', '5m', '10m', '15m', '30m', '1h', '1d')

        Returns:
            Normalized OHLCV frame (empty when nothing is available)
        """
        instrument_id = instrument_id.lower()
        start_ts = to_timestamp(start, self.timezone)
        end_ts = to_timestamp(end, self.timezone, end_of_day=True)

        if self.use_cache:
            df = self._get_cached_data(instrument_id, interval, start_ts, end_ts)
            if df is not None and not df.empty:
                logger.info(f"Using cached {interval} data for {instrument_id}")
                return df

        if not self.allow_download:
            logger.warning(f"No cached {interval} data for {instrument_id} and downloads are disabled")
            return pd.DataFrame(columns=BAR_COLUMNS)

        ticker = self.ticker_for(instrument_id)
        logger.info(f"Fetching {instrument_id} ({ticker}) {interval} data...")

        if interval in RESAMPLED_INTERVALS:
            native, rule = RESAMPLED_INTERVALS[interval]
            df = self._fetch_from_yfinance(ticker, native, start_ts, end_ts)
            df = resample_bars(df, rule)
        elif interval in YFINANCE_INTERVALS:
            df = self._fetch_from_yfinance(ticker, interval, start_ts, end_ts)
        else:
            raise ValueError(f"Unsupported interval: {interval}")

        if not df.empty:
            df = df.loc[(df.index >= start_ts) & (df.index <= end_ts)]
            if self.use_cache:
                self._cache_data(instrument_id, interval, df)

        return df


def resample_bars(bars: pd.DataFrame, rule: str) -> pd.DataFrame:
    """Aggregate bars to a coarser interval, labelled by bar open time"""
    if bars.empty:
        return bars
    resampled = bars.resample(rule, label='left', closed='left').agg({
        'open': 'first',
        'high': 'max',
        'low': 'min',
        'close': 'last',
        'volume': 'sum',
    })
    return resampled.dropna(subset=['open'])


# Example usage and testing
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    ingestor = PriceVolumeIngestor(ticker_map={'nifty-bank-idx-nse': '^NSEBANK'})
    end = pd.Timestamp.now(tz='Asia/Kolkata').normalize()
    df = ingestor.get_bars('nifty-bank-idx-nse', end - pd.Timedelta(days=5), end, '5m')

    print(f"\nFetched {len(df)} bars")
    print(df.head(10))
