"""
Technical indicators and entry-condition evaluation.

Indicators are computed once per instrument over the whole bar frame using
trailing windows only, so the value at bar t never depends on bars after t.
"""

import logging
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Canonical indicator name -> default period (None: no period)
INDICATOR_DEFAULT_PERIODS: Dict[str, Optional[int]] = {
    'Price': None,
    'Candle': None,
    'Number': None,
    'Volume': None,
    'VWAP': None,
    'MACD': None,
    'MACD-Signal': None,
    'Moving Average': 20,
    'EMA': 20,
    'RSI': 14,
    'Bollinger Bands': 20,
    'Bollinger Upper': 20,
    'Bollinger Lower': 20,
    'ATR': 14,
    'Stochastic': 14,
    'Williams %R': 14,
    'CCI': 20,
    'SuperTrend': 10,
}

COMPARATORS = (
    'Crosses Above',
    'Crosses Below',
    'Higher than',
    'Less than',
    'Equal',
    'Not Equal',
    'Greater than or Equal',
    'Less than or Equal',
)

# Accepted spellings -> canonical comparator
COMPARATOR_ALIASES: Dict[str, str] = {
    'greater than': 'Higher than',
    '>': 'Higher than',
    '<': 'Less than',
    '=': 'Equal',
    '==': 'Equal',
    '!=': 'Not Equal',
    '>=': 'Greater than or Equal',
    '<=': 'Less than or Equal',
}

CHART_TYPES = ('Candle', 'Heikin Ashi')


def canonical_indicator(label: str) -> Optional[str]:
    """Map a free-form indicator label to its canonical name, None if unsupported"""
    key = label.strip().lower()
    for name in INDICATOR_DEFAULT_PERIODS:
        if name.lower() == key:
            return name
    if key in ('sma', 'moving average (sma)'):
        return 'Moving Average'
    if key in ('macd signal', 'macd_signal'):
        return 'MACD-Signal'
    if key in ('close', 'ltp'):
        return 'Price'
    return None


def canonical_comparator(label: str) -> Optional[str]:
    key = label.strip().lower()
    for name in COMPARATORS:
        if name.lower() == key:
            return name
    return COMPARATOR_ALIASES.get(key)


class FeatureEngineer:
    """Compute technical indicators"""

    @staticmethod
    def compute_rsi(prices: pd.Series, period: int = 14) -> pd.Series:
        """Relative Strength Index"""
        delta = prices.diff()
        gain = (delta.where(delta > 0, 0)).rolling(window=period).mean()
        loss = (-delta.where(delta < 0, 0)).rolling(window=period).mean()

        # Division by zero when there are no down bars in the window
        rs = gain / loss.replace(0, np.nan)
        rsi = 100 - (100 / (1 + rs))
        rsi = rsi.mask((loss == 0) & (gain > 0), 100.0)
        rsi = rsi.mask((loss == 0) & (gain == 0), 50.0)
        return rsi

    @staticmethod
    def compute_macd(
        prices: pd.Series,
        fast: int = 12,
        slow: int = 26,
        signal: int = 9
    ) -> tuple:
        """MACD (Moving Average Convergence Divergence)"""
        ema_fast = prices.ewm(span=fast, adjust=False).mean()
        ema_slow = prices.ewm(span=slow, adjust=False).mean()

        macd_line = ema_fast - ema_slow
        signal_line = macd_line.ewm(span=signal, adjust=False).mean()
        histogram = macd_line - signal_line

        return macd_line, signal_line, histogram

    @staticmethod
    def compute_bollinger_bands(
        prices: pd.Series,
        period: int = 20,
        num_std: float = 2.0
    ) -> tuple:
        """Bollinger Bands"""
        middle = prices.rolling(window=period).mean()
        std = prices.rolling(window=period).std()

        upper = middle + (std * num_std)
        lower = middle - (std * num_std)

        return upper, middle, lower

    @staticmethod
    def compute_atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
        """Average True Range"""
        high_low = high - low
        high_close = np.abs(high - close.shift())
        low_close = np.abs(low - close.shift())

        true_range = pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)
        atr = true_range.rolling(window=period).mean()

        return atr

    @staticmethod
    def compute_ema(prices: pd.Series, period: int) -> pd.Series:
        """Exponential Moving Average"""
        return prices.ewm(span=period, adjust=False).mean()

    @staticmethod
    def compute_sma(prices: pd.Series, period: int) -> pd.Series:
        """Simple Moving Average"""
        return prices.rolling(window=period).mean()

    @staticmethod
    def compute_vwap(bars: pd.DataFrame) -> pd.Series:
        """Session VWAP, reset at the start of each trading day"""
        typical = (bars['high'] + bars['low'] + bars['close']) / 3
        session = bars.index.date
        pv = (typical * bars['volume']).groupby(session).cumsum()
        volume = bars['volume'].groupby(session).cumsum()
        return pv / volume.replace(0, np.nan)

    @staticmethod
    def compute_stochastic(bars: pd.DataFrame, period: int = 14) -> pd.Series:
        """Stochastic %K"""
        lowest = bars['low'].rolling(window=period).min()
        highest = bars['high'].rolling(window=period).max()
        return 100 * (bars['close'] - lowest) / (highest - lowest).replace(0, np.nan)

    @staticmethod
    def compute_williams_r(bars: pd.DataFrame, period: int = 14) -> pd.Series:
        """Williams %R"""
        lowest = bars['low'].rolling(window=period).min()
        highest = bars['high'].rolling(window=period).max()
        return -100 * (highest - bars['close']) / (highest - lowest).replace(0, np.nan)

    @staticmethod
    def compute_cci(bars: pd.DataFrame, period: int = 20) -> pd.Series:
        """Commodity Channel Index"""
        typical = (bars['high'] + bars['low'] + bars['close']) / 3
        sma = typical.rolling(window=period).mean()
        mean_dev = typical.rolling(window=period).apply(lambda x: np.mean(np.abs(x - x.mean())), raw=True)
        return (typical - sma) / (0.015 * mean_dev.replace(0, np.nan))

    @staticmethod
    def compute_supertrend(bars: pd.DataFrame, period: int = 10, multiplier: float = 3.0) -> pd.Series:
        """SuperTrend line (lower band in an uptrend, upper band in a downtrend)"""
        atr = FeatureEngineer.compute_atr(bars['high'], bars['low'], bars['close'], period).to_numpy()
        hl2 = ((bars['high'] + bars['low']) / 2).to_numpy()
        close = bars['close'].to_numpy()

        n = len(bars)
        line = np.full(n, np.nan)
        final_upper = np.nan
        final_lower = np.nan
        uptrend = True

        for i in range(n):
            if np.isnan(atr[i]):
                continue
            basic_upper = hl2[i] + multiplier * atr[i]
            basic_lower = hl2[i] - multiplier * atr[i]

            if np.isnan(final_upper):
                final_upper, final_lower = basic_upper, basic_lower
                uptrend = close[i] >= hl2[i]
            else:
                prev_close = close[i - 1]
                final_upper = basic_upper if (basic_upper < final_upper or prev_close > final_upper) else final_upper
                final_lower = basic_lower if (basic_lower > final_lower or prev_close < final_lower) else final_lower
                if uptrend and close[i] < final_lower:
                    uptrend = False
                elif not uptrend and close[i] > final_upper:
                    uptrend = True

            line[i] = final_lower if uptrend else final_upper

        return pd.Series(line, index=bars.index)

    @staticmethod
    def heikin_ashi(bars: pd.DataFrame) -> pd.DataFrame:
        """Convert OHLC bars to Heikin-Ashi candles (volume unchanged)"""
        o = bars['open'].to_numpy(dtype=float)
        h = bars['high'].to_numpy(dtype=float)
        l = bars['low'].to_numpy(dtype=float)
        c = bars['close'].to_numpy(dtype=float)

        ha_close = (o + h + l + c) / 4
        ha_open = np.empty_like(ha_close)
        if len(ha_open):
            ha_open[0] = (o[0] + c[0]) / 2
        for i in range(1, len(ha_open)):
            ha_open[i] = (ha_open[i - 1] + ha_close[i - 1]) / 2

        ha = bars.copy()
        ha['open'] = ha_open
        ha['close'] = ha_close
        ha['high'] = np.maximum.reduce([h, ha_open, ha_close])
        ha['low'] = np.minimum.reduce([l, ha_open, ha_close])
        return ha

    def compute_indicator(
        self,
        bars: pd.DataFrame,
        indicator: str,
        period: Optional[int] = None,
        value: Optional[float] = None
    ) -> pd.Series:
        """
        Compute one canonical indicator over a bar frame.

        Args:
            bars: Frame indexed by timestamp with open/high/low/close/volume
            indicator: Canonical indicator name
            period: Window length (indicator default when None)
            value: Constant for the 'Number' operand

        Returns:
            Series aligned to bars.index
        """
        if period is None:
            period = INDICATOR_DEFAULT_PERIODS.get(indicator)

        if indicator in ('Price', 'Candle'):
            return bars['close'].astype(float)
        if indicator == 'Number':
            return pd.Series(float(value), index=bars.index)
        if indicator == 'Volume':
            return bars['volume'].astype(float)
        if indicator == 'VWAP':
            return self.compute_vwap(bars)
        if indicator == 'MACD':
            return self.compute_macd(bars['close'])[0]
        if indicator == 'MACD-Signal':
            return self.compute_macd(bars['close'])[1]
        if indicator == 'Moving Average':
            return self.compute_sma(bars['close'], period)
        if indicator == 'EMA':
            return self.compute_ema(bars['close'], period)
        if indicator == 'RSI':
            return self.compute_rsi(bars['close'], period)
        if indicator in ('Bollinger Bands', 'Bollinger Upper', 'Bollinger Lower'):
            upper, middle, lower = self.compute_bollinger_bands(bars['close'], period)
            return {'Bollinger Bands': middle, 'Bollinger Upper': upper, 'Bollinger Lower': lower}[indicator]
        if indicator == 'ATR':
            return self.compute_atr(bars['high'], bars['low'], bars['close'], period)
        if indicator == 'Stochastic':
            return self.compute_stochastic(bars, period)
        if indicator == 'Williams %R':
            return self.compute_williams_r(bars, period)
        if indicator == 'CCI':
            return self.compute_cci(bars, period)
        if indicator == 'SuperTrend':
            return self.compute_supertrend(bars, period)

        raise ValueError(f"Unsupported indicator: {indicator}")


def compare_series(left: pd.Series, right: pd.Series, comparator: str) -> pd.Series:
    """Evaluate a canonical comparator bar by bar. Undefined operands give False."""
    defined = left.notna() & right.notna()

    if comparator == 'Crosses Above':
        prev_defined = defined.shift(1, fill_value=False)
        result = (left > right) & (left.shift(1) <= right.shift(1)) & prev_defined
    elif comparator == 'Crosses Below':
        prev_defined = defined.shift(1, fill_value=False)
        result = (left < right) & (left.shift(1) >= right.shift(1)) & prev_defined
    elif comparator == 'Higher than':
        result = left > right
    elif comparator == 'Less than':
        result = left < right
    elif comparator == 'Equal':
        result = pd.Series(np.isclose(left, right), index=left.index)
    elif comparator == 'Not Equal':
        result = pd.Series(~np.isclose(left, right), index=left.index)
    elif comparator == 'Greater than or Equal':
        result = left >= right
    elif comparator == 'Less than or Equal':
        result = left <= right
    else:
        raise ValueError(f"Unsupported comparator: {comparator}")

    return (result & defined).astype(bool)


def compute_entry_signal(
    bars: pd.DataFrame,
    conditions: Iterable,
    chart_type: str = 'Candle',
    engineer: Optional[FeatureEngineer] = None
) -> pd.Series:
    """
    Boolean entry signal per bar: every condition must hold.

    Args:
        bars: Frame indexed by timestamp with open/high/low/close/volume
        conditions: EntryCondition objects with canonical labels
        chart_type: 'Candle' or 'Heikin Ashi'

    Returns:
        Boolean Series aligned to bars.index
    """
    engineer = engineer or FeatureEngineer()
    frame = engineer.heikin_ashi(bars) if chart_type == 'Heikin Ashi' else bars

    signal = pd.Series(True, index=bars.index)
    for condition in conditions:
        left = engineer.compute_indicator(frame, condition.indicator1, condition.period, condition.value)
        right = engineer.compute_indicator(frame, condition.indicator2, condition.period, condition.value)
        signal &= compare_series(left, right, condition.comparator)

    logger.debug(f"Entry signal true on {int(signal.sum())} of {len(signal)} bars")
    return signal
