"""
Shared pytest fixtures: synthetic intraday bar frames.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd
import pytest


def make_bars(
    closes: Sequence[float],
    start: str = '2024-01-01 09:15',
    freq: str = '5min',
    opens: Optional[Sequence[float]] = None,
    highs: Optional[Sequence[float]] = None,
    lows: Optional[Sequence[float]] = None,
    spread: float = 0.5,
    volume: float = 1000.0
) -> pd.DataFrame:
    """Bars with a 'timestamp' column; highs/lows default to open/close +- spread"""
    closes = np.asarray(closes, dtype=float)
    opens = closes if opens is None else np.asarray(opens, dtype=float)
    highs = np.maximum(opens, closes) + spread if highs is None else np.asarray(highs, dtype=float)
    lows = np.minimum(opens, closes) - spread if lows is None else np.asarray(lows, dtype=float)

    return pd.DataFrame({
        'timestamp': pd.date_range(start, periods=len(closes), freq=freq),
        'open': opens,
        'high': highs,
        'low': lows,
        'close': closes,
        'volume': volume,
    })


@pytest.fixture
def bar_factory():
    return make_bars
