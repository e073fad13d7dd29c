"""
Strategy Backtester: multi-leg, multi-broker strategy definition and replay.

Validates time-based and indicator-based strategies against a broker-neutral
instrument master and replays them deterministically over historical bars.
"""

__version__ = "1.0.0"
