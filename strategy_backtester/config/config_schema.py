"""
Configuration schema using Pydantic for validation.
"""

from typing import List, Dict, Literal, Optional
from pydantic import BaseModel, Field, field_validator


class DataProviderConfig(BaseModel):
    """
    Historical data provider configuration.

    Fetches are retried with exponential backoff before a run is refused.
    """
    provider: Literal["yfinance", "sqlite"] = "yfinance"
    cache_db_path: str = Field(default="data/price_cache.db", description="SQLite bar cache")
    max_retries: int = Field(default=3, ge=0, description="Retries after the first failed fetch")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Initial backoff delay")
    max_gap_days: int = Field(default=5, ge=0, description="Tolerated uncovered days at either end of a window")
    ticker_map: Dict[str, str] = Field(
        default_factory=lambda: {
            "nifty-50-idx-nse": "^NSEI",
            "nifty-bank-idx-nse": "^NSEBANK",
            "nifty-fin-service-idx-nse": "NIFTY_FIN_SERVICE.NS",
            "sensex-idx-bse": "^BSESN",
        },
        description="Universal instrument id -> data vendor ticker"
    )


class TransactionCostConfig(BaseModel):
    """Configuration for transaction cost modeling."""
    fixed_cost_per_order: float = Field(default=20.0, ge=0, description="Flat charge per order (entry and exit each)")
    cost_pct_of_notional: float = Field(default=0.0, ge=0, description="Percentage of traded notional charged per order")
    slippage_bps: float = Field(default=0.0, ge=0, description="Adverse fill adjustment in basis points")


class SimulationConfig(BaseModel):
    """
    Replay configuration.

    price_reference selects whether stops and targets are judged on the bar
    close only or against the bar's high/low extremes. CE/PE legs are priced
from the underlying with option_volatility.
    """
    price_reference: Literal["close", "intrabar"] = "close"
    timezone: str = Field(default="Asia/Kolkata", description="Exchange timezone for time-of-day rules")
    periods_per_year: int = Field(default=252, gt=0, description="Annualization factor for the Sharpe ratio")
    option_volatility: float = Field(default=0.2, gt=0, description="Annualized volatility for pricing CE/PE legs")
    default_initial_capital: float = Field(default=100000.0, gt=0)


class RunnerConfig(BaseModel):
    max_workers: Optional[int] = Field(default=None, gt=0, description="Worker pool size (CPU count when unset)")


class BrokersConfig(BaseModel):
    supported: List[str] = Field(default_factory=lambda: ["angel", "dhan"])
    default_broker: str = "angel"

    @field_validator('default_broker')
    @classmethod
    def validate_default_broker(cls, v, info):
        """Default broker must be one of the supported brokers"""
        supported = info.data.get('supported')
        if supported and v not in supported:
            raise ValueError(f"default_broker '{v}' is not in supported brokers {supported}")
        return v


class Config(BaseModel):
    """Root configuration"""
    data: DataProviderConfig = Field(default_factory=DataProviderConfig)
    costs: TransactionCostConfig = Field(default_factory=TransactionCostConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    brokers: BrokersConfig = Field(default_factory=BrokersConfig)
    instruments_path: Optional[str] = "data/instruments.json"
    database_path: str = "data/backtest.db"
    log_path: str = "logs/backtest_log.jsonl"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
