"""
Configuration module for the strategy backtester.

Provides:
- Pydantic configuration schema (Config and its sections)
- Loaders with environment variable expansion and validation
"""

from .config_schema import (
    Config,
    DataProviderConfig,
    TransactionCostConfig,
    SimulationConfig,
    RunnerConfig,
    BrokersConfig,
)
from .loader import load_config, save_config, load_document

__all__ = [
    'Config',
    'DataProviderConfig',
    'TransactionCostConfig',
    'SimulationConfig',
    'RunnerConfig',
    'BrokersConfig',
    'load_config',
    'save_config',
    'load_document',
]
