"""
perpx Configuration

Loads perpx.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    ClearingHouseConfig,
    LoggingConfig,
    MarketConfig,
    OracleConfig,
    PerpxConfig,
    PoolConfig,
    load_config,
)

__all__ = [
    "ClearingHouseConfig",
    "LoggingConfig",
    "MarketConfig",
    "OracleConfig",
    "PerpxConfig",
    "PoolConfig",
    "load_config",
]
