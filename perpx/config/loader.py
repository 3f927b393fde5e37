"""
perpx TOML Configuration Loader

Loads perpx.toml with environment variable overrides.  Every section is a
dataclass with from_dict / apply_env / validate / to_dict; amounts are read
as strings or numbers and stored as Decimals.

Environment variable mapping:
    [clearing_house] min_margin      → PERPX_MIN_MARGIN
    [oracle] grace_period            → PERPX_ORACLE_GRACE_PERIOD
    [logging] level                  → PERPX_LOG_LEVEL
    ...

The default configuration is a single EUR/USD market.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from .. import constants as c
from ..exceptions import ConfigurationError, ParameterError
from ..exchange.params import ClearingHouseParams, MarketParams

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_GENESIS_TIME = 1_704_067_200  # 2024-01-01T00:00:00Z


def _decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(f"Invalid decimal for {key}: {value!r}") from e


def _env_decimal(name: str) -> Optional[Decimal]:
    v = os.environ.get(name)
    return _decimal(v, name) if v else None


def _env_int(name: str) -> Optional[int]:
    v = os.environ.get(name)
    if not v:
        return None
    try:
        return int(v)
    except ValueError as e:
        raise ConfigurationError(f"Invalid integer for {name}: {v!r}") from e


# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of perpx.example.toml
# ---------------------------------------------------------------------------


@dataclass
class ClearingHouseConfig:
    """[clearing_house] section."""
    min_margin: Decimal = c.DEFAULT_MIN_MARGIN
    min_margin_at_creation: Decimal = c.DEFAULT_MIN_MARGIN_AT_CREATION
    min_positive_open_notional: Decimal = c.DEFAULT_MIN_POSITIVE_OPEN_NOTIONAL
    liquidation_reward: Decimal = c.DEFAULT_LIQUIDATION_REWARD
    insurance_ratio: Decimal = c.DEFAULT_INSURANCE_RATIO
    liquidation_reward_insurance_share: Decimal = c.DEFAULT_LIQUIDATION_REWARD_INSURANCE_SHARE
    liquidation_discount: Decimal = c.DEFAULT_LIQUIDATION_DISCOUNT
    non_ua_coll_seizure_discount: Decimal = c.DEFAULT_NON_UA_COLL_SEIZURE_DISCOUNT
    ua_debt_seizure_threshold: Decimal = c.DEFAULT_UA_DEBT_SEIZURE_THRESHOLD

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingHouseConfig":
        defaults = cls()
        return cls(**{
            name: _decimal(data[name], name) if name in data else getattr(defaults, name)
            for name in cls.__dataclass_fields__
        })

    def apply_env(self) -> None:
        if (v := _env_decimal("PERPX_MIN_MARGIN")) is not None:
            self.min_margin = v
        if (v := _env_decimal("PERPX_MIN_MARGIN_AT_CREATION")) is not None:
            self.min_margin_at_creation = v
        if (v := _env_decimal("PERPX_LIQUIDATION_REWARD")) is not None:
            self.liquidation_reward = v

    def to_params(self) -> ClearingHouseParams:
        return ClearingHouseParams(**asdict(self))

    def validate(self) -> None:
        self.to_params().validate()

    def to_dict(self) -> Dict[str, Any]:
        return {k: str(v) for k, v in asdict(self).items()}


@dataclass
class PoolConfig:
    """[markets.pool] subsection."""
    fee: Decimal = c.DEFAULT_POOL_FEE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolConfig":
        return cls(fee=_decimal(data.get("fee", c.DEFAULT_POOL_FEE), "pool.fee"))

    def validate(self) -> None:
        if not 0 <= self.fee < c.MAX_POOL_FEE:
            raise ConfigurationError(f"pool fee must be in [0, {c.MAX_POOL_FEE}): {self.fee}")

    def to_dict(self) -> Dict[str, Any]:
        return {"fee": str(self.fee)}


@dataclass
class MarketConfig:
    """One [[markets]] entry."""
    name: str = "EUR_USD"
    base_asset: str = "EUR"
    initial_price: Decimal = Decimal("1.1")
    heartbeat: int = c.DEFAULT_ORACLE_HEARTBEAT
    risk_weight: Decimal = c.DEFAULT_RISK_WEIGHT
    max_liquidity_provided: Decimal = c.DEFAULT_MAX_LIQUIDITY_PROVIDED
    twap_frequency: int = c.DEFAULT_TWAP_FREQUENCY
    sensitivity: Decimal = c.DEFAULT_SENSITIVITY
    max_block_trade_amount: Decimal = c.DEFAULT_MAX_BLOCK_TRADE_AMOUNT
    max_position: Decimal = c.DEFAULT_MAX_POSITION
    insurance_fee: Decimal = c.DEFAULT_INSURANCE_FEE
    lp_debt_coef: Decimal = c.DEFAULT_LP_DEBT_COEF
    lock_period: int = c.DEFAULT_LOCK_PERIOD
    pool: PoolConfig = field(default_factory=PoolConfig)

    _INT_FIELDS = ("heartbeat", "twap_frequency", "lock_period")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketConfig":
        cfg = cls(
            name=str(data.get("name", "EUR_USD")),
            base_asset=str(data.get("base_asset", "EUR")),
            pool=PoolConfig.from_dict(data.get("pool", {})),
        )
        for name in MarketParams.__dataclass_fields__:
            if name in data:
                value = int(data[name]) if name in cls._INT_FIELDS else _decimal(data[name], name)
                setattr(cfg, name, value)
        if "initial_price" in data:
            cfg.initial_price = _decimal(data["initial_price"], "initial_price")
        if "heartbeat" in data:
            cfg.heartbeat = int(data["heartbeat"])
        return cfg

    def apply_env(self) -> None:
        prefix = f"PERPX_{self.name.upper()}_"
        if (v := _env_decimal(prefix + "MAX_BLOCK_TRADE_AMOUNT")) is not None:
            self.max_block_trade_amount = v
        if (v := _env_decimal(prefix + "MAX_POSITION")) is not None:
            self.max_position = v
        if (v := _env_int(prefix + "LOCK_PERIOD")) is not None:
            self.lock_period = v

    def to_params(self) -> MarketParams:
        return MarketParams(**{name: getattr(self, name) for name in MarketParams.__dataclass_fields__})

    def validate(self) -> None:
        if not self.base_asset:
            raise ConfigurationError(f"market {self.name}: base_asset required")
        if self.initial_price <= 0:
            raise ConfigurationError(f"market {self.name}: initial_price must be positive")
        if self.heartbeat <= 0:
            raise ConfigurationError(f"market {self.name}: heartbeat must be positive")
        self.pool.validate()
        self.to_params().validate()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "base_asset": self.base_asset,
            "initial_price": str(self.initial_price),
            "heartbeat": self.heartbeat,
        }
        result.update(self.to_params().to_dict())
        result["pool"] = self.pool.to_dict()
        return result


@dataclass
class OracleConfig:
    """[oracle] section."""
    grace_period: int = c.DEFAULT_SEQUENCER_GRACE_PERIOD
    sequencer_feed: bool = False
    feeder: str = c.DEFAULT_PRICE_FEEDER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OracleConfig":
        return cls(
            grace_period=int(data.get("grace_period", c.DEFAULT_SEQUENCER_GRACE_PERIOD)),
            sequencer_feed=bool(data.get("sequencer_feed", False)),
            feeder=str(data.get("feeder", c.DEFAULT_PRICE_FEEDER)),
        )

    def apply_env(self) -> None:
        if (v := _env_int("PERPX_ORACLE_GRACE_PERIOD")) is not None:
            self.grace_period = v
        if v := os.environ.get("PERPX_ORACLE_FEEDER"):
            self.feeder = v

    def validate(self) -> None:
        if self.grace_period < 0:
            raise ConfigurationError("IncorrectGracePeriod")
        if not self.feeder:
            raise ConfigurationError("oracle feeder sender must be set")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grace_period": self.grace_period,
            "sequencer_feed": self.sequencer_feed,
            "feeder": self.feeder,
        }


@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = str(c.LOG_LEVEL)
    file: str = "logs/perpx.log"
    console: bool = True
    file_output: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=str(data.get("level", c.LOG_LEVEL)).upper(),
            file=data.get("file", "logs/perpx.log"),
            console=data.get("console", True),
            file_output=data.get("file_output", True),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPX_LOG_LEVEL"):
            self.level = v.upper()
        if v := os.environ.get("PERPX_LOG_FILE"):
            self.file = v

    def validate(self) -> None:
        if self.level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.level}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


def _default_markets() -> List[MarketConfig]:
    return [MarketConfig()]


@dataclass
class PerpxConfig:
    """
    Unified exchange configuration.

    Loads every section of perpx.toml and applies environment variable
    overrides.
    """
    network_name: str = str(c.PERPX_NETWORK_NAME)
    genesis_time: int = DEFAULT_GENESIS_TIME
    governance: str = c.DEFAULT_GOVERNANCE
    clearing_house: ClearingHouseConfig = field(default_factory=ClearingHouseConfig)
    markets: List[MarketConfig] = field(default_factory=_default_markets)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerpxConfig":
        markets_data = data.get("markets")
        return cls(
            network_name=data.get("network_name", str(c.PERPX_NETWORK_NAME)),
            genesis_time=int(data.get("genesis_time", DEFAULT_GENESIS_TIME)),
            governance=str(data.get("governance", c.DEFAULT_GOVERNANCE)),
            clearing_house=ClearingHouseConfig.from_dict(data.get("clearing_house", {})),
            markets=(
                [MarketConfig.from_dict(m) for m in markets_data]
                if markets_data else _default_markets()
            ),
            oracle=OracleConfig.from_dict(data.get("oracle", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "PerpxConfig":
        """
        Load configuration from a TOML file.

        A missing file yields the defaults (with env overrides).

        Raises:
            ConfigurationError: unparsable TOML or invalid values
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s — using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        if v := os.environ.get("PERPX_NETWORK_NAME"):
            self.network_name = v
        if (t := _env_int("PERPX_GENESIS_TIME")) is not None:
            self.genesis_time = t
        if v := os.environ.get("PERPX_GOVERNANCE"):
            self.governance = v
        self.clearing_house.apply_env()
        for market in self.markets:
            market.apply_env()
        self.oracle.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Raises:
            ConfigurationError: on invalid config, including governance bounds
        """
        if self.genesis_time <= 0:
            raise ConfigurationError("genesis_time must be positive")
        if not self.governance:
            raise ConfigurationError("governance sender must be set")
        try:
            self.clearing_house.validate()
            names = [m.name for m in self.markets]
            if len(set(names)) != len(names):
                raise ConfigurationError(f"Duplicate market names: {names}")
            for market in self.markets:
                market.validate()
        except ParameterError as e:
            raise ConfigurationError(str(e)) from e
        self.oracle.validate()
        self.logging.validate()
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "network_name": self.network_name,
            "genesis_time": self.genesis_time,
            "governance": self.governance,
            "clearing_house": self.clearing_house.to_dict(),
            "markets": [m.to_dict() for m in self.markets],
            "oracle": self.oracle.to_dict(),
            "logging": self.logging.to_dict(),
        }


def load_config(path: Optional[str] = None) -> PerpxConfig:
    """
    Load exchange configuration.

    Resolution order:
        1. Explicit *path* argument
        2. PERPX_CONFIG env var
        3. ./perpx.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("PERPX_CONFIG", str(c.PERPX_CONFIG))
    return PerpxConfig.from_file(path)
