"""
perpx Constants

This module consolidates all global constants and environment configuration
used throughout the codebase. Constants are organized by category for easy
reference and maintenance.
"""
from decimal import Decimal
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Values from .env win over the defaults below; see the bottom of this module
_dotenv = dotenv_values(".env")

ENGINE_DEFAULTS = {
    'PERPX_CONFIG':                    'perpx.toml',
    'PERPX_NETWORK_NAME':              'perpx-local',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5


# WARNING: THE PROTOCOL VALUES BELOW ARE PART OF THE ACCOUNTING MODEL. CHANGING THEM
# CHANGES HOW POSITIONS, FEES AND FUNDING ARE SETTLED FOR EVERY MARKET.

# ==================================================================================
# FIXED-POINT
# ==================================================================================
WAD_DECIMALS = 18
WAD_QUANTUM = Decimal(1).scaleb(-WAD_DECIMALS)  # 1e-18, smallest representable unit
ONE = Decimal("1")
ZERO = Decimal("0")


# ==================================================================================
# MARKET LAYOUT
# ==================================================================================
VQUOTE_INDEX = 0  # virtual quote token inside each pool
VBASE_INDEX = 1   # virtual base token inside each pool
QUOTE_TOKEN = 'UA'  # collateral token the quote leg settles in

SECONDS_PER_DAY = 24 * 3600
DUST_THRESHOLD = Decimal("0.1")        # base units swept to the house account
LP_AMOUNT_DEVIATION = Decimal("0.01")  # 1% tolerance on provided token ratio
LIQUIDITY_PROVISION_MULTIPLIER = 2     # provided value <= 2x free collateral


# ==================================================================================
# DEFAULT PARAMETERIZATION (EUR/USD)
# ==================================================================================
DEFAULT_MIN_MARGIN = Decimal("0.03")
DEFAULT_MIN_MARGIN_AT_CREATION = Decimal("0.05")
DEFAULT_MIN_POSITIVE_OPEN_NOTIONAL = Decimal("35")
DEFAULT_LIQUIDATION_REWARD = Decimal("0.015")
DEFAULT_INSURANCE_RATIO = Decimal("0.1")
DEFAULT_LIQUIDATION_REWARD_INSURANCE_SHARE = Decimal("0.3")
DEFAULT_LIQUIDATION_DISCOUNT = Decimal("0.95")
DEFAULT_NON_UA_COLL_SEIZURE_DISCOUNT = Decimal("0.75")
DEFAULT_UA_DEBT_SEIZURE_THRESHOLD = Decimal("10000")

DEFAULT_RISK_WEIGHT = Decimal("1")
DEFAULT_MAX_LIQUIDITY_PROVIDED = Decimal("1000000")
DEFAULT_TWAP_FREQUENCY = 15 * 60
DEFAULT_SENSITIVITY = Decimal("1")
DEFAULT_MAX_BLOCK_TRADE_AMOUNT = Decimal("100000")
DEFAULT_MAX_POSITION = Decimal("500000")
DEFAULT_INSURANCE_FEE = Decimal("0.001")
DEFAULT_LP_DEBT_COEF = Decimal("3")
DEFAULT_LOCK_PERIOD = 3600

DEFAULT_POOL_FEE = Decimal("0.0005")
MAX_POOL_FEE = Decimal("0.1")
DEFAULT_ORACLE_HEARTBEAT = 25 * 3600
DEFAULT_SEQUENCER_GRACE_PERIOD = 5 * 60

# Senders allowed to sell dust and to publish index prices
DEFAULT_GOVERNANCE = "governance"
DEFAULT_PRICE_FEEDER = "oracle-feeder"


# ==================================================================================
# GOVERNANCE BOUNDS
# ==================================================================================
MIN_MIN_MARGIN = Decimal("0.02")
MAX_MIN_MARGIN = Decimal("0.3")
MAX_MIN_MARGIN_AT_CREATION = Decimal("0.5")
MAX_MIN_POSITIVE_OPEN_NOTIONAL = Decimal("2000")
MIN_LIQUIDATION_REWARD = Decimal("0.01")
MIN_INSURANCE_RATIO = Decimal("0.1")
MAX_INSURANCE_RATIO = Decimal("0.5")
MIN_DISCOUNT_GAP = Decimal("0.1")      # liquidation_discount - non_ua_coll_seizure_discount
MIN_UA_DEBT_SEIZURE_THRESHOLD = Decimal("100")

MIN_RISK_WEIGHT = Decimal("1")
MAX_RISK_WEIGHT = Decimal("50")
MIN_TWAP_FREQUENCY = 60
MAX_TWAP_FREQUENCY = 3600
MIN_SENSITIVITY = Decimal("0.2")
MAX_SENSITIVITY = Decimal("50")
MIN_MAX_BLOCK_TRADE_AMOUNT = Decimal("100")
MIN_INSURANCE_FEE = Decimal("0.0001")
MAX_INSURANCE_FEE = Decimal("0.01")
MIN_LP_DEBT_COEF = Decimal("1")
MAX_LP_DEBT_COEF = Decimal("20")
MIN_LOCK_PERIOD = 10 * 60
MAX_LOCK_PERIOD = 30 * SECONDS_PER_DAY

MIN_COLLATERAL_WEIGHT = Decimal("0.1")
MAX_COLLATERAL_WEIGHT = Decimal("1")


# ==================================================================================
# .env SETTINGS
# ==================================================================================
_FALSY = {"false", "0", "no", "off"}


class EnvSetting(str):
    """
    A string read from .env that still knows its built-in default.

    ``bool()`` follows the usual true/false spellings, so flags such as
    ``LOG_CONSOLE_HIGHLIGHTING`` can be tested directly.
    """

    def __new__(cls, value: str, default: str):
        obj = super().__new__(cls, value)
        obj._default = default
        return obj

    def default(self) -> str:
        return self._default

    def __bool__(self) -> bool:
        lowered = self.strip().casefold()
        return bool(lowered) and lowered not in _FALSY


for _key, _fallback in {**ENGINE_DEFAULTS, **LOGGER_DEFAULTS}.items():
    # dotenv yields None for keys declared without a value
    _raw = _dotenv.get(_key)
    globals()[_key] = EnvSetting(_fallback if _raw is None else _raw, _fallback)
