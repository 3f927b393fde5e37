"""
perpx Position Ledger Models

Per-account trader and liquidity-provider records plus the per-market
aggregate.  Signs follow the virtual-token convention:

  - open_notional  > 0: quote owed to the account (short entry proceeds)
  - open_notional  < 0: quote the account owes (long entry cost, LP deposit)
  - position_size  > 0: long base exposure
  - position_size  < 0: short base exposure (or base owed back to the pool)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from ..constants import ZERO


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> Side:
        if self is Side.LONG:
            return Side.SHORT
        return Side.LONG

    @classmethod
    def of_size(cls, position_size: Decimal) -> Side:
        """Side held by a non-zero signed position size."""
        if position_size > 0:
            return cls.LONG
        if position_size < 0:
            return cls.SHORT
        raise ValueError("Flat position has no side")


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class TraderPosition:
    """Open trader exposure in one market."""
    open_notional: Decimal = ZERO
    position_size: Decimal = ZERO
    cum_funding_rate: Decimal = ZERO     # funding snapshot at last settlement

    @property
    def is_open(self) -> bool:
        return self.position_size != 0 or self.open_notional != 0

    @property
    def side(self) -> Side:
        return Side.of_size(self.position_size)


@dataclass
class LiquidityProviderPosition:
    """Pool shares held by one LP plus the virtual tokens they owe back."""
    open_notional: Decimal = ZERO
    position_size: Decimal = ZERO
    liquidity_balance: Decimal = ZERO
    deposit_time: int = 0
    total_trading_fees_growth: Decimal = ZERO
    total_base_fees_growth: Decimal = ZERO
    total_quote_fees_growth: Decimal = ZERO
    cum_funding_per_lp_token: Decimal = ZERO   # funding snapshot at last settlement

    @property
    def is_open(self) -> bool:
        return self.liquidity_balance != 0


@dataclass
class GlobalPosition:
    """Market-wide aggregate, one per Perpetual."""
    time_of_last_trade: int = 0
    time_of_last_twap_update: int = 0
    block_of_last_update: int = -1
    cum_funding_rate: Decimal = ZERO
    cum_funding_per_lp_token: Decimal = ZERO
    total_quote_provided: Decimal = ZERO
    total_base_provided: Decimal = ZERO
    current_block_trade_amount: Decimal = ZERO
    total_trading_fees_growth: Decimal = ZERO
    total_base_fees_growth: Decimal = ZERO
    total_quote_fees_growth: Decimal = ZERO
    total_insurance_fees: Decimal = ZERO
    trader_longs: Decimal = ZERO
    trader_shorts: Decimal = ZERO


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class TradeResult:
    """Outcome of one change_position / reduce call."""
    quote_proceeds: Decimal = ZERO
    base_proceeds: Decimal = ZERO
    pnl: Decimal = ZERO                  # realized, net of both fees
    trading_fees: Decimal = ZERO
    insurance_fees: Decimal = ZERO
    is_position_increased: bool = False
    dust: Decimal = ZERO                 # base swept to the house account


@dataclass
class LiquidityResult:
    """Outcome of provide_liquidity / remove_liquidity."""
    liquidity_amount: Decimal = ZERO
    quote_amount: Decimal = ZERO
    base_amount: Decimal = ZERO
    pnl: Decimal = ZERO
    trading_fees: Decimal = ZERO
    insurance_fees: Decimal = ZERO
    dust: Decimal = ZERO
    position_closed: bool = False
    closed_position: TraderPosition = field(default_factory=TraderPosition)
