"""
perpx Exchange Engine

vAMM-backed leveraged perpetuals with a cross-market clearing house.

Components:
  - Constant-product virtual-token pools (one per market)
  - Perpetual markets (position ledger, trading, dust sweeping)
  - Funding & TWAP engine
  - Liquidity accounting (LP debt, fee stripping)
  - Clearing house (margin, liquidation, collateral seizure)
  - Vault, insurance fund and index price oracle
  - Transactions & state manager (block lifecycle, state root)
"""

from .clock import BlockClock
from .pool import ConstantProductPool
from .oracle import PriceFeed, PriceOracle
from .positions import (
    GlobalPosition,
    LiquidityProviderPosition,
    LiquidityResult,
    Side,
    TradeResult,
    TraderPosition,
)
from .params import ClearingHouseParams, MarketParams
from .funding import FundingEngine, FundingUpdate
from .perpetual import Perpetual
from .insurance import InsuranceFund
from .vault import Collateral, Vault
from .clearing_house import ClearingHouse
from .viewer import ClearingHouseViewer
from .transactions import ExchangeOpType, ExchangeTransaction
from .state_manager import ExchangeExecResult, ExchangeStateManager

__all__ = [
    # Core
    "BlockClock", "ConstantProductPool", "PriceFeed", "PriceOracle",
    # Ledger
    "GlobalPosition", "LiquidityProviderPosition", "LiquidityResult", "Side",
    "TradeResult", "TraderPosition",
    # Parameters
    "ClearingHouseParams", "MarketParams",
    # Engines
    "FundingEngine", "FundingUpdate", "Perpetual", "InsuranceFund", "Collateral",
    "Vault", "ClearingHouse", "ClearingHouseViewer",
    # Transactions
    "ExchangeOpType", "ExchangeTransaction", "ExchangeExecResult", "ExchangeStateManager",
]
