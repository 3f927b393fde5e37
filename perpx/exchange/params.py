"""
perpx Governance Parameters

Bounded, write-time validated parameter sets for the clearing house and for
each perpetual market.  A parameter set is only ever installed as a whole,
after validate() passed, so a market never runs with a half-applied change.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict

from .. import constants as c
from ..exceptions import ParameterError


@dataclass(frozen=True)
class ClearingHouseParams:
    """Cross-market margin and liquidation parameters."""
    min_margin: Decimal = c.DEFAULT_MIN_MARGIN
    min_margin_at_creation: Decimal = c.DEFAULT_MIN_MARGIN_AT_CREATION
    min_positive_open_notional: Decimal = c.DEFAULT_MIN_POSITIVE_OPEN_NOTIONAL
    liquidation_reward: Decimal = c.DEFAULT_LIQUIDATION_REWARD
    insurance_ratio: Decimal = c.DEFAULT_INSURANCE_RATIO
    liquidation_reward_insurance_share: Decimal = c.DEFAULT_LIQUIDATION_REWARD_INSURANCE_SHARE
    liquidation_discount: Decimal = c.DEFAULT_LIQUIDATION_DISCOUNT
    non_ua_coll_seizure_discount: Decimal = c.DEFAULT_NON_UA_COLL_SEIZURE_DISCOUNT
    ua_debt_seizure_threshold: Decimal = c.DEFAULT_UA_DEBT_SEIZURE_THRESHOLD

    def validate(self) -> None:
        """
        Raises:
            ParameterError: naming the first violated bound
        """
        if not c.MIN_MIN_MARGIN <= self.min_margin <= c.MAX_MIN_MARGIN:
            raise ParameterError(f"InvalidMinMargin: {self.min_margin}")
        if not self.min_margin < self.min_margin_at_creation <= c.MAX_MIN_MARGIN_AT_CREATION:
            raise ParameterError(f"InvalidMinMarginAtCreation: {self.min_margin_at_creation}")
        if not 0 <= self.min_positive_open_notional <= c.MAX_MIN_POSITIVE_OPEN_NOTIONAL:
            raise ParameterError(f"ExcessivePositiveOpenNotional: {self.min_positive_open_notional}")
        if not c.MIN_LIQUIDATION_REWARD <= self.liquidation_reward < self.min_margin:
            raise ParameterError(f"InvalidLiquidationReward: {self.liquidation_reward}")
        if not c.MIN_INSURANCE_RATIO <= self.insurance_ratio <= c.MAX_INSURANCE_RATIO:
            raise ParameterError(f"InvalidInsuranceRatio: {self.insurance_ratio}")
        if not 0 <= self.liquidation_reward_insurance_share <= 1:
            raise ParameterError(
                f"ExcessiveLiquidationRewardInsuranceShare: {self.liquidation_reward_insurance_share}"
            )
        if not 0 < self.liquidation_discount <= 1 or self.non_ua_coll_seizure_discount < 0:
            raise ParameterError(
                "InsufficientDiffBtwLiquidationDiscountAndNonUACollSeizureDiscount"
            )
        if self.non_ua_coll_seizure_discount + c.MIN_DISCOUNT_GAP > self.liquidation_discount:
            raise ParameterError(
                "InsufficientDiffBtwLiquidationDiscountAndNonUACollSeizureDiscount"
            )
        if self.ua_debt_seizure_threshold < c.MIN_UA_DEBT_SEIZURE_THRESHOLD:
            raise ParameterError(
                f"InsufficientUaDebtSeizureThreshold: {self.ua_debt_seizure_threshold}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {k: str(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class MarketParams:
    """Per-market trading, funding and liquidity parameters."""
    risk_weight: Decimal = c.DEFAULT_RISK_WEIGHT
    max_liquidity_provided: Decimal = c.DEFAULT_MAX_LIQUIDITY_PROVIDED
    twap_frequency: int = c.DEFAULT_TWAP_FREQUENCY
    sensitivity: Decimal = c.DEFAULT_SENSITIVITY
    max_block_trade_amount: Decimal = c.DEFAULT_MAX_BLOCK_TRADE_AMOUNT
    max_position: Decimal = c.DEFAULT_MAX_POSITION
    insurance_fee: Decimal = c.DEFAULT_INSURANCE_FEE
    lp_debt_coef: Decimal = c.DEFAULT_LP_DEBT_COEF
    lock_period: int = c.DEFAULT_LOCK_PERIOD

    def validate(self) -> None:
        """
        Raises:
            ParameterError: naming the first violated bound
        """
        if not c.MIN_RISK_WEIGHT <= self.risk_weight <= c.MAX_RISK_WEIGHT:
            raise ParameterError(f"RiskWeightInvalid: {self.risk_weight}")
        if self.max_liquidity_provided <= 0:
            raise ParameterError(f"MaxLiquidityProvided must be positive: {self.max_liquidity_provided}")
        if not c.MIN_TWAP_FREQUENCY <= self.twap_frequency <= c.MAX_TWAP_FREQUENCY:
            raise ParameterError(f"TwapFrequencyInvalid: {self.twap_frequency}")
        if not c.MIN_SENSITIVITY <= self.sensitivity <= c.MAX_SENSITIVITY:
            raise ParameterError(f"SensitivityInvalid: {self.sensitivity}")
        if self.max_block_trade_amount < c.MIN_MAX_BLOCK_TRADE_AMOUNT:
            raise ParameterError(f"MaxBlockAmountInvalid: {self.max_block_trade_amount}")
        if self.max_position < self.max_block_trade_amount:
            raise ParameterError(f"MaxPositionSize below block cap: {self.max_position}")
        if not c.MIN_INSURANCE_FEE <= self.insurance_fee <= c.MAX_INSURANCE_FEE:
            raise ParameterError(f"InsuranceFeeInvalid: {self.insurance_fee}")
        if not c.MIN_LP_DEBT_COEF <= self.lp_debt_coef <= c.MAX_LP_DEBT_COEF:
            raise ParameterError(f"LpDebtCoefInvalid: {self.lp_debt_coef}")
        if not c.MIN_LOCK_PERIOD <= self.lock_period <= c.MAX_LOCK_PERIOD:
            raise ParameterError(f"LockPeriodInvalid: {self.lock_period}")

    def to_dict(self) -> Dict[str, Any]:
        return {k: str(v) for k, v in asdict(self).items()}
