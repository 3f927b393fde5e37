"""
perpx Clearing House

Orchestrator of all perpetual markets.  Every account action follows the
same state machine:

  1. settle funding (and LP trading fees) of the account in every market
  2. perform the action in the market
  3. book realized PnL in the vault, fees in the insurance fund
  4. post-check margin; any failure rolls everything back

Margin model:
  - margin_ratio    = min(reserve, reserve + pnl) / debt
  - free_collateral = min(reserve, reserve + pnl) - debt * ratio
  - reserve: discounted vault value; pnl: unrealized (index price) +
    pending funding + pending LP trading fees across markets
  - debt per market: risk_weight * (trader debt + LP debt)

Security features:
  - Atomic mutators (snapshot / restore on any exception)
  - min_margin_at_creation after risk-increasing actions
  - Minimum open notional for voluntary changes
  - Provided liquidity bounded by free collateral
  - Liquidation only below min_margin, always in full
  - Emergency pause
"""

from __future__ import annotations

import functools
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from ..constants import LIQUIDITY_PROVISION_MULTIPLIER, VBASE_INDEX, VQUOTE_INDEX, ZERO
from ..exceptions import InvariantViolation, MarginError, ValidationError
from .fixed_point import wad_div, wad_mul
from .funding import FundingUpdate
from .insurance import InsuranceFund
from .params import ClearingHouseParams
from .perpetual import Perpetual
from .positions import LiquidityResult, Side, TradeResult
from .vault import TokenRef, Vault

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def atomic(method: F) -> F:
    """Run a ClearingHouse mutator as one unit: restore all state on failure."""

    @functools.wraps(method)
    def wrapper(self: "ClearingHouse", *args: Any, **kwargs: Any) -> Any:
        if self._in_transaction:
            return method(self, *args, **kwargs)
        snap = self.snapshot()
        self._in_transaction = True
        try:
            return method(self, *args, **kwargs)
        except Exception:
            self.restore(snap)
            raise
        finally:
            self._in_transaction = False

    return wrapper  # type: ignore[return-value]


class ClearingHouse:
    """
    Cross-market margin, liquidation and settlement engine.

    Security:
      - Sole holder of the market mutation capability
      - All-or-nothing mutators
      - Emergency pause
    """

    def __init__(
        self,
        vault: Vault,
        insurance: InsuranceFund,
        params: Optional[ClearingHouseParams] = None,
    ) -> None:
        params = params or ClearingHouseParams()
        params.validate()
        self.vault = vault
        self.insurance = insurance
        self.params = params
        self.perpetuals: List[Perpetual] = []
        self._paused = False
        self._in_transaction = False

    @property
    def market_count(self) -> int:
        return len(self.perpetuals)

    # -- Governance ---------------------------------------------------------

    def add_market(self, perpetual: Perpetual) -> int:
        if any(p is perpetual for p in self.perpetuals):
            raise ValidationError(f"Market {perpetual.name} already added")
        idx = len(self.perpetuals)
        perpetual.bind(self, idx)
        self.perpetuals.append(perpetual)
        logger.info("Market %d added: %s", idx, perpetual.name)
        return idx

    def set_parameters(self, params: ClearingHouseParams) -> None:
        params.validate()
        self.params = params
        logger.info("Clearing house parameters updated: %s", params.to_dict())

    def set_market_parameters(self, idx: int, params: Any) -> None:
        self.get_market(idx).set_parameters(self, params)

    def pause(self) -> None:
        self._paused = True
        logger.warning("Clearing house paused")

    def unpause(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause_market(self, idx: int) -> None:
        self.get_market(idx).pause(self)

    def unpause_market(self, idx: int) -> None:
        self.get_market(idx).unpause(self)

    def get_market(self, idx: int) -> Perpetual:
        if not 0 <= idx < len(self.perpetuals):
            raise ValidationError(f"Invalid market index: {idx}")
        return self.perpetuals[idx]

    def _check_active(self) -> None:
        if self._paused:
            raise InvariantViolation("Clearing house is paused — emergency mode")

    # -- Funding ------------------------------------------------------------

    @atomic
    def update_global_state(self, idx: int) -> Optional[FundingUpdate]:
        """Idempotent per-block funding trigger for one market."""
        return self.get_market(idx).update_global_state()

    def _settle_funding(self, account: str) -> Decimal:
        """Settle funding and LP fees of ``account`` in every market."""
        total = ZERO
        for perpetual in self.perpetuals:
            perpetual.update_global_state()
            total += perpetual.settle_trader(self, account)
            total += perpetual.settle_lp(self, account)
        self.vault.settle_pnl(account, total)
        return total

    # -- Collateral ---------------------------------------------------------

    @atomic
    def deposit(self, account: str, amount: Decimal, token: TokenRef = 0) -> None:
        self._check_active()
        self.vault.deposit(account, amount, token)
        logger.info("%s deposited %s of collateral %s", account, amount, token)

    @atomic
    def withdraw(self, account: str, amount: Decimal, token: TokenRef = 0) -> None:
        self._check_active()
        self._settle_funding(account)
        self.vault.withdraw(account, amount, token)
        if self.get_free_collateral_by_ratio(account, self.params.min_margin_at_creation) < 0:
            raise MarginError("WithdrawInsufficientMargin")
        logger.info("%s withdrew %s of collateral %s", account, amount, token)

    @atomic
    def withdraw_all(self, account: str, token: TokenRef = 0) -> Decimal:
        self._check_active()
        self._settle_funding(account)
        amount = self.vault.withdraw_all(account, token)
        if self.get_free_collateral_by_ratio(account, self.params.min_margin_at_creation) < 0:
            raise MarginError("WithdrawInsufficientMargin")
        return amount

    # -- Trading ------------------------------------------------------------

    @atomic
    def change_position(
        self,
        account: str,
        idx: int,
        amount: Decimal,
        min_amount: Decimal,
        direction: Side,
    ) -> TradeResult:
        """
        Open, extend, reduce or close a trader position.

        Raises:
            MarginError: free collateral negative afterwards
            InvariantViolation: UnderOpenNotionalAmountRequired, caps, reversal
        """
        self._check_active()
        if amount <= 0:
            raise ValidationError("ChangePositionZeroAmount")
        perpetual = self.get_market(idx)
        self._settle_funding(account)

        result = perpetual.change_position(self, account, amount, min_amount, direction)
        self.vault.settle_pnl(account, result.pnl)
        self.insurance.fund_insurance(result.insurance_fees)

        if perpetual.is_trader_position_open(account):
            open_notional = abs(perpetual.trader_positions[account].open_notional)
            if open_notional < self.params.min_positive_open_notional:
                raise InvariantViolation(
                    f"UnderOpenNotionalAmountRequired: {open_notional} < "
                    f"{self.params.min_positive_open_notional}"
                )

        ratio = self.params.min_margin_at_creation if result.is_position_increased else self.params.min_margin
        self._require_margin(account, ratio)
        return result

    @atomic
    def extend_position_with_collateral(
        self,
        account: str,
        idx: int,
        collateral_amount: Decimal,
        token: TokenRef,
        amount: Decimal,
        min_amount: Decimal,
        direction: Side,
    ) -> TradeResult:
        self.deposit(account, collateral_amount, token)
        return self.change_position(account, idx, amount, min_amount, direction)

    @atomic
    def open_reverse_position(
        self,
        account: str,
        idx: int,
        close_proposed_amount: Decimal,
        close_min_amount: Decimal,
        open_amount: Decimal,
        open_min_amount: Decimal,
        direction: Side,
    ) -> Tuple[TradeResult, TradeResult]:
        """Close the current position in full, then open ``direction``."""
        perpetual = self.get_market(idx)
        if not perpetual.is_trader_position_open(account):
            raise InvariantViolation("NoOpenPosition")
        if perpetual.trader_positions[account].side == direction:
            raise ValidationError(f"Position is already {direction.value}")

        closed = self.change_position(account, idx, close_proposed_amount, close_min_amount, direction)
        if perpetual.is_trader_position_open(account):
            raise InvariantViolation("ClosePositionStillOpen")
        opened = self.change_position(account, idx, open_amount, open_min_amount, direction)
        return closed, opened

    # -- Liquidity ----------------------------------------------------------

    @atomic
    def provide_liquidity(
        self,
        account: str,
        idx: int,
        amounts: Sequence[Decimal],
        min_lp_amount: Decimal = ZERO,
    ) -> LiquidityResult:
        self._check_active()
        perpetual = self.get_market(idx)
        if len(amounts) != 2 or amounts[VQUOTE_INDEX] <= 0 or amounts[VBASE_INDEX] <= 0:
            raise ValidationError("ProvideLiquidityZeroAmount")
        self._settle_funding(account)

        value = amounts[VQUOTE_INDEX] + wad_mul(amounts[VBASE_INDEX], perpetual.index_price)
        free = self.get_free_collateral_by_ratio(account, self.params.min_margin_at_creation)
        if value > free * LIQUIDITY_PROVISION_MULTIPLIER:
            raise MarginError(
                f"AmountProvidedTooLarge: {value} > {LIQUIDITY_PROVISION_MULTIPLIER} x {free}"
            )

        result = perpetual.provide_liquidity(self, account, (amounts[VQUOTE_INDEX], amounts[VBASE_INDEX]),
                                             min_lp_amount)
        self.vault.settle_pnl(account, result.pnl)
        self._require_margin(account, self.params.min_margin_at_creation)
        return result

    @atomic
    def remove_liquidity(
        self,
        account: str,
        idx: int,
        liquidity_amount: Decimal,
        min_vtoken_amounts: Sequence[Decimal] = (ZERO, ZERO),
        proposed_amount: Decimal = ZERO,
        min_amount: Decimal = ZERO,
    ) -> LiquidityResult:
        self._check_active()
        perpetual = self.get_market(idx)
        self._settle_funding(account)

        result = perpetual.remove_liquidity(
            self, account, liquidity_amount, tuple(min_vtoken_amounts), proposed_amount, min_amount
        )
        self.vault.settle_pnl(account, result.pnl)
        self.insurance.fund_insurance(result.insurance_fees)
        self._require_margin(account, self.params.min_margin)
        return result

    # -- Liquidation --------------------------------------------------------

    @atomic
    def liquidate(
        self,
        liquidator: str,
        idx: int,
        liquidatee: str,
        proposed_amount: Decimal,
        is_trader: bool = True,
        min_amount: Decimal = ZERO,
    ) -> Decimal:
        """
        Force-close an undercollateralized trader or LP position in full.

        Returns:
            The reward paid to the liquidator

        Raises:
            InvariantViolation: LiquidateInvalidPosition,
                LiquidateInsufficientProposedAmount
            MarginError: LiquidateValidMargin
        """
        self._check_active()
        if liquidator == liquidatee:
            raise ValidationError("Cannot liquidate own position")
        perpetual = self.get_market(idx)
        self._settle_funding(liquidatee)

        if is_trader:
            if not perpetual.is_trader_position_open(liquidatee):
                raise InvariantViolation("LiquidateInvalidPosition")
            open_notional = abs(perpetual.trader_positions[liquidatee].open_notional)
        else:
            if not perpetual.is_lp_position_open(liquidatee):
                raise InvariantViolation("LiquidateInvalidPosition")
            open_notional = abs(perpetual.lp_positions[liquidatee].open_notional)

        if self.is_margin_valid(liquidatee, self.params.min_margin):
            raise MarginError("LiquidateValidMargin")

        if is_trader:
            direction = perpetual.trader_positions[liquidatee].side.opposite
            result: Any = perpetual.change_position(
                self, liquidatee, proposed_amount, min_amount, direction, is_liquidation=True
            )
            still_open = perpetual.is_trader_position_open(liquidatee)
        else:
            balance = perpetual.lp_positions[liquidatee].liquidity_balance
            result = perpetual.remove_liquidity(
                self, liquidatee, balance, (ZERO, ZERO), proposed_amount, min_amount, is_liquidation=True
            )
            still_open = perpetual.is_lp_position_open(liquidatee)
        if still_open:
            raise InvariantViolation("LiquidateInsufficientProposedAmount")

        reward = wad_mul(open_notional, self.params.liquidation_reward)
        insurance_part = wad_mul(reward, self.params.liquidation_reward_insurance_share)
        liquidator_part = reward - insurance_part

        self.vault.settle_pnl(liquidatee, result.pnl - reward)
        self.vault.settle_pnl(liquidator, liquidator_part)
        self.insurance.fund_insurance(insurance_part + result.insurance_fees)

        logger.info(
            "Liquidated %s %s in market %d by %s: notional=%s reward=%s insurance=%s",
            "trader" if is_trader else "LP", liquidatee, idx, liquidator,
            open_notional, liquidator_part, insurance_part,
        )
        return liquidator_part

    @atomic
    def seize_collateral(self, liquidator: str, liquidatee: str) -> Decimal:
        """
        Sell a closed-out account's non-quote collateral to cover its quote debt.

        Returns:
            Quote paid by the liquidator
        """
        self._check_active()
        if liquidator == liquidatee:
            raise ValidationError("Cannot seize own collateral")
        self._settle_funding(liquidatee)
        for perpetual in self.perpetuals:
            if perpetual.is_trader_position_open(liquidatee) or perpetual.is_lp_position_open(liquidatee):
                raise InvariantViolation("SeizeCollateralStillOpen")

        quote_balance = self.vault.get_balance(liquidatee, 0)
        if quote_balance >= 0:
            raise ValidationError("LiquidationDebtSizeZero")
        debt = -quote_balance
        collateral_value = self.vault.get_non_quote_value(liquidatee, discounted=True)
        seizable = (
            debt > wad_mul(collateral_value, self.params.non_ua_coll_seizure_discount)
            or debt > self.params.ua_debt_seizure_threshold
        )
        if not seizable:
            raise MarginError("SufficientUserCollateral")

        paid = self.vault.settle_liquidation_on_collaterals(
            liquidator, liquidatee, self.params.liquidation_discount
        )
        logger.info("Seized collateral of %s: debt=%s paid=%s", liquidatee, debt, paid)
        return paid

    # -- Dust ---------------------------------------------------------------

    @atomic
    def sell_dust(self, idx: int, proposed_amount: Decimal, min_amount: Decimal = ZERO) -> TradeResult:
        """Realize a market's house dust position into the insurance fund."""
        self._check_active()
        result = self.get_market(idx).sell_dust(self, proposed_amount, min_amount)
        if result.pnl > 0:
            self.insurance.fund_insurance(result.pnl)
        elif result.pnl < 0:
            self.insurance.settle_debt(-result.pnl)
        return result

    # -- Margin views -------------------------------------------------------

    def get_pnl_across_markets(self, account: str) -> Decimal:
        total = ZERO
        for perpetual in self.perpetuals:
            if perpetual.is_trader_position_open(account):
                total += perpetual.get_trader_unrealized_pnl(account)
                total += perpetual.get_trader_pending_funding(account)
            if perpetual.is_lp_position_open(account):
                total += perpetual.get_lp_unrealized_pnl(account)
                total += perpetual.get_lp_pending_payments(account)
        return total

    def get_debt_across_markets(self, account: str) -> Decimal:
        total = ZERO
        for perpetual in self.perpetuals:
            debt = perpetual.get_trader_debt(account) + perpetual.get_lp_debt(account)
            if debt > 0:
                total += wad_mul(debt, perpetual.params.risk_weight)
        return total

    def _margin_basis(self, account: str) -> Decimal:
        reserve = self.vault.get_reserve_value(account, discounted=True)
        pnl = self.get_pnl_across_markets(account)
        return min(reserve, reserve + pnl)

    def get_margin_ratio(self, account: str) -> Optional[Decimal]:
        """None when the account carries no debt."""
        debt = self.get_debt_across_markets(account)
        if debt == 0:
            return None
        return wad_div(self._margin_basis(account), debt)

    def get_free_collateral_by_ratio(self, account: str, ratio: Decimal) -> Decimal:
        debt = self.get_debt_across_markets(account)
        return self._margin_basis(account) - wad_mul(debt, ratio)

    def get_free_collateral(self, account: str) -> Decimal:
        return self.get_free_collateral_by_ratio(account, self.params.min_margin_at_creation)

    def is_margin_valid(self, account: str, ratio: Decimal) -> bool:
        return self.get_free_collateral_by_ratio(account, ratio) >= 0

    def _require_margin(self, account: str, ratio: Decimal) -> None:
        free = self.get_free_collateral_by_ratio(account, ratio)
        if free < 0:
            raise MarginError(f"InsufficientMargin: free collateral {free} at ratio {ratio}")

    # -- Snapshot -----------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "markets": [p.snapshot() for p in self.perpetuals],
            "vault": self.vault.snapshot(),
            "insurance": self.insurance.snapshot(),
            "params": self.params,
            "paused": self._paused,
        }

    def restore(self, snap: Dict[str, Any]) -> None:
        for perpetual, market_snap in zip(self.perpetuals, snap["markets"]):
            perpetual.restore(market_snap)
        self.vault.restore(snap["vault"])
        self.insurance.restore(snap["insurance"])
        self.params = snap["params"]
        self._paused = snap["paused"]
