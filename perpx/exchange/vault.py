"""
perpx Collateral Vault

Per-account signed balances for every whitelisted collateral.  Index 0 is
always the quote token (UA), the unit PnL, fees and funding settle in; its
balance may go negative (debt).  Other collaterals are valued through the
oracle and discounted by their weight.

Security features:
  - Collateral whitelist with per-token deposit cap
  - Weight bounded to [0.1, 1]
  - No withdrawals while the account owes quote
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Union

from ..constants import MAX_COLLATERAL_WEIGHT, MIN_COLLATERAL_WEIGHT, ONE, QUOTE_TOKEN, ZERO
from ..exceptions import InvariantViolation, ValidationError
from .fixed_point import wad_div, wad_mul
from .interfaces import IndexOracle, InsuranceBackstop

logger = logging.getLogger(__name__)

TokenRef = Union[int, str]


@dataclass
class Collateral:
    token: str
    weight: Decimal
    price_asset: Optional[str]          # None = valued at 1 quote
    max_amount: Decimal
    current_amount: Decimal = ZERO


class Vault:
    """Collateral custody and valuation."""

    def __init__(self, oracle: IndexOracle, insurance: InsuranceBackstop,
                 quote_max_amount: Decimal = Decimal("1000000000")) -> None:
        self.oracle = oracle
        self.insurance = insurance
        self.collaterals: List[Collateral] = [
            Collateral(token=QUOTE_TOKEN, weight=ONE, price_asset=None, max_amount=quote_max_amount)
        ]
        self.balances: Dict[str, Dict[int, Decimal]] = {}

    # -- Whitelist ----------------------------------------------------------

    def add_collateral(self, token: str, weight: Decimal, price_asset: Optional[str] = None,
                       max_amount: Decimal = Decimal("1000000000")) -> int:
        if not token:
            raise ValidationError("Collateral token required")
        if any(c.token == token for c in self.collaterals):
            raise ValidationError(f"CollateralAlreadyWhiteListed: {token}")
        self._check_weight(weight)
        if max_amount <= 0:
            raise ValidationError("Max collateral amount must be positive")
        self.collaterals.append(
            Collateral(token=token, weight=weight, price_asset=price_asset or token, max_amount=max_amount)
        )
        logger.info("Collateral %s whitelisted (weight %s)", token, weight)
        return len(self.collaterals) - 1

    def change_collateral_weight(self, token: TokenRef, weight: Decimal) -> None:
        self._check_weight(weight)
        self.collaterals[self._token_index(token)].weight = weight

    def change_collateral_max_amount(self, token: TokenRef, max_amount: Decimal) -> None:
        if max_amount <= 0:
            raise ValidationError("Max collateral amount must be positive")
        self.collaterals[self._token_index(token)].max_amount = max_amount

    @staticmethod
    def _check_weight(weight: Decimal) -> None:
        if not MIN_COLLATERAL_WEIGHT <= weight <= MAX_COLLATERAL_WEIGHT:
            raise ValidationError(f"WeightExceedsBounds: {weight}")

    def _token_index(self, token: TokenRef) -> int:
        if isinstance(token, int):
            if not 0 <= token < len(self.collaterals):
                raise ValidationError(f"UnsupportedCollateral: {token}")
            return token
        for idx, collateral in enumerate(self.collaterals):
            if collateral.token == token:
                return idx
        raise ValidationError(f"UnsupportedCollateral: {token}")

    # -- Balances -----------------------------------------------------------

    def get_balance(self, account: str, token: TokenRef = 0) -> Decimal:
        return self.balances.get(account, {}).get(self._token_index(token), ZERO)

    def _add_balance(self, account: str, idx: int, amount: Decimal) -> None:
        account_balances = self.balances.setdefault(account, {})
        account_balances[idx] = account_balances.get(idx, ZERO) + amount

    def deposit(self, account: str, amount: Decimal, token: TokenRef = 0) -> None:
        if amount <= 0:
            raise ValidationError("DepositZeroAmount")
        idx = self._token_index(token)
        collateral = self.collaterals[idx]
        if collateral.current_amount + amount > collateral.max_amount:
            raise InvariantViolation(
                f"MaxCollateralAmountExceeded: {collateral.token} cap {collateral.max_amount}"
            )
        collateral.current_amount += amount
        self._add_balance(account, idx, amount)

    def withdraw(self, account: str, amount: Decimal, token: TokenRef = 0) -> None:
        if amount <= 0:
            raise ValidationError("WithdrawZeroAmount")
        idx = self._token_index(token)
        if self.get_balance(account, 0) < 0:
            raise InvariantViolation("UADebt: settle quote debt before withdrawing")
        if amount > self.get_balance(account, idx):
            raise InvariantViolation(
                f"InsufficientBalance: {self.get_balance(account, idx)} < {amount}"
            )
        self.collaterals[idx].current_amount -= amount
        self._add_balance(account, idx, -amount)

    def withdraw_all(self, account: str, token: TokenRef = 0) -> Decimal:
        amount = self.get_balance(account, token)
        if amount <= 0:
            raise ValidationError("WithdrawZeroAmount")
        self.withdraw(account, amount, token)
        return amount

    def settle_pnl(self, account: str, amount: Decimal) -> None:
        """Book realized PnL, fees or funding against the quote balance."""
        if amount != 0:
            self._add_balance(account, 0, amount)

    # -- Valuation ----------------------------------------------------------

    def collateral_price(self, idx: int, balance_hint: Decimal = ONE) -> Decimal:
        collateral = self.collaterals[idx]
        if collateral.price_asset is None:
            return ONE
        return self.oracle.get_price(collateral.price_asset, balance_hint)

    def get_reserve_value(self, account: str, discounted: bool = True) -> Decimal:
        """Quote value of all balances; positive balances weighted if ``discounted``."""
        total = ZERO
        for idx, balance in self.balances.get(account, {}).items():
            if balance == 0:
                continue
            value = wad_mul(balance, self.collateral_price(idx, balance))
            if discounted and balance > 0:
                value = wad_mul(value, self.collaterals[idx].weight)
            total += value
        return total

    def get_non_quote_value(self, account: str, discounted: bool = True) -> Decimal:
        total = ZERO
        for idx, balance in self.balances.get(account, {}).items():
            if idx == 0 or balance <= 0:
                continue
            value = wad_mul(balance, self.collateral_price(idx, balance))
            total += wad_mul(value, self.collaterals[idx].weight) if discounted else value
        return total

    def get_total_value_locked(self) -> Decimal:
        return sum(
            (wad_mul(c.current_amount, self.collateral_price(idx, c.current_amount))
             for idx, c in enumerate(self.collaterals)),
            ZERO,
        )

    # -- Liquidation --------------------------------------------------------

    def settle_liquidation_on_collaterals(self, liquidator: str, liquidatee: str,
                                          liquidation_discount: Decimal) -> Decimal:
        """
        Sell the liquidatee's non-quote collateral to the liquidator against
        its quote debt, 1:1.

        Collaterals are taken in whitelist order, each valued at its
        undiscounted price times ``liquidation_discount``.  Once the debt is
        covered only the needed fraction of the current collateral is sold.
        Debt still open after the last collateral goes to the insurance fund.

        Returns:
            Quote amount paid by the liquidator
        """
        if liquidator == liquidatee:
            raise ValidationError("Liquidator cannot be the liquidatee")
        debt = -self.get_balance(liquidatee, 0)
        if debt <= 0:
            raise ValidationError("LiquidationDebtSizeZero")

        sales = []
        remaining = debt
        for idx, balance in sorted(self.balances.get(liquidatee, {}).items()):
            if remaining <= 0:
                break
            if idx == 0 or balance <= 0:
                continue
            liquidation_value = wad_mul(
                wad_mul(balance, self.collateral_price(idx, balance)), liquidation_discount
            )
            if liquidation_value <= 0:
                continue
            if liquidation_value <= remaining:
                sales.append((idx, balance, liquidation_value))
                remaining -= liquidation_value
            else:
                amount = wad_mul(balance, wad_div(remaining, liquidation_value))
                sales.append((idx, amount, remaining))
                remaining = ZERO

        payment = sum((paid for _, _, paid in sales), ZERO)
        if payment > self.get_balance(liquidator, 0):
            raise InvariantViolation(
                f"InsufficientBalance: liquidator holds {self.get_balance(liquidator, 0)}, needs {payment}"
            )

        for idx, amount, _ in sales:
            self._add_balance(liquidatee, idx, -amount)
            self._add_balance(liquidator, idx, amount)
        self._add_balance(liquidator, 0, -payment)
        self._add_balance(liquidatee, 0, payment)

        if remaining > 0:
            self.insurance.settle_debt(remaining)
            self._add_balance(liquidatee, 0, remaining)

        logger.info(
            "Collateral of %s seized by %s: debt=%s paid=%s uncovered=%s",
            liquidatee, liquidator, debt, payment, remaining,
        )
        return payment

    # -- Snapshot -----------------------------------------------------------

    def snapshot(self) -> Dict[str, object]:
        return {
            "collaterals": copy.deepcopy(self.collaterals),
            "balances": copy.deepcopy(self.balances),
        }

    def restore(self, snap: Dict[str, object]) -> None:
        self.collaterals = copy.deepcopy(snap["collaterals"])
        self.balances = copy.deepcopy(snap["balances"])
