"""
perpx Insurance Fund

Backstop of the exchange, denominated in the quote token.  Receives the
insurance fee of every trade, the insurance share of liquidation rewards and
the profit of dust sales; pays out uncovered account debt.  Debt it cannot
cover is recorded as system bad debt.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict

from ..constants import ZERO
from ..exceptions import InvariantViolation, ValidationError
from .fixed_point import wad_mul

logger = logging.getLogger(__name__)


class InsuranceFund:

    def __init__(self) -> None:
        self.balance: Decimal = ZERO
        self.system_bad_debt: Decimal = ZERO

    def fund_insurance(self, amount: Decimal) -> None:
        if amount < 0:
            raise ValidationError("Insurance funding must be non-negative")
        self.balance += amount

    def settle_debt(self, amount: Decimal) -> Decimal:
        """
        Cover ``amount`` of account debt.

        Returns:
            The part actually paid out of the fund; the rest becomes bad debt
        """
        if amount < 0:
            raise ValidationError("Debt amount must be non-negative")
        paid = min(amount, self.balance)
        self.balance -= paid
        shortfall = amount - paid
        if shortfall > 0:
            self.system_bad_debt += shortfall
            logger.warning(
                "Insurance fund exhausted: %s of debt recorded as bad debt (total %s)",
                shortfall, self.system_bad_debt,
            )
        return paid

    def remove_insurance(self, amount: Decimal, tvl: Decimal, insurance_ratio: Decimal) -> Decimal:
        """Withdraw ``amount`` while keeping at least insurance_ratio * TVL."""
        if amount <= 0:
            raise ValidationError("Withdraw amount must be positive")
        floor = wad_mul(tvl, insurance_ratio)
        if self.balance - amount < floor:
            raise InvariantViolation(
                f"InsufficientInsurance: {self.balance - amount} left, floor {floor}"
            )
        self.balance -= amount
        return amount

    def snapshot(self) -> Dict[str, Decimal]:
        return {"balance": self.balance, "system_bad_debt": self.system_bad_debt}

    def restore(self, snap: Dict[str, Decimal]) -> None:
        self.balance = snap["balance"]
        self.system_bad_debt = snap["system_bad_debt"]
