"""
perpx Virtual AMM Pool

Two-asset constant-product pool holding the virtual quote (index 0) and
virtual base (index 1) tokens of one perpetual market:
  - Exact-in swaps along x * y = k
  - Swap fee charged on the output token and left in the pool
  - Proportional LP share tokens (mint on add, burn on remove)
  - Read-only quotes: get_dy, get_dy_ex_fees, get_dx_ex_fees

Security features:
  - Slippage protection (min_dy on every swap, min amounts on removal)
  - Reentrancy lock on swap + liquidity mutations
  - Emergency pause
"""

from __future__ import annotations

import logging
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import List, Sequence, Tuple

from ..constants import DEFAULT_POOL_FEE, MAX_POOL_FEE, VBASE_INDEX, VQUOTE_INDEX, WAD_QUANTUM, ZERO
from ..exceptions import InvariantViolation, SlippageError, ValidationError
from .fixed_point import wad_div, wad_mul

logger = logging.getLogger(__name__)

N_COINS = 2


class ConstantProductPool:
    """
    In-memory vAMM backing one perpetual market.

    Implements:
      - Swap (exact-in) with slippage protection
      - Add / remove liquidity against an LP share supply
      - Reentrancy protection
    """

    def __init__(self, fee: Decimal = DEFAULT_POOL_FEE, name: str = "") -> None:
        if fee < 0 or fee >= MAX_POOL_FEE:
            raise ValidationError(f"Pool fee must be in [0, {MAX_POOL_FEE})")
        self.name = name
        self.fee = fee
        self.balances: List[Decimal] = [ZERO, ZERO]
        self.total_supply: Decimal = ZERO
        self._locked: bool = False   # reentrancy guard
        self._paused: bool = False   # emergency pause

    # -- Reentrancy guard ---------------------------------------------------

    def _acquire_lock(self) -> None:
        if self._locked:
            raise InvariantViolation("Reentrancy detected — pool is locked")
        self._locked = True

    def _release_lock(self) -> None:
        self._locked = False

    # -- Emergency controls -------------------------------------------------

    def pause(self) -> None:
        self._paused = True

    def unpause(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    def _check_active(self) -> None:
        if self._paused:
            raise InvariantViolation("Pool is paused — emergency mode")

    # -- Views --------------------------------------------------------------

    @property
    def last_price(self) -> Decimal:
        """Spot price of one base token in quote."""
        if self.balances[VBASE_INDEX] <= 0:
            return ZERO
        return wad_div(self.balances[VQUOTE_INDEX], self.balances[VBASE_INDEX])

    @property
    def has_liquidity(self) -> bool:
        return self.balances[VQUOTE_INDEX] > 0 and self.balances[VBASE_INDEX] > 0

    @staticmethod
    def _check_indices(i: int, j: int) -> None:
        if i == j or i not in (VQUOTE_INDEX, VBASE_INDEX) or j not in (VQUOTE_INDEX, VBASE_INDEX):
            raise ValidationError(f"Invalid token indices: {i}, {j}")

    def get_dy_ex_fees(self, i: int, j: int, dx: Decimal) -> Decimal:
        """Output of selling ``dx`` of token i before the swap fee."""
        self._check_indices(i, j)
        if dx <= 0 or not self.has_liquidity:
            return ZERO
        x, y = self.balances[i], self.balances[j]
        return (y * dx / (x + dx)).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)

    def get_dy(self, i: int, j: int, dx: Decimal) -> Decimal:
        """Output of selling ``dx`` of token i after the swap fee."""
        dy = self.get_dy_ex_fees(i, j, dx)
        return dy - wad_mul(dy, self.fee)

    def get_dx_ex_fees(self, i: int, j: int, dy: Decimal) -> Decimal:
        """Input of token i needed to receive ``dy`` of token j before fees."""
        self._check_indices(i, j)
        x, y = self.balances[i], self.balances[j]
        if dy <= 0:
            return ZERO
        if dy >= y:
            raise InvariantViolation("MarketBalanceTooLow")
        # round up so that get_dy_ex_fees(dx) >= dy
        return (x * dy / (y - dy)).quantize(WAD_QUANTUM, rounding=ROUND_UP) + WAD_QUANTUM

    # -- Swap ---------------------------------------------------------------

    def swap(self, i: int, j: int, dx: Decimal, min_dy: Decimal = ZERO) -> Tuple[Decimal, Decimal]:
        """
        Sell ``dx`` of token i for token j.

        Returns:
            (amount_out, fee_amount): amount_out is net of the fee, which
            stays in the pool in token j.

        Raises:
            ValidationError: on zero amount or bad indices
            InvariantViolation: on empty pool, pause or reentrancy
            SlippageError: if amount_out < min_dy
        """
        self._check_active()
        self._check_indices(i, j)
        if dx <= 0:
            raise ValidationError("Swap amount must be positive")
        if not self.has_liquidity:
            raise InvariantViolation("MarketBalanceTooLow: no liquidity in pool")

        self._acquire_lock()
        try:
            dy_ex = self.get_dy_ex_fees(i, j, dx)
            fee_amount = wad_mul(dy_ex, self.fee)
            amount_out = dy_ex - fee_amount
            if amount_out <= 0:
                raise InvariantViolation("MarketBalanceTooLow: swap output is zero")
            if amount_out < min_dy:
                raise SlippageError(
                    f"Slippage exceeded: got {amount_out}, min {min_dy}"
                )
            self.balances[i] += dx
            self.balances[j] -= amount_out
            return amount_out, fee_amount
        finally:
            self._release_lock()

    # -- Liquidity ----------------------------------------------------------

    def add_liquidity(self, amounts: Sequence[Decimal], min_mint_amount: Decimal = ZERO) -> Decimal:
        """
        Deposit both tokens and mint LP shares.

        The first deposit mints sqrt(quote * base) shares; later deposits mint
        pro rata to the scarcer side of the current balances.
        """
        self._check_active()
        if len(amounts) != N_COINS:
            raise ValidationError("Exactly two token amounts required")
        quote_in, base_in = amounts[VQUOTE_INDEX], amounts[VBASE_INDEX]
        if quote_in < 0 or base_in < 0 or (quote_in == 0 and base_in == 0):
            raise ValidationError("Liquidity amounts must be non-negative and not both zero")

        self._acquire_lock()
        try:
            if self.total_supply == 0:
                if quote_in == 0 or base_in == 0:
                    raise ValidationError("Initial liquidity requires both tokens")
                minted = (quote_in * base_in).sqrt().quantize(WAD_QUANTUM, rounding=ROUND_DOWN)
            else:
                shares = []
                for idx, amount in enumerate((quote_in, base_in)):
                    if self.balances[idx] > 0:
                        shares.append(amount * self.total_supply / self.balances[idx])
                minted = min(shares).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)
            if minted <= 0:
                raise ValidationError("Liquidity too small to mint shares")
            if minted < min_mint_amount:
                raise SlippageError(
                    f"Slippage exceeded: minted {minted}, min {min_mint_amount}"
                )
            first_deposit = self.total_supply == 0
            self.balances[VQUOTE_INDEX] += quote_in
            self.balances[VBASE_INDEX] += base_in
            self.total_supply += minted
            if first_deposit:
                logger.info("Pool %s seeded at price %s", self.name, self.last_price)
            return minted
        finally:
            self._release_lock()

    def calc_withdraw(self, amount: Decimal) -> List[Decimal]:
        """Pro-rata token amounts released by burning ``amount`` shares."""
        if amount <= 0 or self.total_supply <= 0:
            return [ZERO, ZERO]
        return [
            (balance * amount / self.total_supply).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)
            for balance in self.balances
        ]

    def remove_liquidity(
        self,
        amount: Decimal,
        min_amounts: Sequence[Decimal] = (ZERO, ZERO),
    ) -> List[Decimal]:
        """Burn ``amount`` shares for a pro-rata share of both balances."""
        self._check_active()
        if amount <= 0:
            raise ValidationError("Withdraw amount must be positive")
        if amount > self.total_supply:
            raise InvariantViolation("MarketBalanceTooLow: burn exceeds supply")

        self._acquire_lock()
        try:
            out = self.calc_withdraw(amount)
            for idx in (VQUOTE_INDEX, VBASE_INDEX):
                if out[idx] < min_amounts[idx]:
                    raise SlippageError(
                        f"Slippage exceeded: token {idx} released {out[idx]}, min {min_amounts[idx]}"
                    )
            self.balances[VQUOTE_INDEX] -= out[VQUOTE_INDEX]
            self.balances[VBASE_INDEX] -= out[VBASE_INDEX]
            self.total_supply -= amount
            return out
        finally:
            self._release_lock()

    # -- Snapshot -----------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "balances": list(self.balances),
            "total_supply": self.total_supply,
            "paused": self._paused,
        }

    def restore(self, snap: dict) -> None:
        self.balances = list(snap["balances"])
        self.total_supply = snap["total_supply"]
        self._paused = snap["paused"]
        self._locked = False
