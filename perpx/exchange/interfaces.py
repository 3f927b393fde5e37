"""
perpx Collaborator Interfaces

Structural types of the components the clearing house and the markets talk
to.  The bundled PriceOracle, InsuranceFund and ConstantProductPool
satisfy them; any replacement only has to match the shape.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Protocol, Sequence, Tuple


# ---------------------------------------------------------------------------
# Price source
# ---------------------------------------------------------------------------

class IndexOracle(Protocol):
    """Validated index prices keyed by asset symbol."""

    def get_price(self, asset: str, balance_hint: Decimal = ...) -> Decimal: ...


# ---------------------------------------------------------------------------
# Virtual-token pool
# ---------------------------------------------------------------------------

class AmmPool(Protocol):
    """Two-token pool of virtual quote (index 0) and virtual base (index 1)."""

    balances: List[Decimal]
    total_supply: Decimal
    fee: Decimal

    @property
    def last_price(self) -> Decimal: ...

    def get_dy(self, i: int, j: int, dx: Decimal) -> Decimal: ...
    def get_dy_ex_fees(self, i: int, j: int, dx: Decimal) -> Decimal: ...
    def get_dx_ex_fees(self, i: int, j: int, dy: Decimal) -> Decimal: ...
    def swap(self, i: int, j: int, dx: Decimal, min_dy: Decimal = ...) -> Tuple[Decimal, Decimal]: ...
    def add_liquidity(self, amounts: Sequence[Decimal], min_mint_amount: Decimal = ...) -> Decimal: ...
    def remove_liquidity(self, amount: Decimal, min_amounts: Sequence[Decimal] = ...) -> List[Decimal]: ...
    def calc_withdraw(self, amount: Decimal) -> List[Decimal]: ...
    def snapshot(self) -> dict: ...
    def restore(self, snap: dict) -> None: ...


# ---------------------------------------------------------------------------
# Backstop
# ---------------------------------------------------------------------------

class InsuranceBackstop(Protocol):
    """Quote-denominated backstop fund."""

    system_bad_debt: Decimal

    def fund_insurance(self, amount: Decimal) -> None: ...
    def settle_debt(self, amount: Decimal) -> Decimal: ...

