"""
perpx Clearing House Viewer

Read-only queries over a ClearingHouse: positions, pending payments and the
helpers a client needs to build a closing trade.
"""

from __future__ import annotations

from decimal import Decimal

from ..constants import VBASE_INDEX, VQUOTE_INDEX, ZERO
from .clearing_house import ClearingHouse
from .fixed_point import wad_div, wad_mul
from .perpetual import Perpetual
from .positions import GlobalPosition, LiquidityProviderPosition, TraderPosition
from .funding import lp_trading_fees


class ClearingHouseViewer:

    def __init__(self, clearing_house: ClearingHouse) -> None:
        self.clearing_house = clearing_house

    def _market(self, idx: int) -> Perpetual:
        return self.clearing_house.get_market(idx)

    # -- Positions ----------------------------------------------------------

    def get_trader_position(self, idx: int, account: str) -> TraderPosition:
        return self._market(idx).get_trader_position(account)

    def get_lp_position(self, idx: int, account: str) -> LiquidityProviderPosition:
        return self._market(idx).get_lp_position(account)

    def get_global_position(self, idx: int) -> GlobalPosition:
        return self._market(idx).get_global_position()

    def is_position_open(self, idx: int, account: str) -> bool:
        return self._market(idx).is_trader_position_open(account)

    def is_lp_position_open(self, idx: int, account: str) -> bool:
        return self._market(idx).is_lp_position_open(account)

    def get_base_dust(self, idx: int) -> Decimal:
        return self._market(idx).base_dust

    # -- Pending payments ---------------------------------------------------

    def get_trader_funding_payment(self, idx: int, account: str) -> Decimal:
        return self._market(idx).get_trader_pending_funding(account)

    def get_lp_funding_and_fees(self, idx: int, account: str) -> Decimal:
        return self._market(idx).get_lp_pending_payments(account)

    def get_lp_trading_fees(self, idx: int, account: str) -> Decimal:
        market = self._market(idx)
        lp = market.lp_positions.get(account)
        if lp is None:
            return ZERO
        return lp_trading_fees(lp, market.global_position)

    def get_trader_unrealized_pnl(self, idx: int, account: str) -> Decimal:
        return self._market(idx).get_trader_unrealized_pnl(account)

    def get_lp_position_after_withdrawal(self, idx: int, account: str) -> TraderPosition:
        return self._market(idx).get_lp_position_after_withdrawal(account)

    # -- Trade helpers ------------------------------------------------------

    def get_close_proposed_amount(self, idx: int, account: str) -> Decimal:
        """
        Amount to pass to change_position to close a trader position.

        A long sells its whole size; a short needs the quote that buys back
        its size, fees excluded.
        """
        market = self._market(idx)
        position = market.trader_positions.get(account)
        if position is None or position.position_size == 0:
            return ZERO
        if position.position_size > 0:
            return position.position_size
        return market.pool.get_dx_ex_fees(VQUOTE_INDEX, VBASE_INDEX, -position.position_size)

    def get_lp_close_proposed_amount(self, idx: int, account: str, liquidity_amount: Decimal) -> Decimal:
        """Same as get_close_proposed_amount for the residual of an LP withdrawal."""
        market = self._market(idx)
        lp = market.lp_positions.get(account)
        if lp is None or liquidity_amount <= 0 or liquidity_amount > lp.liquidity_balance:
            return ZERO

        _, base_ex = market.liquidity.withdrawable_tokens(lp, liquidity_amount)
        if liquidity_amount == lp.liquidity_balance:
            size = lp.position_size + base_ex
        else:
            size = wad_mul(lp.position_size, wad_div(liquidity_amount, lp.liquidity_balance)) + base_ex
        if size >= 0:
            return size

        released = market.pool.calc_withdraw(liquidity_amount)
        pool_snapshot = market.pool.snapshot()
        try:
            market.pool.balances[VQUOTE_INDEX] -= released[VQUOTE_INDEX]
            market.pool.balances[VBASE_INDEX] -= released[VBASE_INDEX]
            return market.pool.get_dx_ex_fees(VQUOTE_INDEX, VBASE_INDEX, -size)
        finally:
            market.pool.restore(pool_snapshot)
