"""
perpx Perpetual Market

One vAMM-backed perpetual market: position ledger, trading engine and the
glue to its funding engine and liquidity accounting.

  - Trader positions are opened/extended by selling quote (long) or base
    (short) into the pool, and reduced by the reverse trade
  - Realized PnL on reduce: quote_proceeds + released_open_notional - fees
  - Trading fee (pool fee share of the quote leg) paid to LPs through
    total_trading_fees_growth; insurance fee routed to the insurance fund
  - Residual base up to DUST_THRESHOLD is swept into the house dust account
  - Funding accrues through the FundingEngine before any settlement

Security features:
  - Orchestrator capability: every mutation takes the bound clearing house
    as ``caller``
  - Reversal guard (a reduce never flips the side)
  - Per-block traded-notional cap and absolute position cap
  - Slippage protection (min_amount on every trade)
  - Oracle-backed index price, pool spot price only for trading
  - Emergency pause
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from ..constants import DUST_THRESHOLD, ONE, VBASE_INDEX, VQUOTE_INDEX, ZERO
from ..exceptions import AccessError, InvariantViolation, SlippageError, ValidationError
from .clock import BlockClock
from .fixed_point import clamp_ratio, wad_div, wad_mul
from .funding import FundingEngine, FundingUpdate, trader_funding_payment
from .liquidity import LiquidityAccounting
from .interfaces import AmmPool, IndexOracle
from .params import MarketParams
from .positions import (
    GlobalPosition,
    LiquidityProviderPosition,
    LiquidityResult,
    Side,
    TradeResult,
    TraderPosition,
)

logger = logging.getLogger(__name__)


class Perpetual:
    """
    A single perpetual market.

    Security:
      - Orchestrator-only mutation (capability check)
      - No silent position reversal
      - Block and position caps
      - Emergency pause
    """

    def __init__(
        self,
        pool: AmmPool,
        oracle: IndexOracle,
        clock: BlockClock,
        base_asset: str,
        params: Optional[MarketParams] = None,
        name: str = "",
    ) -> None:
        params = params or MarketParams()
        params.validate()
        self.pool = pool
        self.oracle = oracle
        self.clock = clock
        self.base_asset = base_asset
        self.name = name or f"{base_asset}-PERP"
        self.params = params
        self.market_idx: Optional[int] = None

        self.global_position = GlobalPosition()
        self.trader_positions: Dict[str, TraderPosition] = {}
        self.lp_positions: Dict[str, LiquidityProviderPosition] = {}
        self.base_dust: Decimal = ZERO
        self.funding = FundingEngine()
        self.liquidity = LiquidityAccounting(self)

        self._clearing_house: Any = None
        self._paused: bool = False

        self.funding.initialize(
            self.global_position, clock.timestamp, self.index_price, pool.last_price
        )

    # -- Capability ---------------------------------------------------------

    def bind(self, clearing_house: Any, market_idx: int) -> None:
        """Attach the single orchestrator allowed to mutate this market."""
        if self._clearing_house is not None and self._clearing_house is not clearing_house:
            raise AccessError("PerpetualMarketAlreadyAssigned")
        self._clearing_house = clearing_house
        self.market_idx = market_idx

    def _require_clearing_house(self, caller: Any) -> None:
        if caller is None or caller is not self._clearing_house:
            raise AccessError("SenderNotClearingHouse")

    # -- Emergency controls -------------------------------------------------

    def pause(self, caller: Any) -> None:
        self._require_clearing_house(caller)
        self._paused = True
        logger.warning("Market %s paused", self.name)

    def unpause(self, caller: Any) -> None:
        self._require_clearing_house(caller)
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    def _check_active(self) -> None:
        if self._paused:
            raise InvariantViolation(f"Market {self.name} is paused — emergency mode")

    # -- Governance ---------------------------------------------------------

    def set_parameters(self, caller: Any, params: MarketParams) -> None:
        self._require_clearing_house(caller)
        params.validate()
        self.params = params
        logger.info("Market %s parameters updated: %s", self.name, params.to_dict())

    # -- Prices -------------------------------------------------------------

    @property
    def index_price(self) -> Decimal:
        return self.oracle.get_price(self.base_asset)

    @property
    def market_price(self) -> Decimal:
        return self.pool.last_price

    @property
    def total_liquidity_provided(self) -> Decimal:
        return self.pool.total_supply

    # -- Funding ------------------------------------------------------------

    def update_global_state(self) -> Optional[FundingUpdate]:
        """Idempotent per block; safe to call from anywhere."""
        return self.funding.update(
            self.global_position,
            now=self.clock.timestamp,
            block_number=self.clock.block_number,
            index_price=self.index_price,
            market_price=self.market_price,
            sensitivity=self.params.sensitivity,
            twap_frequency=self.params.twap_frequency,
            total_liquidity_provided=self.total_liquidity_provided,
        )

    def settle_trader(self, caller: Any, account: str) -> Decimal:
        """
        Settle pending funding of a trader position.

        Returns:
            The funding payment (positive = credit) to book in the vault
        """
        self._require_clearing_house(caller)
        self.update_global_state()
        position = self.trader_positions.get(account)
        if position is None:
            return ZERO
        payment = trader_funding_payment(position, self.global_position)
        position.cum_funding_rate = self.global_position.cum_funding_rate
        return payment

    def settle_lp(self, caller: Any, account: str) -> Decimal:
        """Settle pending funding and earned trading fees of an LP."""
        self._require_clearing_house(caller)
        self.update_global_state()
        return self.liquidity.settle(account)

    # -- Trading ------------------------------------------------------------

    def change_position(
        self,
        caller: Any,
        account: str,
        amount: Decimal,
        min_amount: Decimal,
        direction: Side,
        is_liquidation: bool = False,
    ) -> TradeResult:
        """
        Extend (same side or new) or reduce (opposite side) a trader position.

        Args:
            amount: quote sold when going long, base sold when going short;
                for a short reduce it is the quote spent buying base back
            min_amount: minimum proceeds of the swap, fees excluded
            direction: side of the trade
            is_liquidation: skip caps and the insurance fee

        Raises:
            AccessError, ValidationError, InvariantViolation, SlippageError
        """
        self._require_clearing_house(caller)
        self._check_active()
        if amount <= 0:
            raise ValidationError("ChangePositionZeroAmount")
        if not isinstance(direction, Side):
            raise ValidationError(f"Invalid side: {direction!r}")

        self.update_global_state()

        position = self.trader_positions.get(account)
        if position is None:
            position = TraderPosition(cum_funding_rate=self.global_position.cum_funding_rate)
        old_size = position.position_size

        is_increase = not position.is_open or position.side == direction
        if is_increase:
            result = self._extend_position(position, amount, min_amount, direction, is_liquidation)
        else:
            result = self._reduce_position(position, amount, min_amount, is_liquidation)

        self._track_exposure(old_size, position.position_size)
        if position.is_open:
            self.trader_positions[account] = position
        else:
            self.trader_positions.pop(account, None)

        if not is_liquidation:
            gp = self.global_position
            gp.current_block_trade_amount += abs(result.quote_proceeds)
            if gp.current_block_trade_amount > self.params.max_block_trade_amount:
                raise InvariantViolation(
                    f"ExcessiveBlockTradeAmount: {gp.current_block_trade_amount} > "
                    f"{self.params.max_block_trade_amount}"
                )
            if abs(position.open_notional) > self.params.max_position:
                raise InvariantViolation(
                    f"MaxPositionSize: {abs(position.open_notional)} > {self.params.max_position}"
                )

        logger.info(
            "Market %s: %s %s %s amount=%s quote=%s base=%s pnl=%s",
            self.name, account, "extend" if is_increase else "reduce",
            direction.name, amount, result.quote_proceeds, result.base_proceeds, result.pnl,
        )
        return result

    def _extend_position(
        self,
        position: TraderPosition,
        amount: Decimal,
        min_amount: Decimal,
        direction: Side,
        is_liquidation: bool,
    ) -> TradeResult:
        if direction is Side.LONG:
            base_out, fee_share = self._swap(VQUOTE_INDEX, VBASE_INDEX, amount, min_amount)
            quote_proceeds, base_proceeds = -amount, base_out
        elif direction is Side.SHORT:
            quote_out, fee_share = self._swap(VBASE_INDEX, VQUOTE_INDEX, amount, min_amount)
            quote_proceeds, base_proceeds = quote_out, -amount
        else:
            raise ValidationError(f"Invalid side: {direction!r}")

        trading_fees, insurance_fees = self._charge_fees(quote_proceeds, fee_share, is_liquidation)

        position.open_notional += quote_proceeds
        position.position_size += base_proceeds

        return TradeResult(
            quote_proceeds=quote_proceeds,
            base_proceeds=base_proceeds,
            pnl=-trading_fees - insurance_fees,
            trading_fees=trading_fees,
            insurance_fees=insurance_fees,
            is_position_increased=True,
        )

    def _reduce_position(
        self,
        position: TraderPosition,
        proposed_amount: Decimal,
        min_amount: Decimal,
        is_liquidation: bool,
    ) -> TradeResult:
        """
        Trade ``position`` back toward zero and realize the released share.

        A long sells ``proposed_amount`` base; a short spends
        ``proposed_amount`` quote buying base.  Used by traders, LP removals
        and the dust sale.
        """
        size = position.position_size
        if size == 0:
            raise InvariantViolation("NoOpenPosition")

        if size > 0:
            if proposed_amount > size:
                raise InvariantViolation(
                    f"AttemptReversePosition: selling {proposed_amount} of a {size} long"
                )
            quote_out, fee_share = self._swap(VBASE_INDEX, VQUOTE_INDEX, proposed_amount, min_amount)
            quote_proceeds, base_proceeds = quote_out, -proposed_amount
        else:
            base_out, fee_share = self._swap(VQUOTE_INDEX, VBASE_INDEX, proposed_amount, min_amount)
            if base_out > abs(size) + DUST_THRESHOLD:
                raise InvariantViolation(
                    f"AttemptReversePosition: buying {base_out} against a {size} short"
                )
            quote_proceeds, base_proceeds = -proposed_amount, base_out

        remaining = size + base_proceeds
        ratio = clamp_ratio(wad_div(abs(base_proceeds), abs(size)))
        dust = ZERO
        if remaining != 0 and abs(remaining) <= DUST_THRESHOLD:
            dust = remaining
            remaining = ZERO
        if remaining == 0:
            ratio = ONE

        released = position.open_notional if ratio == ONE else wad_mul(position.open_notional, ratio)
        trading_fees, insurance_fees = self._charge_fees(quote_proceeds, fee_share, is_liquidation)
        pnl = quote_proceeds + released - trading_fees - insurance_fees

        position.open_notional -= released
        position.position_size = remaining
        if dust != 0:
            self.base_dust += dust
            logger.info("Market %s: DustGenerated %s base", self.name, dust)

        return TradeResult(
            quote_proceeds=quote_proceeds,
            base_proceeds=base_proceeds,
            pnl=pnl,
            trading_fees=trading_fees,
            insurance_fees=insurance_fees,
            is_position_increased=False,
            dust=dust,
        )

    def _swap(self, i: int, j: int, amount: Decimal, min_amount: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Sell ``amount`` of token i; the pool fee is minted back to the trader.

        Returns:
            (proceeds excluding fees, fee share of the proceeds)
        """
        if amount <= 0:
            raise ValidationError("Swap amount must be positive")
        expected = self.pool.get_dy_ex_fees(i, j, amount)
        if expected < min_amount:
            raise SlippageError(f"Slippage exceeded: got {expected}, min {min_amount}")

        amount_out, fee_amount = self.pool.swap(i, j, amount, ZERO)
        proceeds = amount_out + fee_amount

        gp = self.global_position
        balance_out = self.pool.balances[j]
        if fee_amount > 0 and balance_out > 0:
            growth = wad_div(fee_amount, balance_out)
            if j == VBASE_INDEX:
                gp.total_base_fees_growth += growth
            else:
                gp.total_quote_fees_growth += growth

        fee_share = wad_div(fee_amount, proceeds) if proceeds > 0 else ZERO
        return proceeds, fee_share

    def _charge_fees(self, quote_proceeds: Decimal, fee_share: Decimal,
                     is_liquidation: bool) -> Tuple[Decimal, Decimal]:
        notional = abs(quote_proceeds)
        trading_fees = wad_mul(notional, fee_share)
        insurance_fees = ZERO if is_liquidation else wad_mul(notional, self.params.insurance_fee)

        gp = self.global_position
        if trading_fees > 0 and gp.total_quote_provided > 0:
            gp.total_trading_fees_growth += wad_div(trading_fees, gp.total_quote_provided)
        gp.total_insurance_fees += insurance_fees
        return trading_fees, insurance_fees

    def _track_exposure(self, old_size: Decimal, new_size: Decimal) -> None:
        gp = self.global_position
        gp.trader_longs += max(new_size, ZERO) - max(old_size, ZERO)
        gp.trader_shorts += max(-new_size, ZERO) - max(-old_size, ZERO)

    # -- Dust ---------------------------------------------------------------

    def sell_dust(self, caller: Any, proposed_amount: Decimal, min_amount: Decimal) -> TradeResult:
        """Close the house dust position; its PnL belongs to the insurance fund."""
        self._require_clearing_house(caller)
        self._check_active()
        if self.base_dust == 0:
            raise ValidationError("No base dust to sell")
        self.update_global_state()

        dust_position = TraderPosition(position_size=self.base_dust)
        self.base_dust = ZERO
        result = self._reduce_position(dust_position, proposed_amount, min_amount, is_liquidation=True)
        self.base_dust += dust_position.position_size
        logger.info("Market %s: DustSold pnl=%s remaining=%s", self.name, result.pnl, self.base_dust)
        return result

    # -- Liquidity (delegated) ----------------------------------------------

    def provide_liquidity(
        self,
        caller: Any,
        account: str,
        amounts: Tuple[Decimal, Decimal],
        min_lp_amount: Decimal = ZERO,
    ) -> LiquidityResult:
        self._require_clearing_house(caller)
        self._check_active()
        self.update_global_state()
        return self.liquidity.provide(account, amounts, min_lp_amount)

    def remove_liquidity(
        self,
        caller: Any,
        account: str,
        liquidity_amount: Decimal,
        min_vtoken_amounts: Tuple[Decimal, Decimal] = (ZERO, ZERO),
        proposed_amount: Decimal = ZERO,
        min_amount: Decimal = ZERO,
        is_liquidation: bool = False,
    ) -> LiquidityResult:
        self._require_clearing_house(caller)
        self._check_active()
        self.update_global_state()
        return self.liquidity.remove(
            account, liquidity_amount, min_vtoken_amounts, proposed_amount, min_amount, is_liquidation
        )

    # -- Views --------------------------------------------------------------

    def get_trader_position(self, account: str) -> TraderPosition:
        position = self.trader_positions.get(account)
        return replace(position) if position is not None else TraderPosition()

    def get_lp_position(self, account: str) -> LiquidityProviderPosition:
        lp = self.lp_positions.get(account)
        return replace(lp) if lp is not None else LiquidityProviderPosition()

    def get_global_position(self) -> GlobalPosition:
        return replace(self.global_position)

    def is_trader_position_open(self, account: str) -> bool:
        position = self.trader_positions.get(account)
        return position is not None and position.is_open

    def is_lp_position_open(self, account: str) -> bool:
        lp = self.lp_positions.get(account)
        return lp is not None and lp.is_open

    def get_trader_pending_funding(self, account: str) -> Decimal:
        position = self.trader_positions.get(account)
        if position is None:
            return ZERO
        return trader_funding_payment(position, self.global_position)

    def get_trader_unrealized_pnl(self, account: str) -> Decimal:
        """Position marked to the index price, fees excluded."""
        position = self.trader_positions.get(account)
        if position is None or not position.is_open:
            return ZERO
        return wad_mul(position.position_size, self.index_price) + position.open_notional

    def get_trader_debt(self, account: str) -> Decimal:
        position = self.trader_positions.get(account)
        if position is None or not position.is_open:
            return ZERO
        return self._position_debt(position)

    def _position_debt(self, position: TraderPosition) -> Decimal:
        quote_debt = -position.open_notional if position.open_notional < 0 else ZERO
        base_debt = ZERO
        if position.position_size < 0:
            base_debt = wad_mul(-position.position_size, self.index_price)
        return quote_debt + base_debt

    def get_lp_debt(self, account: str) -> Decimal:
        lp = self.lp_positions.get(account)
        if lp is None or not lp.is_open:
            return ZERO
        return wad_mul(abs(lp.open_notional), self.params.lp_debt_coef)

    def get_lp_position_after_withdrawal(self, account: str) -> TraderPosition:
        return self.liquidity.position_after_withdrawal(account)

    def get_lp_unrealized_pnl(self, account: str) -> Decimal:
        return self.liquidity.unrealized_pnl(account)

    def get_lp_pending_payments(self, account: str) -> Decimal:
        return self.liquidity.pending_payments(account)

    # -- Snapshot -----------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "global": replace(self.global_position),
            "traders": copy.deepcopy(self.trader_positions),
            "lps": copy.deepcopy(self.lp_positions),
            "base_dust": self.base_dust,
            "funding": self.funding.snapshot(),
            "pool": self.pool.snapshot(),
            "params": self.params,
            "paused": self._paused,
        }

    def restore(self, snap: Dict[str, Any]) -> None:
        self.global_position = replace(snap["global"])
        self.trader_positions = copy.deepcopy(snap["traders"])
        self.lp_positions = copy.deepcopy(snap["lps"])
        self.base_dust = snap["base_dust"]
        self.funding.restore(snap["funding"])
        self.pool.restore(snap["pool"])
        self.params = snap["params"]
        self._paused = snap["paused"]
