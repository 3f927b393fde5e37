"""
perpx Funding & TWAP Engine

Once-per-block update of a market's time-weighted prices and funding
accumulators:
  - Cumulative price sums:  cum += price * (now - time_of_last_trade)
  - Period TWAP: (cum_now - cum_period_start) / (now - period_start),
    recomputed once the period exceeds twap_frequency
  - Funding rate: sensitivity * (market_twap - oracle_twap) / oracle_twap
    * (now - time_of_last_trade) / 1 day, accumulated into cum_funding_rate
  - LP share: funding_rate * (longs - shorts) / total_liquidity, divided by
    1 instead while no liquidity is provided
    accumulated into cum_funding_per_lp_token

Positive premium (pool above index) makes longs pay; shorts and the LPs, who
carry the net opposite exposure, receive.

Security features:
  - Idempotent within a block (block-number gate)
  - TWAP instead of spot price for the premium
  - Division floor when no liquidity is provided
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from ..constants import ONE, SECONDS_PER_DAY, WAD_QUANTUM, ZERO
from .fixed_point import mul_div, wad_div, wad_mul
from .positions import GlobalPosition, LiquidityProviderPosition, TraderPosition

logger = logging.getLogger(__name__)


@dataclass
class FundingUpdate:
    """What one update_global_state call did."""
    block_number: int
    funding_rate: Decimal
    cum_funding_rate: Decimal
    cum_funding_per_lp_token: Decimal
    oracle_twap: Decimal
    market_twap: Decimal


@dataclass
class TwapState:
    """Running cumulative price sums and the current period TWAPs."""
    oracle_cumulative: Decimal = ZERO
    market_cumulative: Decimal = ZERO
    oracle_cumulative_at_period_start: Decimal = ZERO
    market_cumulative_at_period_start: Decimal = ZERO
    oracle_twap: Decimal = ZERO
    market_twap: Decimal = ZERO


class FundingEngine:
    """Advances one market's GlobalPosition at most once per block."""

    def __init__(self, twap: Optional[TwapState] = None) -> None:
        self.twap = twap or TwapState()

    def initialize(self, global_position: GlobalPosition, now: int, index_price: Decimal,
                   market_price: Decimal) -> None:
        """Seed the TWAPs at market creation."""
        global_position.time_of_last_trade = now
        global_position.time_of_last_twap_update = now
        self.twap.oracle_twap = index_price
        self.twap.market_twap = market_price if market_price > 0 else index_price

    # -- Update -------------------------------------------------------------

    def update(
        self,
        global_position: GlobalPosition,
        now: int,
        block_number: int,
        index_price: Decimal,
        market_price: Decimal,
        sensitivity: Decimal,
        twap_frequency: int,
        total_liquidity_provided: Decimal,
    ) -> Optional[FundingUpdate]:
        """
        Run the per-block update.

        Returns:
            FundingUpdate, or None if this block was already processed
        """
        gp = global_position
        if gp.block_of_last_update == block_number:
            return None

        if market_price <= 0:
            market_price = index_price

        self._update_twap(gp, now, index_price, market_price, twap_frequency)
        funding_rate = self._update_funding_rate(gp, now, sensitivity, total_liquidity_provided)

        gp.current_block_trade_amount = ZERO
        gp.time_of_last_trade = now
        gp.block_of_last_update = block_number

        logger.debug(
            "Funding updated at block %d: rate=%s cum=%s market_twap=%s oracle_twap=%s",
            block_number, funding_rate, gp.cum_funding_rate,
            self.twap.market_twap, self.twap.oracle_twap,
        )
        return FundingUpdate(
            block_number=block_number,
            funding_rate=funding_rate,
            cum_funding_rate=gp.cum_funding_rate,
            cum_funding_per_lp_token=gp.cum_funding_per_lp_token,
            oracle_twap=self.twap.oracle_twap,
            market_twap=self.twap.market_twap,
        )

    def _update_twap(self, gp: GlobalPosition, now: int, index_price: Decimal,
                     market_price: Decimal, twap_frequency: int) -> None:
        t = self.twap
        elapsed = now - gp.time_of_last_trade
        if elapsed > 0:
            t.oracle_cumulative += index_price * elapsed
            t.market_cumulative += market_price * elapsed

        since_period_start = now - gp.time_of_last_twap_update
        if since_period_start > twap_frequency:
            t.oracle_twap = (
                (t.oracle_cumulative - t.oracle_cumulative_at_period_start) / since_period_start
            ).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)
            t.market_twap = (
                (t.market_cumulative - t.market_cumulative_at_period_start) / since_period_start
            ).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)
            t.oracle_cumulative_at_period_start = t.oracle_cumulative
            t.market_cumulative_at_period_start = t.market_cumulative
            gp.time_of_last_twap_update = now

    def _update_funding_rate(self, gp: GlobalPosition, now: int, sensitivity: Decimal,
                             total_liquidity_provided: Decimal) -> Decimal:
        t = self.twap
        if t.oracle_twap <= 0:
            return ZERO
        premium = wad_div(t.market_twap - t.oracle_twap, t.oracle_twap)
        elapsed = now - gp.time_of_last_trade
        funding_rate = mul_div(wad_mul(sensitivity, premium), Decimal(elapsed), Decimal(SECONDS_PER_DAY))

        gp.cum_funding_rate += funding_rate

        net_exposure = gp.trader_longs - gp.trader_shorts
        divisor = total_liquidity_provided if total_liquidity_provided > 0 else ONE
        gp.cum_funding_per_lp_token += mul_div(funding_rate, net_exposure, divisor)
        return funding_rate

    # -- Snapshot -----------------------------------------------------------

    def snapshot(self) -> TwapState:
        return TwapState(**vars(self.twap))

    def restore(self, snap: TwapState) -> None:
        self.twap = TwapState(**vars(snap))


# ---------------------------------------------------------------------------
# Pending payments (positive = credit to the account)
# ---------------------------------------------------------------------------

def trader_funding_payment(position: TraderPosition, global_position: GlobalPosition) -> Decimal:
    user_cum = position.cum_funding_rate
    global_cum = global_position.cum_funding_rate
    if user_cum == global_cum or position.position_size == 0:
        return ZERO
    if position.position_size > 0:
        upcoming = user_cum - global_cum
    else:
        upcoming = global_cum - user_cum
    return wad_mul(upcoming, abs(position.position_size))


def lp_funding_payment(lp: LiquidityProviderPosition, global_position: GlobalPosition) -> Decimal:
    delta = global_position.cum_funding_per_lp_token - lp.cum_funding_per_lp_token
    if delta == 0 or lp.liquidity_balance == 0:
        return ZERO
    return wad_mul(delta, lp.liquidity_balance)


def lp_trading_fees(lp: LiquidityProviderPosition, global_position: GlobalPosition) -> Decimal:
    delta = global_position.total_trading_fees_growth - lp.total_trading_fees_growth
    if delta == 0:
        return ZERO
    return wad_mul(delta, abs(lp.open_notional))
