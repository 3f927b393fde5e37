"""
perpx Liquidity Accounting

LP side of a perpetual market.  Providing liquidity deposits virtual quote
and base into the pool and records them as debt on the LP position
(open_notional -= quote, position_size -= base).  Removing liquidity burns
pool shares, strips the swap fees the LP earned from the released tokens and
nets the result against the recorded debt.  The remainder is an ordinary
trader-style position that is closed on the spot.

Fee stripping: a withdrawn amount w that grew by the fee growth g since the
LP's snapshot s is reported as w / (1 + g - s).
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Sequence, Tuple

from ..constants import DUST_THRESHOLD, LP_AMOUNT_DEVIATION, ONE, VBASE_INDEX, VQUOTE_INDEX, ZERO
from ..exceptions import InvariantViolation, ValidationError
from .fixed_point import wad_div, wad_mul
from .funding import lp_funding_payment, lp_trading_fees
from .positions import LiquidityProviderPosition, LiquidityResult, TraderPosition

if TYPE_CHECKING:
    from .perpetual import Perpetual

logger = logging.getLogger(__name__)


def strip_fees(amount: Decimal, global_growth: Decimal, lp_growth: Decimal) -> Decimal:
    """Remove the fee growth accrued since ``lp_growth`` from ``amount``."""
    growth = global_growth - lp_growth
    if amount == 0 or growth <= 0:
        return amount
    return wad_div(amount, ONE + growth)


class LiquidityAccounting:
    """LP ledger operations of one Perpetual.  Callers check access."""

    def __init__(self, market: "Perpetual") -> None:
        self.market = market

    # -- Settlement ---------------------------------------------------------

    def pending_payments(self, account: str) -> Decimal:
        """Funding plus trading fees owed to (positive) or by the LP."""
        lp = self.market.lp_positions.get(account)
        if lp is None:
            return ZERO
        gp = self.market.global_position
        return lp_funding_payment(lp, gp) + lp_trading_fees(lp, gp)

    def settle(self, account: str) -> Decimal:
        lp = self.market.lp_positions.get(account)
        if lp is None:
            return ZERO
        payment = self.pending_payments(account)
        gp = self.market.global_position
        lp.cum_funding_per_lp_token = gp.cum_funding_per_lp_token
        lp.total_trading_fees_growth = gp.total_trading_fees_growth
        return payment

    # -- Views --------------------------------------------------------------

    def withdrawable_tokens(self, lp: LiquidityProviderPosition,
                            liquidity_amount: Decimal) -> Tuple[Decimal, Decimal]:
        """Pool tokens released by burning ``liquidity_amount``, fees stripped."""
        gp = self.market.global_position
        released = self.market.pool.calc_withdraw(liquidity_amount)
        return (
            strip_fees(released[VQUOTE_INDEX], gp.total_quote_fees_growth, lp.total_quote_fees_growth),
            strip_fees(released[VBASE_INDEX], gp.total_base_fees_growth, lp.total_base_fees_growth),
        )

    def earned_fee_tokens(self, lp: LiquidityProviderPosition) -> Tuple[Decimal, Decimal]:
        """Virtual tokens the LP's pool share grew by through swap fees."""
        released = self.market.pool.calc_withdraw(lp.liquidity_balance)
        quote_ex, base_ex = self.withdrawable_tokens(lp, lp.liquidity_balance)
        return released[VQUOTE_INDEX] - quote_ex, released[VBASE_INDEX] - base_ex

    def position_after_withdrawal(self, account: str) -> TraderPosition:
        """Trader-style position left if the LP withdrew everything now."""
        lp = self.market.lp_positions.get(account)
        if lp is None or not lp.is_open:
            return TraderPosition()
        quote_ex, base_ex = self.withdrawable_tokens(lp, lp.liquidity_balance)
        return TraderPosition(
            open_notional=lp.open_notional + quote_ex,
            position_size=lp.position_size + base_ex,
            cum_funding_rate=self.market.global_position.cum_funding_rate,
        )

    def unrealized_pnl(self, account: str) -> Decimal:
        position = self.position_after_withdrawal(account)
        if not position.is_open:
            return ZERO
        return wad_mul(position.position_size, self.market.index_price) + position.open_notional

    # -- Provide ------------------------------------------------------------

    def provide(self, account: str, amounts: Sequence[Decimal],
                min_lp_amount: Decimal = ZERO) -> LiquidityResult:
        """
        Deposit ``amounts`` = (quote, base) virtual tokens.

        Raises:
            ValidationError: zero amounts
            InvariantViolation: MaxLiquidityProvided, LpAmountDeviation
            SlippageError: fewer shares than ``min_lp_amount``
        """
        market = self.market
        pool = market.pool
        gp = market.global_position
        if len(amounts) != 2:
            raise ValidationError("Exactly two token amounts required")
        quote_amount, base_amount = Decimal(amounts[VQUOTE_INDEX]), Decimal(amounts[VBASE_INDEX])
        if quote_amount <= 0 or base_amount <= 0:
            raise ValidationError("ProvideLiquidityZeroAmount")

        if pool.balances[VQUOTE_INDEX] + quote_amount > market.params.max_liquidity_provided:
            raise InvariantViolation(
                f"MaxLiquidityProvided: {pool.balances[VQUOTE_INDEX] + quote_amount} > "
                f"{market.params.max_liquidity_provided}"
            )

        if pool.has_liquidity:
            expected_base = wad_div(wad_mul(quote_amount, pool.balances[VBASE_INDEX]),
                                    pool.balances[VQUOTE_INDEX])
        else:
            expected_base = wad_div(quote_amount, market.index_price)
        if abs(base_amount - expected_base) > wad_mul(expected_base, LP_AMOUNT_DEVIATION):
            raise InvariantViolation(
                f"LpAmountDeviation: base {base_amount}, expected {expected_base}"
            )

        pending = self.settle(account)
        lp = market.lp_positions.get(account)
        supplied = [quote_amount, base_amount]
        if lp is None:
            lp = LiquidityProviderPosition(
                cum_funding_per_lp_token=gp.cum_funding_per_lp_token,
                total_trading_fees_growth=gp.total_trading_fees_growth,
            )
        elif lp.liquidity_balance > 0:
            # earned fee tokens are reinvested as part of the new deposit
            quote_fees, base_fees = self.earned_fee_tokens(lp)
            supplied = [max(quote_amount - quote_fees, ZERO), max(base_amount - base_fees, ZERO)]

        minted = ZERO
        if supplied[VQUOTE_INDEX] > 0 or supplied[VBASE_INDEX] > 0:
            minted = pool.add_liquidity(supplied, min_lp_amount)

        lp.open_notional -= quote_amount
        lp.position_size -= base_amount
        lp.liquidity_balance += minted
        lp.deposit_time = market.clock.timestamp
        lp.total_base_fees_growth = gp.total_base_fees_growth
        lp.total_quote_fees_growth = gp.total_quote_fees_growth
        market.lp_positions[account] = lp

        gp.total_quote_provided += quote_amount
        gp.total_base_provided += base_amount

        logger.info(
            "Market %s: %s provided %s quote / %s base, minted %s shares",
            market.name, account, quote_amount, base_amount, minted,
        )
        return LiquidityResult(
            liquidity_amount=minted,
            quote_amount=quote_amount,
            base_amount=base_amount,
            pnl=pending,
        )

    # -- Remove -------------------------------------------------------------

    def remove(
        self,
        account: str,
        liquidity_amount: Decimal,
        min_vtoken_amounts: Sequence[Decimal] = (ZERO, ZERO),
        proposed_amount: Decimal = ZERO,
        min_amount: Decimal = ZERO,
        is_liquidation: bool = False,
    ) -> LiquidityResult:
        """
        Burn ``liquidity_amount`` shares and realize the resulting position.

        ``proposed_amount`` closes the residual: base to sell if it is long,
        quote to spend if it is short.  A residual within DUST_THRESHOLD is
        swept to the house account instead.

        Raises:
            ValidationError: zero amount
            InvariantViolation: LPWithdrawExceedsBalance, LockPeriodNotReached,
                LPOpenPosition, AttemptReversePosition
            SlippageError
        """
        market = self.market
        gp = market.global_position
        if liquidity_amount <= 0:
            raise ValidationError("RemoveLiquidityZeroAmount")
        lp = market.lp_positions.get(account)
        if lp is None or liquidity_amount > lp.liquidity_balance:
            raise InvariantViolation("LPWithdrawExceedsBalance")
        if not is_liquidation and market.clock.timestamp < lp.deposit_time + market.params.lock_period:
            raise InvariantViolation(
                f"LockPeriodNotReached: unlocks at {lp.deposit_time + market.params.lock_period}"
            )

        pending = self.settle(account)
        full_exit = liquidity_amount == lp.liquidity_balance
        ratio = ONE if full_exit else wad_div(liquidity_amount, lp.liquidity_balance)

        quote_ex, base_ex = self.withdrawable_tokens(lp, liquidity_amount)
        market.pool.remove_liquidity(liquidity_amount, min_vtoken_amounts)

        notional_share = lp.open_notional if full_exit else wad_mul(lp.open_notional, ratio)
        size_share = lp.position_size if full_exit else wad_mul(lp.position_size, ratio)
        lp.open_notional -= notional_share
        lp.position_size -= size_share
        lp.liquidity_balance -= liquidity_amount
        gp.total_quote_provided = max(gp.total_quote_provided - abs(notional_share), ZERO)
        gp.total_base_provided = max(gp.total_base_provided - abs(size_share), ZERO)

        position = TraderPosition(
            open_notional=notional_share + quote_ex,
            position_size=size_share + base_ex,
        )
        closed_position = TraderPosition(position.open_notional, position.position_size)

        result = LiquidityResult(
            liquidity_amount=liquidity_amount,
            quote_amount=quote_ex,
            base_amount=base_ex,
            closed_position=closed_position,
        )
        if position.position_size != 0 and abs(position.position_size) <= DUST_THRESHOLD:
            market.base_dust += position.position_size
            result.dust = position.position_size
            result.pnl = position.open_notional
            logger.info("Market %s: DustGenerated %s base", market.name, position.position_size)
        elif position.position_size != 0:
            if proposed_amount <= 0:
                raise InvariantViolation(
                    f"LPOpenPosition: residual {position.position_size} base needs a proposed amount"
                )
            trade = market._reduce_position(position, proposed_amount, min_amount, is_liquidation)
            if position.position_size != 0:
                raise InvariantViolation(
                    f"LPOpenPosition: residual {position.position_size} base exceeds dust"
                )
            result.pnl = trade.pnl
            result.trading_fees = trade.trading_fees
            result.insurance_fees = trade.insurance_fees
            result.dust = trade.dust
        else:
            result.pnl = position.open_notional
        result.pnl += pending
        result.position_closed = True

        if lp.liquidity_balance == 0:
            market.lp_positions.pop(account, None)

        logger.info(
            "Market %s: %s removed %s shares, pnl=%s", market.name, account, liquidity_amount, result.pnl
        )
        return result
