"""
Test suite for the perpx market engine

Covers:
  - Fixed-point helpers
  - Constant-product vAMM pool
  - Index price oracle
  - Funding / TWAP engine
  - Perpetual trading (extend, reduce, reversal guard, caps, dust)
  - Liquidity provision and removal
"""

from decimal import Decimal

import pytest

from perpx.constants import DUST_THRESHOLD, ZERO
from perpx.exceptions import (
    AccessError,
    InvariantViolation,
    OracleError,
    ParameterError,
    SlippageError,
    ValidationError,
)

# ---------------------------------------------------------------------------
# Engine imports
# ---------------------------------------------------------------------------
from perpx.exchange import (
    BlockClock,
    ClearingHouse,
    ClearingHouseParams,
    ClearingHouseViewer,
    ConstantProductPool,
    FundingEngine,
    GlobalPosition,
    InsuranceFund,
    MarketParams,
    Perpetual,
    PriceOracle,
    Side,
    TraderPosition,
    Vault,
)
from perpx.exchange.fixed_point import clamp_ratio, mul_div, to_wad, wad_div, wad_mul
from perpx.exchange.funding import trader_funding_payment
from perpx.exchange.liquidity import strip_fees

GENESIS = 1_700_000_000
ALICE = "alice"
BOB = "bob"
LP = "lp"


def _build_exchange(market_params=None, ch_params=None, price=Decimal("1")):
    clock = BlockClock(block_number=1, timestamp=GENESIS)
    oracle = PriceOracle(clock)
    oracle.set_price("EUR", price)
    pool = ConstantProductPool()
    perp = Perpetual(pool, oracle, clock, "EUR", market_params or MarketParams(), name="EUR_USD")
    insurance = InsuranceFund()
    vault = Vault(oracle, insurance)
    ch = ClearingHouse(vault, insurance, ch_params)
    ch.add_market(perp)
    return clock, oracle, perp, ch


def _seeded_exchange(market_params=None):
    """Exchange with 10k/10k liquidity at price 1."""
    clock, oracle, perp, ch = _build_exchange(market_params)
    ch.deposit(LP, Decimal("100000"))
    ch.provide_liquidity(LP, 0, (Decimal("10000"), Decimal("10000")))
    return clock, oracle, perp, ch


# ===========================================================================
#  Fixed point
# ===========================================================================

class TestFixedPoint:
    """Wad rounding rules."""

    def test_mul_rounds_half_up(self):
        assert wad_mul(Decimal("0.000000000000000001"), Decimal("0.5")) == Decimal("0.000000000000000001")

    def test_div_truncates(self):
        assert wad_div(Decimal("1"), Decimal("3")) == Decimal("0.333333333333333333")
        assert wad_div(Decimal("2"), Decimal("3")) == Decimal("0.666666666666666666")

    def test_div_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            wad_div(Decimal("1"), ZERO)

    def test_mul_div_single_truncation(self):
        assert mul_div(Decimal("1"), Decimal("2"), Decimal("3")) == Decimal("0.666666666666666666")

    def test_to_wad(self):
        assert to_wad("1.1234567890123456789") == Decimal("1.123456789012345678")
        assert to_wad(3) == Decimal("3")

    def test_clamp_ratio(self):
        assert clamp_ratio(Decimal("1.2")) == Decimal("1")
        assert clamp_ratio(Decimal("-0.1")) == ZERO
        assert clamp_ratio(Decimal("0.4")) == Decimal("0.4")


# ===========================================================================
#  Pool
# ===========================================================================

class TestConstantProductPool:
    """vAMM swaps and LP shares."""

    def _pool(self) -> ConstantProductPool:
        pool = ConstantProductPool()
        pool.add_liquidity([Decimal("100"), Decimal("100")])
        return pool

    def test_first_deposit_mints_geometric_mean(self):
        pool = ConstantProductPool()
        minted = pool.add_liquidity([Decimal("400"), Decimal("100")])
        assert minted == Decimal("200")
        assert pool.total_supply == Decimal("200")
        assert pool.last_price == Decimal("4")

    def test_second_deposit_pro_rata(self):
        pool = self._pool()
        minted = pool.add_liquidity([Decimal("50"), Decimal("50")])
        assert minted == Decimal("50")

    def test_swap_fee_stays_in_pool(self):
        pool = self._pool()
        expected = pool.get_dy_ex_fees(0, 1, Decimal("10"))
        out, fee = pool.swap(0, 1, Decimal("10"))
        assert out + fee == expected
        assert fee == wad_mul(expected, pool.fee)
        assert pool.balances[0] == Decimal("110")
        assert pool.balances[1] == Decimal("100") - out

    def test_get_dy_nets_fee(self):
        pool = self._pool()
        dy_ex = pool.get_dy_ex_fees(0, 1, Decimal("10"))
        assert pool.get_dy(0, 1, Decimal("10")) == dy_ex - wad_mul(dy_ex, pool.fee)

    def test_get_dx_covers_requested_output(self):
        pool = self._pool()
        dx = pool.get_dx_ex_fees(0, 1, Decimal("5"))
        assert pool.get_dy_ex_fees(0, 1, dx) >= Decimal("5")

    def test_get_dx_beyond_balance(self):
        pool = self._pool()
        with pytest.raises(InvariantViolation, match="MarketBalanceTooLow"):
            pool.get_dx_ex_fees(0, 1, Decimal("100"))

    def test_swap_slippage(self):
        pool = self._pool()
        with pytest.raises(SlippageError):
            pool.swap(0, 1, Decimal("10"), min_dy=Decimal("10"))
        assert pool.balances == [Decimal("100"), Decimal("100")]

    def test_swap_empty_pool(self):
        pool = ConstantProductPool()
        with pytest.raises(InvariantViolation, match="MarketBalanceTooLow"):
            pool.swap(0, 1, Decimal("1"))

    def test_swap_same_index(self):
        pool = self._pool()
        with pytest.raises(ValidationError, match="Invalid token indices"):
            pool.swap(1, 1, Decimal("1"))

    def test_remove_liquidity_pro_rata(self):
        pool = self._pool()
        out = pool.remove_liquidity(Decimal("25"))
        assert out == [Decimal("25"), Decimal("25")]
        assert pool.total_supply == Decimal("75")

    def test_remove_liquidity_slippage(self):
        pool = self._pool()
        with pytest.raises(SlippageError):
            pool.remove_liquidity(Decimal("25"), (Decimal("30"), ZERO))
        assert pool.total_supply == Decimal("100")

    def test_paused_pool(self):
        pool = self._pool()
        pool.pause()
        with pytest.raises(InvariantViolation, match="paused"):
            pool.swap(0, 1, Decimal("1"))
        pool.unpause()
        pool.swap(0, 1, Decimal("1"))

    def test_invalid_fee(self):
        with pytest.raises(ValidationError, match="Pool fee"):
            ConstantProductPool(fee=Decimal("0.5"))


# ===========================================================================
#  Oracle
# ===========================================================================

class TestPriceOracle:
    """Staleness, sequencer and override handling."""

    def _oracle(self):
        clock = BlockClock(block_number=1, timestamp=GENESIS)
        oracle = PriceOracle(clock)
        oracle.set_price("EUR", Decimal("1.1"))
        return clock, oracle

    def test_get_price(self):
        _, oracle = self._oracle()
        assert oracle.get_price("EUR") == Decimal("1.1")

    def test_stale_price(self):
        clock, oracle = self._oracle()
        clock.advance(25 * 3600 + 1)
        with pytest.raises(OracleError, match="DataNotFresh"):
            oracle.get_price("EUR")

    def test_unsupported_asset(self):
        _, oracle = self._oracle()
        with pytest.raises(OracleError, match="UnsupportedAsset"):
            oracle.get_price("GBP")

    def test_zero_balance_skips_checks(self):
        _, oracle = self._oracle()
        assert oracle.get_price("GBP", balance_hint=ZERO) == ZERO

    def test_fixed_price_override(self):
        clock, oracle = self._oracle()
        oracle.set_fixed_price("EUR", Decimal("1"))
        clock.advance(30 * 3600)
        assert oracle.get_price("EUR") == Decimal("1")
        oracle.clear_fixed_price("EUR")
        with pytest.raises(OracleError, match="DataNotFresh"):
            oracle.get_price("EUR")

    def test_invalid_round_price(self):
        _, oracle = self._oracle()
        oracle.set_price("EUR", ZERO)
        with pytest.raises(OracleError, match="InvalidRoundPrice"):
            oracle.get_price("EUR")

    def test_future_round(self):
        _, oracle = self._oracle()
        oracle.set_price("EUR", Decimal("1.1"), updated_at=GENESIS + 10)
        with pytest.raises(OracleError, match="InvalidRoundTimestamp"):
            oracle.get_price("EUR")

    def test_sequencer_down(self):
        _, oracle = self._oracle()
        oracle.set_sequencer_status(False)
        with pytest.raises(OracleError, match="SequencerDown"):
            oracle.get_price("EUR")

    def test_sequencer_grace_period(self):
        clock, oracle = self._oracle()
        oracle.set_sequencer_status(True)
        with pytest.raises(OracleError, match="GracePeriodNotOver"):
            oracle.get_price("EUR")
        clock.advance(oracle.grace_period + 1)
        assert oracle.get_price("EUR") == Decimal("1.1")

    def test_negative_grace_period(self):
        clock = BlockClock(1, GENESIS)
        with pytest.raises(ValidationError, match="IncorrectGracePeriod"):
            PriceOracle(clock, grace_period=-1)


# ===========================================================================
#  Funding
# ===========================================================================

class TestFundingEngine:
    """TWAP accumulation and funding rate."""

    def _engine(self):
        gp = GlobalPosition()
        engine = FundingEngine()
        engine.initialize(gp, 1000, Decimal("1"), Decimal("1"))
        return gp, engine

    def _update(self, engine, gp, now, block, market_price=Decimal("1.1"), total=ZERO):
        return engine.update(
            gp, now=now, block_number=block, index_price=Decimal("1"),
            market_price=market_price, sensitivity=Decimal("1"),
            twap_frequency=900, total_liquidity_provided=total,
        )

    def test_premium_funding_rate(self):
        gp, engine = self._engine()
        update = self._update(engine, gp, now=2000, block=1)
        assert update.oracle_twap == Decimal("1")
        assert update.market_twap == Decimal("1.1")
        assert update.funding_rate == Decimal("0.001157407407407407")
        assert gp.cum_funding_rate == update.funding_rate
        assert gp.block_of_last_update == 1
        assert gp.time_of_last_trade == 2000

    def test_once_per_block(self):
        gp, engine = self._engine()
        self._update(engine, gp, now=2000, block=1)
        before = GlobalPosition(**vars(gp))
        assert self._update(engine, gp, now=2500, block=1) is None
        assert gp == before

    def test_twap_kept_within_period(self):
        gp, engine = self._engine()
        update = self._update(engine, gp, now=1500, block=1)
        assert update.market_twap == Decimal("1")
        assert update.funding_rate == ZERO

    def test_lp_share_of_net_exposure(self):
        gp, engine = self._engine()
        gp.trader_longs = Decimal("10")
        update = self._update(engine, gp, now=2000, block=1)
        assert gp.cum_funding_per_lp_token == update.funding_rate * 10

    def test_lp_share_with_fractional_liquidity(self):
        gp, engine = self._engine()
        gp.trader_longs = Decimal("10")
        update = self._update(engine, gp, now=2000, block=1, total=Decimal("0.5"))
        # 0.5 LP tokens absorb the whole net exposure
        assert wad_mul(gp.cum_funding_per_lp_token, Decimal("0.5")) == update.funding_rate * 10

    def test_block_trade_amount_reset(self):
        gp, engine = self._engine()
        gp.current_block_trade_amount = Decimal("500")
        self._update(engine, gp, now=2000, block=1)
        assert gp.current_block_trade_amount == ZERO

    def test_longs_pay_positive_premium(self):
        gp, engine = self._engine()
        update = self._update(engine, gp, now=2000, block=1)
        long = TraderPosition(open_notional=Decimal("-10"), position_size=Decimal("10"))
        short = TraderPosition(open_notional=Decimal("10"), position_size=Decimal("-10"))
        assert trader_funding_payment(long, gp) == -(update.funding_rate * 10)
        assert trader_funding_payment(short, gp) == update.funding_rate * 10

    def test_no_payment_when_settled(self):
        gp, engine = self._engine()
        self._update(engine, gp, now=2000, block=1)
        position = TraderPosition(position_size=Decimal("10"), cum_funding_rate=gp.cum_funding_rate)
        assert trader_funding_payment(position, gp) == ZERO


# ===========================================================================
#  Parameters
# ===========================================================================

class TestParams:
    """Governance bounds."""

    def test_defaults_valid(self):
        ClearingHouseParams().validate()
        MarketParams().validate()

    def test_min_margin_bounds(self):
        with pytest.raises(ParameterError, match="InvalidMinMargin"):
            ClearingHouseParams(min_margin=Decimal("0.5")).validate()

    def test_reward_below_min_margin(self):
        with pytest.raises(ParameterError, match="InvalidLiquidationReward"):
            ClearingHouseParams(liquidation_reward=Decimal("0.03")).validate()

    def test_discount_gap(self):
        with pytest.raises(ParameterError, match="InsufficientDiff"):
            ClearingHouseParams(liquidation_discount=Decimal("0.8")).validate()

    def test_max_position_below_block_cap(self):
        with pytest.raises(ParameterError, match="MaxPositionSize"):
            MarketParams(max_block_trade_amount=Decimal("1000"), max_position=Decimal("500")).validate()

    def test_lock_period_bounds(self):
        with pytest.raises(ParameterError, match="LockPeriodInvalid"):
            MarketParams(lock_period=60).validate()

    def test_invalid_params_rejected_at_market_creation(self):
        with pytest.raises(ParameterError, match="SensitivityInvalid"):
            _build_exchange(MarketParams(sensitivity=Decimal("0.1")))


# ===========================================================================
#  Trading
# ===========================================================================

class TestPerpetualTrading:
    """Extend, reduce and close trader positions."""

    def test_open_long(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        result = ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)

        position = perp.get_trader_position(ALICE)
        assert result.is_position_increased
        assert result.quote_proceeds == Decimal("-100")
        assert position.open_notional == Decimal("-100")
        assert position.position_size == result.base_proceeds
        assert position.position_size > Decimal("99")
        assert result.insurance_fees == Decimal("0.1")
        assert result.trading_fees > 0
        assert ch.insurance.balance == Decimal("0.1")
        assert ch.vault.get_balance(ALICE) == Decimal("1000") + result.pnl

    def test_trading_fee_growth(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        result = ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        gp = perp.get_global_position()
        assert gp.total_trading_fees_growth == wad_div(result.trading_fees, Decimal("10000"))
        assert gp.total_base_fees_growth > 0
        assert gp.total_quote_fees_growth == ZERO

    def test_open_short(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        result = ch.change_position(ALICE, 0, Decimal("50"), ZERO, Side.SHORT)
        position = perp.get_trader_position(ALICE)
        assert position.position_size == Decimal("-50")
        assert position.open_notional == result.quote_proceeds
        assert position.open_notional > 0
        assert position.side is Side.SHORT

    def test_exposure_tracking(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.deposit(BOB, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        ch.change_position(BOB, 0, Decimal("50"), ZERO, Side.SHORT)
        gp = perp.get_global_position()
        assert gp.trader_longs == perp.get_trader_position(ALICE).position_size
        assert gp.trader_shorts == Decimal("50")

    def test_close_long_deletes_position(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        size = perp.get_trader_position(ALICE).position_size

        result = ch.change_position(ALICE, 0, size, ZERO, Side.SHORT)
        assert not result.is_position_increased
        assert not perp.is_trader_position_open(ALICE)
        assert ALICE not in perp.trader_positions
        assert perp.get_global_position().trader_longs == ZERO

    def test_close_short_with_proposed_amount(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("50"), ZERO, Side.SHORT)
        proposed = ClearingHouseViewer(ch).get_close_proposed_amount(0, ALICE)

        ch.change_position(ALICE, 0, proposed, ZERO, Side.LONG)
        assert not perp.is_trader_position_open(ALICE)

    def test_partial_reduce_releases_share(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        size = perp.get_trader_position(ALICE).position_size

        half = to_wad(size / 2)
        ch.change_position(ALICE, 0, half, ZERO, Side.SHORT)
        position = perp.get_trader_position(ALICE)
        assert position.position_size == size - half
        assert Decimal("-50.1") < position.open_notional < Decimal("-49.9")

    def test_reverse_long_rejected(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        before = perp.get_trader_position(ALICE)

        with pytest.raises(InvariantViolation, match="AttemptReversePosition"):
            ch.change_position(ALICE, 0, before.position_size + 1, ZERO, Side.SHORT)
        assert perp.get_trader_position(ALICE) == before

    def test_reverse_short_rejected(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("50"), ZERO, Side.SHORT)
        with pytest.raises(InvariantViolation, match="AttemptReversePosition"):
            ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)

    def test_min_amount_slippage(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        with pytest.raises(SlippageError):
            ch.change_position(ALICE, 0, Decimal("100"), Decimal("100"), Side.LONG)
        assert not perp.is_trader_position_open(ALICE)

    def test_zero_amount(self):
        _, _, _, ch = _seeded_exchange()
        with pytest.raises(ValidationError, match="ChangePositionZeroAmount"):
            ch.change_position(ALICE, 0, ZERO, ZERO, Side.LONG)

    def test_sign_convention_holds(self):
        _, _, perp, ch = _seeded_exchange()
        for account in (ALICE, BOB, "carol"):
            ch.deposit(account, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        ch.change_position(BOB, 0, Decimal("60"), ZERO, Side.SHORT)
        ch.change_position("carol", 0, Decimal("80"), ZERO, Side.LONG)
        size = perp.get_trader_position("carol").position_size
        ch.change_position("carol", 0, size, ZERO, Side.SHORT)

        for position in perp.trader_positions.values():
            assert (position.open_notional == 0) == (position.position_size == 0)
            assert (position.position_size > 0) == (position.open_notional < 0)


class TestPerpetualCaps:
    """Block and position caps."""

    def _params(self) -> MarketParams:
        return MarketParams(max_block_trade_amount=Decimal("100"), max_position=Decimal("150"))

    def test_block_trade_cap(self):
        _, _, perp, ch = _seeded_exchange(self._params())
        ch.deposit(ALICE, Decimal("1000"))
        with pytest.raises(InvariantViolation, match="ExcessiveBlockTradeAmount"):
            ch.change_position(ALICE, 0, Decimal("101"), ZERO, Side.LONG)
        assert not perp.is_trader_position_open(ALICE)

    def test_block_trade_cap_accumulates(self):
        _, _, _, ch = _seeded_exchange(self._params())
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("60"), ZERO, Side.LONG)
        with pytest.raises(InvariantViolation, match="ExcessiveBlockTradeAmount"):
            ch.change_position(ALICE, 0, Decimal("60"), ZERO, Side.LONG)

    def test_block_trade_cap_resets_next_block(self):
        clock, _, perp, ch = _seeded_exchange(self._params())
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("60"), ZERO, Side.LONG)
        clock.advance(12)
        ch.change_position(ALICE, 0, Decimal("40"), ZERO, Side.LONG)
        assert perp.get_trader_position(ALICE).open_notional == Decimal("-100")

    def test_max_position(self):
        clock, _, perp, ch = _seeded_exchange(self._params())
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        clock.advance(12)
        with pytest.raises(InvariantViolation, match="MaxPositionSize"):
            ch.change_position(ALICE, 0, Decimal("60"), ZERO, Side.LONG)
        assert perp.get_trader_position(ALICE).open_notional == Decimal("-100")


class TestPerpetualAccess:
    """Only the bound clearing house mutates a market."""

    def test_direct_trade_rejected(self):
        _, _, perp, _ = _seeded_exchange()
        with pytest.raises(AccessError, match="SenderNotClearingHouse"):
            perp.change_position(None, ALICE, Decimal("100"), ZERO, Side.LONG)
        with pytest.raises(AccessError, match="SenderNotClearingHouse"):
            perp.change_position("mallory", ALICE, Decimal("100"), ZERO, Side.LONG)

    def test_foreign_clearing_house_rejected(self):
        _, _, perp, ch = _seeded_exchange()
        other = ClearingHouse(ch.vault, ch.insurance)
        with pytest.raises(AccessError, match="SenderNotClearingHouse"):
            perp.provide_liquidity(other, BOB, (Decimal("10"), Decimal("10")))
        with pytest.raises(AccessError, match="PerpetualMarketAlreadyAssigned"):
            other.add_market(perp)

    def test_paused_market(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.pause_market(0)
        assert perp.is_paused
        with pytest.raises(InvariantViolation, match="paused"):
            ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        ch.unpause_market(0)
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)


class TestGlobalState:
    """Per-block funding trigger."""

    def test_second_update_in_block_is_noop(self):
        clock, _, perp, ch = _seeded_exchange()
        clock.advance(60)
        assert ch.update_global_state(0) is not None
        before = perp.get_global_position()
        assert ch.update_global_state(0) is None
        assert perp.get_global_position() == before

    def test_longs_pay_when_pool_above_index(self):
        clock, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("500"), ZERO, Side.LONG)
        clock.advance(1000)
        update = ch.update_global_state(0)

        assert update.market_twap > update.oracle_twap
        assert update.funding_rate > 0
        assert perp.get_trader_pending_funding(ALICE) < 0
        assert perp.get_lp_pending_payments(LP) > 0


# ===========================================================================
#  Dust
# ===========================================================================

class TestDust:
    """Residual base below the dust threshold."""

    def test_reduce_sweeps_dust(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        size = perp.get_trader_position(ALICE).position_size

        result = ch.change_position(ALICE, 0, size - Decimal("0.05"), ZERO, Side.SHORT)
        assert result.dust == Decimal("0.05")
        assert perp.base_dust == Decimal("0.05")
        assert not perp.is_trader_position_open(ALICE)

    def test_residual_above_threshold_kept(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        size = perp.get_trader_position(ALICE).position_size

        with pytest.raises(InvariantViolation, match="UnderOpenNotionalAmountRequired"):
            ch.change_position(ALICE, 0, size - DUST_THRESHOLD * 2, ZERO, Side.SHORT)
        assert perp.base_dust == ZERO

    def test_sell_dust_funds_insurance(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        size = perp.get_trader_position(ALICE).position_size
        ch.change_position(ALICE, 0, size - Decimal("0.05"), ZERO, Side.SHORT)
        insurance_before = ch.insurance.balance

        result = ch.sell_dust(0, Decimal("0.05"))
        assert perp.base_dust == ZERO
        assert result.pnl > 0
        assert ch.insurance.balance == insurance_before + result.pnl

    def test_sell_dust_without_dust(self):
        _, _, _, ch = _seeded_exchange()
        with pytest.raises(ValidationError, match="No base dust"):
            ch.sell_dust(0, Decimal("0.05"))

    def test_sell_dust_while_paused(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        size = perp.get_trader_position(ALICE).position_size
        ch.change_position(ALICE, 0, size - Decimal("0.05"), ZERO, Side.SHORT)
        ch.pause()

        with pytest.raises(InvariantViolation, match="paused"):
            ch.sell_dust(0, Decimal("0.05"))
        assert perp.base_dust == Decimal("0.05")


# ===========================================================================
#  Liquidity
# ===========================================================================

class TestLiquidity:
    """Provide and remove liquidity."""

    def test_first_provision(self):
        _, _, perp, ch = _build_exchange()
        ch.deposit(LP, Decimal("100"))
        result = ch.provide_liquidity(LP, 0, (Decimal("10"), Decimal("10")))

        lp = perp.get_lp_position(LP)
        assert result.liquidity_amount == Decimal("10")
        assert lp.liquidity_balance > 0
        assert lp.open_notional == Decimal("-10")
        assert lp.position_size == Decimal("-10")
        assert lp.deposit_time == GENESIS
        assert perp.get_global_position().total_quote_provided == Decimal("10")

    def test_repeat_provision(self):
        _, _, perp, ch = _seeded_exchange()
        ch.provide_liquidity(LP, 0, (Decimal("1000"), Decimal("1000")))
        lp = perp.get_lp_position(LP)
        assert lp.liquidity_balance == Decimal("11000")
        assert lp.open_notional == Decimal("-11000")
        assert perp.get_global_position().total_quote_provided == Decimal("11000")

    def test_amount_deviation(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(BOB, Decimal("100000"))
        with pytest.raises(InvariantViolation, match="LpAmountDeviation"):
            ch.provide_liquidity(BOB, 0, (Decimal("100"), Decimal("50")))
        assert not perp.is_lp_position_open(BOB)

    def test_first_provision_deviation_from_index(self):
        _, _, _, ch = _build_exchange(price=Decimal("2"))
        ch.deposit(LP, Decimal("1000"))
        with pytest.raises(InvariantViolation, match="LpAmountDeviation"):
            ch.provide_liquidity(LP, 0, (Decimal("100"), Decimal("100")))
        ch.provide_liquidity(LP, 0, (Decimal("100"), Decimal("50")))

    def test_max_liquidity_provided(self):
        _, _, _, ch = _build_exchange(MarketParams(max_liquidity_provided=Decimal("5000")))
        ch.deposit(LP, Decimal("100000"))
        with pytest.raises(InvariantViolation, match="MaxLiquidityProvided"):
            ch.provide_liquidity(LP, 0, (Decimal("10000"), Decimal("10000")))

    def test_zero_amount(self):
        _, _, _, ch = _seeded_exchange()
        with pytest.raises(ValidationError, match="ProvideLiquidityZeroAmount"):
            ch.provide_liquidity(LP, 0, (ZERO, Decimal("10")))

    def test_lock_period(self):
        clock, _, _, ch = _seeded_exchange()
        clock.advance(60)
        with pytest.raises(InvariantViolation, match="LockPeriodNotReached"):
            ch.remove_liquidity(LP, 0, Decimal("10000"))

    def test_withdraw_exceeds_balance(self):
        clock, _, _, ch = _seeded_exchange()
        clock.advance(3601)
        with pytest.raises(InvariantViolation, match="LPWithdrawExceedsBalance"):
            ch.remove_liquidity(LP, 0, Decimal("10001"))

    def test_full_removal_without_trades(self):
        clock, _, perp, ch = _seeded_exchange()
        clock.advance(3601)
        result = ch.remove_liquidity(LP, 0, Decimal("10000"))

        assert result.position_closed
        assert result.pnl == ZERO
        assert not perp.is_lp_position_open(LP)
        assert LP not in perp.lp_positions
        assert perp.get_global_position().total_quote_provided == ZERO
        assert ch.vault.get_balance(LP) == Decimal("100000")

    def test_lp_earns_trading_fees(self):
        _, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        result = ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        viewer = ClearingHouseViewer(ch)
        assert viewer.get_lp_trading_fees(0, LP) == wad_mul(
            wad_div(result.trading_fees, Decimal("10000")), Decimal("10000")
        )

    def test_partial_removal_closes_residual(self):
        clock, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        clock.advance(3601)

        viewer = ClearingHouseViewer(ch)
        half = Decimal("5000")
        proposed = viewer.get_lp_close_proposed_amount(0, LP, half)
        assert proposed > 0

        result = ch.remove_liquidity(LP, 0, half, proposed_amount=proposed)
        lp = perp.get_lp_position(LP)
        assert result.position_closed
        assert result.closed_position.position_size < 0
        assert lp.liquidity_balance == half
        assert lp.open_notional == Decimal("-5000")
        assert perp.get_global_position().total_quote_provided == Decimal("5000")

    def test_residual_needs_proposed_amount(self):
        clock, _, perp, ch = _seeded_exchange()
        ch.deposit(ALICE, Decimal("1000"))
        ch.change_position(ALICE, 0, Decimal("100"), ZERO, Side.LONG)
        clock.advance(3601)
        with pytest.raises(InvariantViolation, match="LPOpenPosition"):
            ch.remove_liquidity(LP, 0, Decimal("5000"))
        assert perp.get_lp_position(LP).liquidity_balance == Decimal("10000")

    def test_strip_fees(self):
        assert strip_fees(Decimal("110"), Decimal("0.1"), ZERO) == Decimal("100")
        assert strip_fees(Decimal("110"), Decimal("0.1"), Decimal("0.1")) == Decimal("110")
