"""
Test suite for the perpx transaction layer

Covers:
  - ExchangeTransaction hashing, serialization and validation
  - ExchangeStateManager construction from config
  - Transaction dispatch, nonces and failure isolation
  - Block lifecycle (state root, revert)
"""

from decimal import Decimal

import pytest

from perpx.config import PerpxConfig
from perpx.config.loader import DEFAULT_GENESIS_TIME
from perpx.exceptions import ConfigurationError
from perpx.exchange import (
    BlockClock,
    ExchangeOpType,
    ExchangeStateManager,
    ExchangeTransaction,
    Side,
)

ALICE = "alice"
BOB = "bob"
LP = "lp"
FEEDER = "oracle-feeder"
GOVERNANCE = "governance"


def _tx(op_type, sender, nonce, **params) -> ExchangeTransaction:
    return ExchangeTransaction(op_type=op_type, sender=sender, nonce=nonce, params=params)


# ===========================================================================
#  Transactions
# ===========================================================================

class TestExchangeTransaction:
    """Envelope hashing and validation."""

    def test_hash_deterministic(self):
        a = _tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="100")
        b = _tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="100")
        assert a.tx_hash() == b.tx_hash()
        assert len(a.tx_hash()) == 64

    def test_hash_covers_nonce_and_params(self):
        base = _tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="100")
        assert base.tx_hash() != _tx(ExchangeOpType.DEPOSIT, ALICE, 1, amount="100").tx_hash()
        assert base.tx_hash() != _tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="101").tx_hash()
        assert base.tx_hash() != _tx(ExchangeOpType.WITHDRAW, ALICE, 0, amount="100").tx_hash()

    def test_from_dict(self):
        tx = _tx(ExchangeOpType.CHANGE_POSITION, ALICE, 3, market_idx=0, amount="50", direction="long")
        restored = ExchangeTransaction.from_dict(tx.to_dict())
        assert restored == tx
        assert restored.op_type is ExchangeOpType.CHANGE_POSITION

    def test_missing_param(self):
        tx = _tx(ExchangeOpType.CHANGE_POSITION, ALICE, 0, market_idx=0, amount="50")
        with pytest.raises(ValueError, match="CHANGE_POSITION missing param: direction"):
            tx.validate_basic()

    def test_missing_sender(self):
        with pytest.raises(ValueError, match="Missing sender"):
            _tx(ExchangeOpType.DEPOSIT, "", 0, amount="1").validate_basic()

    def test_negative_nonce(self):
        with pytest.raises(ValueError, match="non-negative"):
            _tx(ExchangeOpType.DEPOSIT, ALICE, -1, amount="1").validate_basic()


# ===========================================================================
#  State manager
# ===========================================================================

class TestExchangeStateManager:
    """Transaction processing against a configured exchange."""

    def _manager(self) -> ExchangeStateManager:
        mgr = ExchangeStateManager.from_config(PerpxConfig())
        mgr.begin_block(1, DEFAULT_GENESIS_TIME + 12)
        return mgr

    def _seeded_manager(self) -> ExchangeStateManager:
        mgr = self._manager()
        assert mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, LP, 0, amount="100000")).success
        result = mgr.process_transaction(_tx(
            ExchangeOpType.PROVIDE_LIQUIDITY, LP, 1, market_idx=0, quote_amount="11000", base_amount="10000",
        ))
        assert result.success, result.error
        return mgr

    def test_from_config(self):
        mgr = self._manager()
        market = mgr.get_market(0)
        assert market.name == "EUR_USD"
        assert market.index_price == Decimal("1.1")
        assert mgr.get_stats()["markets"] == 1

    def test_from_config_rejects_zero_clock(self):
        with pytest.raises(ConfigurationError, match="positive timestamp"):
            ExchangeStateManager.from_config(PerpxConfig(), clock=BlockClock(0, 0))

    def test_deposit_and_nonce(self):
        mgr = self._manager()
        result = mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="500"))
        assert result.success
        assert mgr.get_nonce(ALICE) == 1
        assert mgr.clearing_house.vault.get_balance(ALICE) == Decimal("500")

    def test_wrong_nonce(self):
        mgr = self._manager()
        result = mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, ALICE, 5, amount="500"))
        assert not result.success
        assert "Invalid nonce" in result.error
        assert mgr.get_nonce(ALICE) == 0

    def test_invalid_envelope(self):
        mgr = self._manager()
        result = mgr.process_transaction(_tx(ExchangeOpType.WITHDRAW, ALICE, 0))
        assert not result.success
        assert "missing param" in result.error

    def test_failed_op_consumes_no_nonce(self):
        mgr = self._manager()
        mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="100"))
        root = mgr.compute_state_root()

        result = mgr.process_transaction(_tx(ExchangeOpType.WITHDRAW, ALICE, 1, amount="500"))
        assert not result.success
        assert "InsufficientBalance" in result.error
        assert mgr.get_nonce(ALICE) == 1
        assert mgr.compute_state_root() == root
        assert mgr.get_stats()["failed_txs"] == 1

    def test_invalid_direction(self):
        mgr = self._seeded_manager()
        mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="1000"))
        result = mgr.process_transaction(_tx(
            ExchangeOpType.CHANGE_POSITION, ALICE, 1, market_idx=0, amount="100", direction="sideways",
        ))
        assert not result.success
        assert "Invalid direction" in result.error

    def test_trade_flow(self):
        mgr = self._seeded_manager()
        mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="1000"))
        result = mgr.process_transaction(_tx(
            ExchangeOpType.CHANGE_POSITION, ALICE, 1, market_idx=0, amount="100", direction="LONG",
        ))
        assert result.success, result.error
        assert result.data["quote_proceeds"] == "-100"
        position = mgr.get_market(0).get_trader_position(ALICE)
        assert position.side is Side.LONG

        result = mgr.process_transaction(_tx(
            ExchangeOpType.CHANGE_POSITION, ALICE, 2, market_idx=0,
            amount=str(position.position_size), direction="short",
        ))
        assert result.success, result.error
        assert not mgr.get_market(0).is_trader_position_open(ALICE)

    def test_update_global_state(self):
        mgr = self._seeded_manager()
        mgr.begin_block(2, DEFAULT_GENESIS_TIME + 24)
        first = mgr.process_transaction(_tx(ExchangeOpType.UPDATE_GLOBAL_STATE, BOB, 0, market_idx=0))
        second = mgr.process_transaction(_tx(ExchangeOpType.UPDATE_GLOBAL_STATE, BOB, 1, market_idx=0))
        assert first.data["updated"] is True
        assert second.data["updated"] is False

    def test_update_oracle(self):
        mgr = self._manager()
        result = mgr.process_transaction(_tx(ExchangeOpType.UPDATE_ORACLE, FEEDER, 0, asset="EUR", price="1.2"))
        assert result.success
        assert result.data["round_id"] == 2
        assert mgr.get_market(0).index_price == Decimal("1.2")

    def test_update_oracle_requires_feeder(self):
        mgr = self._manager()
        result = mgr.process_transaction(_tx(ExchangeOpType.UPDATE_ORACLE, BOB, 0, asset="EUR", price="0.5"))
        assert not result.success
        assert "SenderNotPriceFeeder" in result.error
        assert mgr.get_market(0).index_price == Decimal("1.1")
        assert mgr.get_nonce(BOB) == 0

    def test_sell_dust_requires_governance(self):
        mgr = self._seeded_manager()
        result = mgr.process_transaction(_tx(
            ExchangeOpType.SELL_DUST, "mallory", 0, market_idx=0, proposed_amount="0.05",
        ))
        assert not result.success
        assert "SenderNotGovernance" in result.error

        result = mgr.process_transaction(_tx(
            ExchangeOpType.SELL_DUST, GOVERNANCE, 0, market_idx=0, proposed_amount="0.05",
        ))
        assert not result.success
        assert "No base dust" in result.error

    def test_configured_identities(self):
        cfg = PerpxConfig(governance="dao")
        cfg.oracle.feeder = "chainlink"
        mgr = ExchangeStateManager.from_config(cfg)
        mgr.begin_block(1, DEFAULT_GENESIS_TIME + 12)
        assert mgr.governance == "dao"
        assert not mgr.process_transaction(_tx(
            ExchangeOpType.UPDATE_ORACLE, FEEDER, 0, asset="EUR", price="1.2",
        )).success
        assert mgr.process_transaction(_tx(
            ExchangeOpType.UPDATE_ORACLE, "chainlink", 0, asset="EUR", price="1.2",
        )).success

    def test_revert_block(self):
        mgr = self._seeded_manager()
        mgr.finalize_block()
        mgr.begin_block(2, DEFAULT_GENESIS_TIME + 24)
        root_before = mgr.compute_state_root()

        mgr.process_transaction(_tx(ExchangeOpType.DEPOSIT, ALICE, 0, amount="1000"))
        mgr.process_transaction(_tx(ExchangeOpType.UPDATE_ORACLE, FEEDER, 0, asset="EUR", price="1.3"))
        assert mgr.compute_state_root() != root_before

        mgr.revert_block()
        assert mgr.compute_state_root() == root_before
        assert mgr.get_nonce(ALICE) == 0
        assert mgr.get_market(0).index_price == Decimal("1.1")

    def test_state_root_deterministic(self):
        a = self._seeded_manager()
        b = self._seeded_manager()
        assert a.finalize_block() == b.finalize_block()
        assert len(a.finalize_block()) == 64

    def test_block_results(self):
        mgr = self._seeded_manager()
        assert len(mgr.block_results) == 2
        mgr.begin_block(2, DEFAULT_GENESIS_TIME + 24)
        assert mgr.block_results == []
