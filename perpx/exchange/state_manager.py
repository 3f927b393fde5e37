"""
perpx Exchange State Manager

Transaction boundary of the exchange.  Owns the block clock, the oracle, the
vault, the insurance fund and the clearing house with its markets, and
applies ExchangeTransactions to them in order.

Responsibilities:
  - Builds the exchange from a PerpxConfig
  - Processes ExchangeTransactions (validation, nonce, dispatch)
  - Converts engine exceptions into failed ExchangeExecResults
  - Computes a state root at the end of each block
  - Block-boundary lifecycle (begin_block, finalize_block, revert_block)

Security:
  - A failed transaction leaves no trace: the clearing house rolled it back
    and the nonce is not consumed
  - State root is blake2b over markets, positions, vault and insurance
  - Whole-block revert from the snapshot taken at block start
  - Dust sales only from the governance sender, index prices only from the
    configured price feeder
"""

from __future__ import annotations

import copy
import hashlib
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..constants import DEFAULT_GOVERNANCE, DEFAULT_PRICE_FEEDER
from ..exceptions import AccessError, ConfigurationError, PerpxException, ValidationError
from .clearing_house import ClearingHouse
from .clock import BlockClock
from .insurance import InsuranceFund
from .oracle import PriceOracle
from .perpetual import Perpetual
from .pool import ConstantProductPool
from .positions import Side
from .transactions import ExchangeOpType, ExchangeTransaction
from .vault import Vault

if TYPE_CHECKING:
    from ..config import PerpxConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transaction execution result
# ---------------------------------------------------------------------------

class ExchangeExecResult:
    """Result of executing a single exchange transaction."""

    __slots__ = ("success", "data", "error")

    def __init__(
        self,
        success: bool = True,
        data: Optional[Dict[str, Any]] = None,
        error: str = "",
    ):
        self.success = success
        self.data = data or {}
        self.error = error

    def __repr__(self) -> str:
        if self.success:
            return f"ExchangeExecResult(success=True, data={self.data})"
        return f"ExchangeExecResult(success=False, error={self.error!r})"


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


def _side(value: Any) -> Side:
    if isinstance(value, Side):
        return value
    try:
        return Side(str(value).lower())
    except ValueError:
        pass
    try:
        return Side[str(value).upper()]
    except KeyError as e:
        raise ValidationError(f"Invalid direction: {value!r}") from e


# ---------------------------------------------------------------------------
# Exchange State Manager
# ---------------------------------------------------------------------------

class ExchangeStateManager:
    """
    Applies exchange transactions block by block.

    Usage:

        mgr = ExchangeStateManager.from_config(load_config())
        mgr.begin_block(height, timestamp)
        for tx in txs:
            result = mgr.process_transaction(tx)
        state_root = mgr.finalize_block()
    """

    def __init__(self, clearing_house: ClearingHouse, oracle: PriceOracle, clock: BlockClock,
                 governance: str = DEFAULT_GOVERNANCE, price_feeder: str = DEFAULT_PRICE_FEEDER) -> None:
        self.clearing_house = clearing_house
        self.oracle = oracle
        self.clock = clock
        # Only these senders may sell dust and publish index prices
        self.governance = governance
        self.price_feeder = price_feeder

        self._nonces: Dict[str, int] = {}
        self._block_results: List[ExchangeExecResult] = []
        self._snapshot: Optional[Dict[str, Any]] = None

        self._total_txs: int = 0
        self._failed_txs: int = 0

    @classmethod
    def from_config(cls, config: Optional["PerpxConfig"] = None,
                    clock: Optional[BlockClock] = None) -> ExchangeStateManager:
        """Build oracle, vault, insurance, clearing house and markets."""
        from ..config import PerpxConfig

        config = config or PerpxConfig()
        config.validate()
        clock = clock or BlockClock(block_number=0, timestamp=config.genesis_time)
        if clock.timestamp <= 0:
            raise ConfigurationError("Exchange clock must start at a positive timestamp")

        oracle = PriceOracle(clock, grace_period=config.oracle.grace_period)
        if config.oracle.sequencer_feed:
            oracle.set_sequencer_status(True, started_at=clock.timestamp - config.oracle.grace_period - 1)
        insurance = InsuranceFund()
        vault = Vault(oracle, insurance)
        clearing_house = ClearingHouse(vault, insurance, config.clearing_house.to_params())

        for market_cfg in config.markets:
            oracle.add_asset(market_cfg.base_asset, heartbeat=market_cfg.heartbeat)
            oracle.set_price(market_cfg.base_asset, market_cfg.initial_price,
                             updated_at=clock.timestamp)
            pool = ConstantProductPool(fee=market_cfg.pool.fee, name=market_cfg.name)
            perpetual = Perpetual(
                pool, oracle, clock, market_cfg.base_asset,
                params=market_cfg.to_params(), name=market_cfg.name,
            )
            clearing_house.add_market(perpetual)

        logger.info(
            "Exchange %s initialized with %d market(s)", config.network_name, clearing_house.market_count
        )
        return cls(clearing_house, oracle, clock,
                   governance=config.governance, price_feeder=config.oracle.feeder)

    # =====================================================================
    #  Block lifecycle
    # =====================================================================

    def begin_block(self, block_height: int, block_timestamp: int) -> None:
        """Advance the clock and snapshot the state for a possible revert."""
        self.clock.set_block(block_height, block_timestamp)
        self._block_results = []
        self.take_snapshot()

    def finalize_block(self) -> str:
        """
        Returns:
            The exchange state root hash for this block.
        """
        state_root = self.compute_state_root()
        logger.debug(
            "Block %d finalized: %d txs, state_root=%s",
            self.clock.block_number, len(self._block_results), state_root[:16],
        )
        return state_root

    def revert_block(self) -> None:
        """Restore the state captured at the start of the current block."""
        if self._snapshot is not None:
            self._restore_snapshot(self._snapshot)
            self._snapshot = None
            logger.warning("Block %d reverted — exchange state restored", self.clock.block_number)

    # =====================================================================
    #  Transaction processing
    # =====================================================================

    def process_transaction(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        """
        Execute a single exchange transaction.

        Never raises for engine errors; the result carries the message.
        """
        try:
            tx.validate_basic()
        except ValueError as e:
            return self._record(ExchangeExecResult(success=False, error=str(e)))

        expected_nonce = self._nonces.get(tx.sender, 0)
        if tx.nonce != expected_nonce:
            return self._record(ExchangeExecResult(
                success=False,
                error=f"Invalid nonce: expected {expected_nonce}, got {tx.nonce}",
            ))

        try:
            result = self._execute_op(tx)
        except (PerpxException, ValueError, ArithmeticError) as e:
            logger.error("Exchange op %s from %s failed: %s", tx.op_type.name, tx.sender, e)
            result = ExchangeExecResult(success=False, error=str(e))

        if result.success:
            self._nonces[tx.sender] = tx.nonce + 1
        return self._record(result)

    def _record(self, result: ExchangeExecResult) -> ExchangeExecResult:
        self._total_txs += 1
        if not result.success:
            self._failed_txs += 1
        self._block_results.append(result)
        return result

    def _execute_op(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        handlers: Dict[ExchangeOpType, Callable[[ExchangeTransaction], ExchangeExecResult]] = {
            ExchangeOpType.DEPOSIT: self._op_deposit,
            ExchangeOpType.WITHDRAW: self._op_withdraw,
            ExchangeOpType.CHANGE_POSITION: self._op_change_position,
            ExchangeOpType.EXTEND_POSITION_WITH_COLLATERAL: self._op_extend_with_collateral,
            ExchangeOpType.OPEN_REVERSE_POSITION: self._op_open_reverse_position,
            ExchangeOpType.PROVIDE_LIQUIDITY: self._op_provide_liquidity,
            ExchangeOpType.REMOVE_LIQUIDITY: self._op_remove_liquidity,
            ExchangeOpType.LIQUIDATE: self._op_liquidate,
            ExchangeOpType.SEIZE_COLLATERAL: self._op_seize_collateral,
            ExchangeOpType.UPDATE_GLOBAL_STATE: self._op_update_global_state,
            ExchangeOpType.SELL_DUST: self._op_sell_dust,
            ExchangeOpType.UPDATE_ORACLE: self._op_update_oracle,
        }
        handler = handlers.get(tx.op_type)
        if handler is None:
            return ExchangeExecResult(success=False, error=f"Unknown op type: {tx.op_type}")
        return handler(tx)

    # =====================================================================
    #  Operation handlers
    # =====================================================================

    def _op_deposit(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        self.clearing_house.deposit(tx.sender, _dec(p["amount"]), p.get("token", 0))
        return ExchangeExecResult(data={"amount": str(p["amount"])})

    def _op_withdraw(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        self.clearing_house.withdraw(tx.sender, _dec(p["amount"]), p.get("token", 0))
        return ExchangeExecResult(data={"amount": str(p["amount"])})

    def _op_change_position(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        result = self.clearing_house.change_position(
            tx.sender, int(p["market_idx"]), _dec(p["amount"]),
            _dec(p.get("min_amount", "0")), _side(p["direction"]),
        )
        return ExchangeExecResult(data=_trade_data(result))

    def _op_extend_with_collateral(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        result = self.clearing_house.extend_position_with_collateral(
            tx.sender, int(p["market_idx"]), _dec(p["collateral_amount"]), p.get("token", 0),
            _dec(p["amount"]), _dec(p.get("min_amount", "0")), _side(p["direction"]),
        )
        return ExchangeExecResult(data=_trade_data(result))

    def _op_open_reverse_position(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        closed, opened = self.clearing_house.open_reverse_position(
            tx.sender, int(p["market_idx"]),
            _dec(p["close_proposed_amount"]), _dec(p.get("close_min_amount", "0")),
            _dec(p["open_amount"]), _dec(p.get("open_min_amount", "0")),
            _side(p["direction"]),
        )
        return ExchangeExecResult(data={"closed": _trade_data(closed), "opened": _trade_data(opened)})

    def _op_provide_liquidity(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        result = self.clearing_house.provide_liquidity(
            tx.sender, int(p["market_idx"]),
            (_dec(p["quote_amount"]), _dec(p["base_amount"])),
            _dec(p.get("min_lp_amount", "0")),
        )
        return ExchangeExecResult(data={"liquidity_amount": str(result.liquidity_amount)})

    def _op_remove_liquidity(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        min_vtokens = p.get("min_vtoken_amounts", ("0", "0"))
        result = self.clearing_house.remove_liquidity(
            tx.sender, int(p["market_idx"]), _dec(p["liquidity_amount"]),
            (_dec(min_vtokens[0]), _dec(min_vtokens[1])),
            _dec(p.get("proposed_amount", "0")), _dec(p.get("min_amount", "0")),
        )
        return ExchangeExecResult(data={"pnl": str(result.pnl), "dust": str(result.dust)})

    def _op_liquidate(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        p = tx.params
        reward = self.clearing_house.liquidate(
            tx.sender, int(p["market_idx"]), p["liquidatee"], _dec(p["proposed_amount"]),
            is_trader=bool(p.get("is_trader", True)), min_amount=_dec(p.get("min_amount", "0")),
        )
        return ExchangeExecResult(data={"reward": str(reward)})

    def _op_seize_collateral(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        paid = self.clearing_house.seize_collateral(tx.sender, tx.params["liquidatee"])
        return ExchangeExecResult(data={"paid": str(paid)})

    def _op_update_global_state(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        update = self.clearing_house.update_global_state(int(tx.params["market_idx"]))
        if update is None:
            return ExchangeExecResult(data={"updated": False})
        return ExchangeExecResult(data={
            "updated": True,
            "funding_rate": str(update.funding_rate),
            "cum_funding_rate": str(update.cum_funding_rate),
        })

    def _op_sell_dust(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        if tx.sender != self.governance:
            raise AccessError(f"SenderNotGovernance: {tx.sender}")
        p = tx.params
        result = self.clearing_house.sell_dust(
            int(p["market_idx"]), _dec(p["proposed_amount"]), _dec(p.get("min_amount", "0")),
        )
        return ExchangeExecResult(data=_trade_data(result))

    def _op_update_oracle(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        if tx.sender != self.price_feeder:
            raise AccessError(f"SenderNotPriceFeeder: {tx.sender}")
        p = tx.params
        feed = self.oracle.set_price(p["asset"], _dec(p["price"]), p.get("updated_at"))
        return ExchangeExecResult(data={
            "asset": feed.asset, "price": str(feed.price), "round_id": feed.round_id,
        })

    # =====================================================================
    #  State root computation
    # =====================================================================

    def compute_state_root(self) -> str:
        """
        Deterministic hash of the entire exchange state.

        Returns:
            64-char hex string (blake2b-256)
        """
        hasher = hashlib.blake2b(digest_size=32)
        ch = self.clearing_house

        for idx, perpetual in enumerate(ch.perpetuals):
            gp = perpetual.global_position
            market_hash = hashlib.blake2b(
                (f"{idx}:{perpetual.pool.balances[0]}:{perpetual.pool.balances[1]}:"
                 f"{perpetual.pool.total_supply}:{gp.cum_funding_rate}:"
                 f"{gp.cum_funding_per_lp_token}:{gp.total_trading_fees_growth}:"
                 f"{perpetual.base_dust}").encode(),
                digest_size=16,
            ).digest()
            hasher.update(market_hash)

            for account in sorted(perpetual.trader_positions):
                pos = perpetual.trader_positions[account]
                hasher.update(f"T:{idx}:{account}:{pos.open_notional}:{pos.position_size}".encode())
            for account in sorted(perpetual.lp_positions):
                lp = perpetual.lp_positions[account]
                hasher.update(
                    f"L:{idx}:{account}:{lp.open_notional}:{lp.position_size}:{lp.liquidity_balance}".encode()
                )

        for account in sorted(ch.vault.balances):
            for token_idx in sorted(ch.vault.balances[account]):
                hasher.update(f"V:{account}:{token_idx}:{ch.vault.balances[account][token_idx]}".encode())

        hasher.update(f"I:{ch.insurance.balance}:{ch.insurance.system_bad_debt}".encode())

        for addr in sorted(self._nonces):
            hasher.update(f"{addr}:{self._nonces[addr]}".encode())

        hasher.update(self.clock.block_number.to_bytes(8, "big"))
        return hasher.hexdigest()

    # =====================================================================
    #  Snapshot / restore (for revert)
    # =====================================================================

    def take_snapshot(self) -> Dict[str, Any]:
        snapshot = {
            "nonces": dict(self._nonces),
            "clearing_house": self.clearing_house.snapshot(),
            "oracle_feeds": copy.deepcopy(self.oracle._feeds),
            "total_txs": self._total_txs,
            "failed_txs": self._failed_txs,
        }
        self._snapshot = snapshot
        return snapshot

    def _restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self._nonces = dict(snapshot["nonces"])
        self.clearing_house.restore(snapshot["clearing_house"])
        self.oracle._feeds = copy.deepcopy(snapshot["oracle_feeds"])
        self._total_txs = snapshot["total_txs"]
        self._failed_txs = snapshot["failed_txs"]

    # =====================================================================
    #  Query interface (read-only)
    # =====================================================================

    def get_nonce(self, address: str) -> int:
        return self._nonces.get(address, 0)

    def get_market(self, idx: int) -> Perpetual:
        return self.clearing_house.get_market(idx)

    @property
    def block_results(self) -> List[ExchangeExecResult]:
        return list(self._block_results)

    def get_stats(self) -> Dict[str, Any]:
        ch = self.clearing_house
        return {
            "markets": ch.market_count,
            "total_txs": self._total_txs,
            "failed_txs": self._failed_txs,
            "insurance_balance": str(ch.insurance.balance),
            "system_bad_debt": str(ch.insurance.system_bad_debt),
            "tvl": str(ch.vault.get_total_value_locked()),
            "block_height": self.clock.block_number,
        }


def _trade_data(result: Any) -> Dict[str, Any]:
    return {
        "quote_proceeds": str(result.quote_proceeds),
        "base_proceeds": str(result.base_proceeds),
        "pnl": str(result.pnl),
        "trading_fees": str(result.trading_fees),
        "insurance_fees": str(result.insurance_fees),
        "dust": str(result.dust),
    }
