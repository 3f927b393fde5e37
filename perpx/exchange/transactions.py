"""
perpx Exchange Transaction Types

Envelope for every account and keeper operation submitted to the exchange.
A transaction carries its sender, a per-sender nonce and the operation
parameters as strings or numbers; amounts are parsed into Decimals by the
state manager.

Operation types:
  - DEPOSIT / WITHDRAW:               move collateral in and out of the vault
  - CHANGE_POSITION:                  open, extend, reduce or close a position
  - EXTEND_POSITION_WITH_COLLATERAL:  deposit and trade in one step
  - OPEN_REVERSE_POSITION:            close in full, then open the other side
  - PROVIDE_LIQUIDITY / REMOVE_LIQUIDITY
  - LIQUIDATE / SEIZE_COLLATERAL:     keeper operations
  - UPDATE_GLOBAL_STATE:              funding trigger
  - SELL_DUST:                        governance dust sale
  - UPDATE_ORACLE:                    publish an index price round

Security:
  - Nonce prevents replay
  - Deterministic hash over a canonical encoding
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Tuple


# ---------------------------------------------------------------------------
# Operation types
# ---------------------------------------------------------------------------

class ExchangeOpType(IntEnum):
    """Values are part of the transaction hash."""
    DEPOSIT = 1
    WITHDRAW = 2
    CHANGE_POSITION = 3
    EXTEND_POSITION_WITH_COLLATERAL = 4
    OPEN_REVERSE_POSITION = 5
    PROVIDE_LIQUIDITY = 6
    REMOVE_LIQUIDITY = 7
    LIQUIDATE = 8
    SEIZE_COLLATERAL = 9
    UPDATE_GLOBAL_STATE = 10
    SELL_DUST = 11
    UPDATE_ORACLE = 12


REQUIRED_PARAMS: Dict[ExchangeOpType, Tuple[str, ...]] = {
    ExchangeOpType.DEPOSIT: ("amount",),
    ExchangeOpType.WITHDRAW: ("amount",),
    ExchangeOpType.CHANGE_POSITION: ("market_idx", "amount", "direction"),
    ExchangeOpType.EXTEND_POSITION_WITH_COLLATERAL: (
        "market_idx", "collateral_amount", "amount", "direction",
    ),
    ExchangeOpType.OPEN_REVERSE_POSITION: (
        "market_idx", "close_proposed_amount", "open_amount", "direction",
    ),
    ExchangeOpType.PROVIDE_LIQUIDITY: ("market_idx", "quote_amount", "base_amount"),
    ExchangeOpType.REMOVE_LIQUIDITY: ("market_idx", "liquidity_amount"),
    ExchangeOpType.LIQUIDATE: ("market_idx", "liquidatee", "proposed_amount"),
    ExchangeOpType.SEIZE_COLLATERAL: ("liquidatee",),
    ExchangeOpType.UPDATE_GLOBAL_STATE: ("market_idx",),
    ExchangeOpType.SELL_DUST: ("market_idx", "proposed_amount"),
    ExchangeOpType.UPDATE_ORACLE: ("asset", "price"),
}


# ---------------------------------------------------------------------------
# Exchange Transaction
# ---------------------------------------------------------------------------

@dataclass
class ExchangeTransaction:
    """
    A single exchange operation.

    Changing any of op_type, sender, nonce or params changes the hash.
    """
    op_type: ExchangeOpType
    sender: str
    nonce: int
    params: Dict[str, Any] = field(default_factory=dict)

    # -- Hashing ------------------------------------------------------------

    def tx_hash(self) -> str:
        return hashlib.blake2b(self._canonical_bytes(), digest_size=32).hexdigest()

    def _canonical_bytes(self) -> bytes:
        params_json = json.dumps(self.params, sort_keys=True, default=str).encode("utf-8")
        return b"".join([
            int(self.op_type).to_bytes(1, "big"),
            self.sender.encode("utf-8"),
            self.nonce.to_bytes(8, "big"),
            params_json,
        ])

    # -- Serialization ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_type": int(self.op_type),
            "sender": self.sender,
            "nonce": self.nonce,
            "params": self.params,
            "tx_hash": self.tx_hash(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExchangeTransaction:
        return cls(
            op_type=ExchangeOpType(data["op_type"]),
            sender=data["sender"],
            nonce=data["nonce"],
            params=dict(data.get("params", {})),
        )

    # -- Validation ---------------------------------------------------------

    def validate_basic(self) -> bool:
        """
        Structural validation (no state access).

        Raises:
            ValueError: with specific reason
        """
        if not self.sender:
            raise ValueError("Missing sender address")
        if self.nonce < 0:
            raise ValueError("Nonce must be non-negative")
        if self.op_type not in REQUIRED_PARAMS:
            raise ValueError(f"Unknown operation type: {self.op_type}")
        for key in REQUIRED_PARAMS[self.op_type]:
            if key not in self.params:
                raise ValueError(f"{self.op_type.name} missing param: {key}")
        return True

    def __repr__(self) -> str:
        return (f"ExchangeTransaction(op={self.op_type.name}, sender={self.sender[:16]}, "
                f"nonce={self.nonce}, hash={self.tx_hash()[:12]}...)")
