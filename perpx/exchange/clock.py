"""
perpx Block Clock

Single source of "now" for every market, the oracle and the vault.  Funding is
gated per block number, lock periods and TWAP windows use the timestamp.
"""

from __future__ import annotations


class BlockClock:
    """Monotonic (block_number, timestamp) pair shared by all components."""

    def __init__(self, block_number: int = 0, timestamp: int = 0) -> None:
        self.block_number = int(block_number)
        self.timestamp = int(timestamp)

    def set_block(self, block_number: int, timestamp: int) -> None:
        if block_number < self.block_number:
            raise ValueError(
                f"Block number must not go backwards: {block_number} < {self.block_number}"
            )
        if timestamp < self.timestamp:
            raise ValueError(
                f"Block timestamp must not go backwards: {timestamp} < {self.timestamp}"
            )
        self.block_number = int(block_number)
        self.timestamp = int(timestamp)

    def advance(self, seconds: int, blocks: int = 1) -> None:
        """Move forward by ``blocks`` blocks spanning ``seconds`` seconds."""
        if seconds < 0 or blocks < 0:
            raise ValueError("Clock can only move forward")
        self.set_block(self.block_number + blocks, self.timestamp + seconds)

    def __repr__(self) -> str:
        return f"BlockClock(block={self.block_number}, ts={self.timestamp})"
