"""
perpx Transaction Replay

Applies a JSON-lines transaction log to a freshly configured exchange and
reports the state root of every block.  Consecutive lines with the same
block number form one block.

Line format:
    {"block": 1, "timestamp": 1704067212, "op_type": 1,
     "sender": "alice", "nonce": 0, "params": {"amount": "1000"}}

Usage:
    python run_exchange.py --config perpx.toml txs.jsonl
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import load_config
from .exceptions import ConfigurationError, PerpxException, ValidationError
from .exchange.state_manager import ExchangeStateManager
from .exchange.transactions import ExchangeTransaction
from .logger import LogManager

logger = logging.getLogger(__name__)

Block = Tuple[int, int, List[ExchangeTransaction]]


def iter_blocks(lines: Iterable[str]) -> Iterator[Block]:
    """Group transaction lines into (height, timestamp, txs) blocks."""
    current: Optional[Block] = None
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            entry = json.loads(line)
            height, timestamp = int(entry["block"]), int(entry["timestamp"])
            tx = ExchangeTransaction.from_dict(entry)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed transaction on line {lineno}: {e}") from e

        if current is None or current[0] != height:
            if current is not None:
                yield current
            current = (height, timestamp, [])
        current[2].append(tx)
    if current is not None:
        yield current


def replay(manager: ExchangeStateManager, lines: Iterable[str]) -> List[Tuple[int, str]]:
    """
    Run every block through ``manager``.

    Returns:
        (height, state_root) per block
    """
    roots = []
    for height, timestamp, txs in iter_blocks(lines):
        manager.begin_block(height, timestamp)
        for tx in txs:
            result = manager.process_transaction(tx)
            if not result.success:
                logger.warning("Block %d: %r rejected: %s", height, tx, result.error)
        state_root = manager.finalize_block()
        logger.info("Block %d: %d txs, state root %s", height, len(txs), state_root)
        roots.append((height, state_root))
    return roots


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay a perpx transaction log and print block state roots",
    )
    parser.add_argument("tx_file", help="JSON-lines transaction log")
    parser.add_argument("--config", default=None, help="Path to perpx.toml (default: $PERPX_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Override [logging] level")
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    try:
        config = load_config(args.config)
        if args.log_level:
            config.logging.level = args.log_level.upper()
        config.validate()
    except ConfigurationError as e:
        LogManager().configure(file_output=False)
        logger.error("Configuration error: %s", e)
        return 2

    LogManager().configure(
        log_level=config.logging.level,
        log_file=Path(config.logging.file),
        console_output=config.logging.console,
        file_output=config.logging.file_output and not args.no_log_file,
    )

    tx_path = Path(args.tx_file)
    if not tx_path.exists():
        logger.error("Transaction log not found: %s", tx_path)
        return 1

    manager = ExchangeStateManager.from_config(config)
    try:
        with open(tx_path, "r", encoding="utf-8") as f:
            roots = replay(manager, f)
    except (PerpxException, ValueError) as e:
        logger.error("Replay aborted: %s", e)
        return 1

    stats = manager.get_stats()
    logger.info(
        "Replayed %d block(s), %d txs (%d failed), insurance %s, bad debt %s",
        len(roots), stats["total_txs"], stats["failed_txs"],
        stats["insurance_balance"], stats["system_bad_debt"],
    )
    return 0
