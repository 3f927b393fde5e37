"""
perpx Index Price Oracle

Reference price source for collateral valuation and funding:
  - One feed per asset (latest round: price + update time)
  - Per-asset heartbeat (maximum age of a valid round)
  - Optional fixed-price override (stablecoins, tests)
  - Sequencer uptime feed with a grace period after restarts

Security features:
  - Staleness check against the block clock, not wall time
  - Non-positive price rejection
  - Future-dated round rejection
  - Grace period after sequencer recovery
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from ..constants import DEFAULT_ORACLE_HEARTBEAT, DEFAULT_SEQUENCER_GRACE_PERIOD, ZERO
from ..exceptions import OracleError, ValidationError
from .clock import BlockClock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class PriceFeed:
    """Latest round of a single asset feed."""
    asset: str
    heartbeat: int
    price: Decimal = ZERO
    updated_at: int = 0
    round_id: int = 0


@dataclass
class SequencerStatus:
    """Uptime feed of the chain sequencer."""
    is_up: bool = True
    started_at: int = 0


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class PriceOracle:
    """Validated index prices keyed by asset symbol."""

    def __init__(
        self,
        clock: BlockClock,
        grace_period: int = DEFAULT_SEQUENCER_GRACE_PERIOD,
    ) -> None:
        if grace_period < 0:
            raise ValidationError("IncorrectGracePeriod")
        self.clock = clock
        self.grace_period = grace_period
        self._feeds: Dict[str, PriceFeed] = {}
        self._fixed_prices: Dict[str, Decimal] = {}
        self.sequencer: Optional[SequencerStatus] = None

    # -- Feed management ----------------------------------------------------

    def add_asset(self, asset: str, heartbeat: int = DEFAULT_ORACLE_HEARTBEAT) -> PriceFeed:
        if not asset:
            raise ValidationError("AssetZeroAddress")
        if heartbeat <= 0:
            raise ValidationError("Heartbeat must be positive")
        feed = self._feeds.get(asset)
        if feed is None:
            feed = PriceFeed(asset=asset, heartbeat=heartbeat)
            self._feeds[asset] = feed
        else:
            feed.heartbeat = heartbeat
        return feed

    def set_price(self, asset: str, price: Decimal, updated_at: Optional[int] = None) -> PriceFeed:
        """Publish a new round for ``asset`` (defaults to the current block time)."""
        feed = self._feeds.get(asset)
        if feed is None:
            feed = self.add_asset(asset)
        feed.price = price
        feed.updated_at = self.clock.timestamp if updated_at is None else int(updated_at)
        feed.round_id += 1
        return feed

    def set_fixed_price(self, asset: str, price: Decimal) -> None:
        if price <= 0:
            raise ValidationError("Fixed price must be positive")
        self._fixed_prices[asset] = price

    def clear_fixed_price(self, asset: str) -> None:
        self._fixed_prices.pop(asset, None)

    def set_sequencer_status(self, is_up: bool, started_at: Optional[int] = None) -> None:
        started = self.clock.timestamp if started_at is None else int(started_at)
        self.sequencer = SequencerStatus(is_up=is_up, started_at=started)
        if not is_up:
            logger.warning("Sequencer reported down at %d", started)

    def set_grace_period(self, grace_period: int) -> None:
        if grace_period < 0:
            raise ValidationError("IncorrectGracePeriod")
        self.grace_period = grace_period

    def is_supported(self, asset: str) -> bool:
        return asset in self._feeds or asset in self._fixed_prices

    # -- Reads --------------------------------------------------------------

    def get_price(self, asset: str, balance_hint: Decimal = Decimal("1")) -> Decimal:
        """
        Validated price of ``asset``.

        A zero ``balance_hint`` means the caller is valuing an empty balance;
        the price is irrelevant then and ZERO is returned without checks.

        Raises:
            OracleError: unsupported asset, sequencer down or in grace period,
                invalid round, or data older than the feed heartbeat
        """
        if balance_hint == 0:
            return ZERO

        fixed = self._fixed_prices.get(asset)
        if fixed is not None:
            return fixed

        feed = self._feeds.get(asset)
        if feed is None:
            raise OracleError(f"UnsupportedAsset: {asset}")

        now = self.clock.timestamp
        self._check_sequencer(now)

        if feed.price <= 0:
            raise OracleError(f"InvalidRoundPrice: {asset}")
        if feed.updated_at <= 0 or feed.updated_at > now:
            raise OracleError(f"InvalidRoundTimestamp: {asset}")
        if now - feed.updated_at > feed.heartbeat:
            raise OracleError(
                f"DataNotFresh: {asset} last updated {now - feed.updated_at}s ago"
            )
        return feed.price

    def _check_sequencer(self, now: int) -> None:
        if self.sequencer is None:
            return
        if not self.sequencer.is_up:
            raise OracleError("SequencerDown")
        if now - self.sequencer.started_at <= self.grace_period:
            raise OracleError("GracePeriodNotOver")
