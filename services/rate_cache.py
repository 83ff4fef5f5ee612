"""
============================================================================
ChangeWLD Exchange - Rate Cache
============================================================================

Reliability Level: L5 High
Decimal Integrity: net_rate = gross_rate * (1 - margin), exact Decimal
Traceability: Every refresh logs a correlation_id

The rate cache owns the single current RateSnapshot of the process and
shields callers from price-feed flakiness:

    1. A snapshot younger than the TTL is served as-is (from_cache=True).
    2. Otherwise one refresh runs; concurrent callers await the same
       in-flight refresh (single-flight).
    3. A leg that fails, is not finite, or falls outside its plausible
       range is replaced by its configured fallback (partial degradation).
    4. If both legs fail and a snapshot exists, the old snapshot is served
       with stale=True.
    5. On cold start both fallbacks are used so /rate never hard-fails,
       unless a failed leg has no fallback configured (UPS-500).

============================================================================
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Callable, Dict, Optional, Tuple

from app.exchange.price_feeds import FeedQuote, LegResult, PriceFeed
from app.observability.metrics import record_fallback_leg, record_rate_refresh
from services.exchange_config import (
    DEFAULT_RATE_TTL_SECONDS,
    PLAUSIBLE_SOURCE_USD,
    PLAUSIBLE_TARGET_PER_USD,
)
from services.exchange_errors import UpstreamUnavailableError

# Configure module logger
logger = logging.getLogger(__name__)

COP_PRECISION = Decimal("0.01")

LEG_SOURCE = "wld_usd"
LEG_TARGET = "usd_cop"


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class RateSnapshot:
    """
    A computed WLD->COP rate. Ephemeral, never persisted.

    Invariant: net_rate == gross_rate * (1 - margin)
    """
    source_usd: Decimal
    target_per_usd: Decimal
    gross_rate: Decimal
    net_rate: Decimal
    margin: Decimal
    computed_at: datetime
    provider: str
    source_from_fallback: bool = False
    target_from_fallback: bool = False
    from_cache: bool = False
    stale: bool = False

    @property
    def margin_percent(self) -> Decimal:
        return self.margin * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wld_usd": str(self.source_usd),
            "usd_cop": str(self.target_per_usd),
            "wld_cop_gross": str(self.gross_rate.quantize(COP_PRECISION, rounding=ROUND_HALF_EVEN)),
            "wld_cop_user": str(self.net_rate.quantize(COP_PRECISION, rounding=ROUND_HALF_EVEN)),
            "gross_rate": str(self.gross_rate),
            "net_rate": str(self.net_rate),
            "margin_percent": str(self.margin_percent),
            "computed_at": self.computed_at.isoformat(),
            "provider": self.provider,
            "wld_from_fallback": self.source_from_fallback,
            "usd_cop_from_fallback": self.target_from_fallback,
            "from_cache": self.from_cache,
            "stale": self.stale,
        }


def compute_net_rate(gross_rate: Decimal, margin: Decimal) -> Decimal:
    return gross_rate * (Decimal("1") - margin)


# =============================================================================
# Rate Cache
# =============================================================================

class RateCache:
    """
    TTL cache over a PriceFeed with per-leg fallback and single-flight refresh.

    Reliability Level: L5 High
    Input Constraints: margin in [0, 1), ttl_seconds > 0
    Side Effects: Upstream HTTP calls through the feed, metrics
    """

    def __init__(
        self,
        feed: PriceFeed,
        margin: Decimal,
        ttl_seconds: float = DEFAULT_RATE_TTL_SECONDS,
        fallback_source_usd: Optional[Decimal] = None,
        fallback_target_per_usd: Optional[Decimal] = None,
        plausible_source_usd: Tuple[Decimal, Decimal] = PLAUSIBLE_SOURCE_USD,
        plausible_target_per_usd: Tuple[Decimal, Decimal] = PLAUSIBLE_TARGET_PER_USD,
        monotonic: Callable[[], float] = time.monotonic,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not (Decimal("0") <= margin < Decimal("1")):
            raise ValueError(f"margin must be in [0, 1), got {margin}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        self._feed = feed
        self._margin = margin
        self._ttl = ttl_seconds
        self._fallback_source = fallback_source_usd
        self._fallback_target = fallback_target_per_usd
        self._plausible_source = plausible_source_usd
        self._plausible_target = plausible_target_per_usd
        self._monotonic = monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))

        self._snapshot: Optional[RateSnapshot] = None
        self._fetched_at: Optional[float] = None
        self._inflight: Optional["asyncio.Future[RateSnapshot]"] = None
        self._refresh_count = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def snapshot(self) -> Optional[RateSnapshot]:
        return self._snapshot

    @property
    def refresh_count(self) -> int:
        """Number of upstream refreshes actually started."""
        return self._refresh_count

    def age_seconds(self) -> Optional[float]:
        if self._fetched_at is None:
            return None
        return self._monotonic() - self._fetched_at

    async def get_rate(self, force_refresh: bool = False) -> RateSnapshot:
        """Return the current rate, refreshing if the snapshot expired."""
        age = self.age_seconds()
        if (
            not force_refresh
            and self._snapshot is not None
            and age is not None
            and age < self._ttl
        ):
            return replace(self._snapshot, from_cache=True)
        return await self._refresh_single_flight()

    async def refresh(self) -> RateSnapshot:
        return await self.get_rate(force_refresh=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _refresh_single_flight(self) -> RateSnapshot:
        if self._inflight is None or self._inflight.done():
            self._refresh_count += 1
            task = asyncio.ensure_future(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        # Shielded so a cancelled caller does not cancel the shared refresh
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: "asyncio.Future[RateSnapshot]") -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> RateSnapshot:
        correlation_id = str(uuid.uuid4())
        try:
            quote = await self._feed.fetch(correlation_id=correlation_id)
        except Exception as e:
            logger.error(
                f"[RATE-CACHE] Feed raised | error={e} | correlation_id={correlation_id}"
            )
            quote = FeedQuote(
                source_usd=LegResult(error=str(e)),
                target_per_usd=LegResult(error=str(e)),
                provider=getattr(self._feed, "name", "unknown"),
            )

        source = self._accept(quote.source_usd, self._plausible_source, LEG_SOURCE, correlation_id)
        target = self._accept(quote.target_per_usd, self._plausible_target, LEG_TARGET, correlation_id)

        if source is None and target is None and self._snapshot is not None:
            return self._serve_stale(correlation_id)

        source_value, source_fallback = self._resolve(source, self._fallback_source, LEG_SOURCE)
        target_value, target_fallback = self._resolve(target, self._fallback_target, LEG_TARGET)

        if source_value is None or target_value is None:
            if self._snapshot is not None:
                return self._serve_stale(correlation_id)
            record_rate_refresh("failed")
            logger.error(
                f"[UPS-500] No rate available | no cache and no fallback | "
                f"correlation_id={correlation_id}"
            )
            raise UpstreamUnavailableError(
                "Rate unavailable: upstream failed and no fallback configured"
            )

        gross = source_value * target_value
        snapshot = RateSnapshot(
            source_usd=source_value,
            target_per_usd=target_value,
            gross_rate=gross,
            net_rate=compute_net_rate(gross, self._margin),
            margin=self._margin,
            computed_at=self._wall_clock(),
            provider=quote.provider,
            source_from_fallback=source_fallback,
            target_from_fallback=target_fallback,
        )
        self._snapshot = snapshot
        self._fetched_at = self._monotonic()

        if source_fallback and target_fallback:
            outcome = "fallback"
        elif source_fallback or target_fallback:
            outcome = "partial"
        else:
            outcome = "fresh"
        record_rate_refresh(outcome, snapshot.net_rate)

        logger.info(
            f"[RATE-CACHE] Refreshed | outcome={outcome} | provider={quote.provider} | "
            f"wld_usd={source_value} | usd_cop={target_value} | "
            f"net_rate={snapshot.net_rate.quantize(COP_PRECISION)} | "
            f"correlation_id={correlation_id}"
        )
        return snapshot

    def _accept(
        self,
        leg: LegResult,
        plausible: Tuple[Decimal, Decimal],
        label: str,
        correlation_id: str,
    ) -> Optional[Decimal]:
        if not leg.ok:
            return None
        low, high = plausible
        if not (low <= leg.value <= high):
            logger.warning(
                f"[RATE-CACHE] Implausible value rejected | leg={label} | "
                f"value={leg.value} | range=[{low}, {high}] | "
                f"correlation_id={correlation_id}"
            )
            return None
        return leg.value

    def _resolve(
        self,
        value: Optional[Decimal],
        fallback: Optional[Decimal],
        label: str,
    ) -> Tuple[Optional[Decimal], bool]:
        if value is not None:
            return value, False
        if fallback is not None:
            record_fallback_leg(label)
        return fallback, True

    def _serve_stale(self, correlation_id: str) -> RateSnapshot:
        record_rate_refresh("stale", self._snapshot.net_rate)
        logger.warning(
            f"[RATE-CACHE] Refresh failed, serving stale snapshot | "
            f"computed_at={self._snapshot.computed_at.isoformat()} | "
            f"correlation_id={correlation_id}"
        )
        return replace(self._snapshot, from_cache=True, stale=True)


__all__ = [
    "RateSnapshot",
    "RateCache",
    "compute_net_rate",
]
