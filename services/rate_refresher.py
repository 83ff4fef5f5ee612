"""
============================================================================
ChangeWLD Exchange - Rate Refresher
============================================================================

Reliability Level: L4 Standard
Side Effects: Forces a rate cache refresh every TTL

Keeps the rate cache warm so request-path reads normally hit the cache.
Refreshes go through the cache's single-flight guard, so a refresh
triggered by a request at the same moment is shared rather than duplicated.

============================================================================
"""

import logging
from typing import Optional

from services.periodic_worker import PeriodicWorker
from services.rate_cache import RateCache

logger = logging.getLogger(__name__)


class RateRefresher(PeriodicWorker):

    name = "rate-refresher"

    def __init__(self, cache: RateCache, interval_seconds: Optional[float] = None) -> None:
        super().__init__(interval_seconds or cache.ttl_seconds)
        self._cache = cache

    async def run_once(self) -> None:
        snapshot = await self._cache.refresh()
        logger.debug(
            f"[RATE-REFRESHER] Tick | stale={snapshot.stale} | "
            f"computed_at={snapshot.computed_at.isoformat()}"
        )


__all__ = ["RateRefresher"]
