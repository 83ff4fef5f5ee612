"""
============================================================================
ChangeWLD Exchange - Transfer Watcher
============================================================================

Reliability Level: L4 Standard
Side Effects: World Chain RPC reads, order status updates

Periodically checks orders that are still awaiting the user's WLD
(pending or sent) and already carry a transaction hash. A confirmed
transfer of at least the order amount to the payout wallet moves the order
to asset_received. Receipts not yet mined are retried on the next tick.

============================================================================
"""

import logging
import uuid

from app.infra.worldchain_client import is_valid_tx_hash
from app.observability.metrics import record_transfer_check
from services.exchange_errors import ExchangeError
from services.order_lifecycle import AWAITING_TRANSFER, OrderLifecycleEngine
from services.periodic_worker import PeriodicWorker

logger = logging.getLogger(__name__)


class TransferWatcher(PeriodicWorker):

    name = "transfer-watcher"

    def __init__(self, engine: OrderLifecycleEngine, interval_seconds: float) -> None:
        super().__init__(interval_seconds, run_immediately=False)
        self._engine = engine

    async def run_once(self) -> int:
        """Check every awaiting order once. Returns the number confirmed."""
        correlation_id = str(uuid.uuid4())
        candidates = [
            order for order in await self._engine.store.list_all(statuses=AWAITING_TRANSFER)
            if is_valid_tx_hash(order.onchain_reference)
        ]

        confirmed = 0
        for order in candidates:
            try:
                check = await self._engine.confirm_transfer(
                    order.id, correlation_id=correlation_id
                )
            except ExchangeError as e:
                record_transfer_check("error")
                logger.warning(
                    f"[TRANSFER-WATCHER] Check failed | order_id={order.id} | "
                    f"error_code={e.error_code} | correlation_id={correlation_id}"
                )
                continue

            record_transfer_check("matched" if check.matched else check.reason or "unmatched")
            if check.matched:
                confirmed += 1

        if candidates:
            logger.info(
                f"[TRANSFER-WATCHER] Tick | checked={len(candidates)} | "
                f"confirmed={confirmed} | correlation_id={correlation_id}"
            )
        return confirmed


__all__ = ["TransferWatcher"]
