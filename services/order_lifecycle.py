"""
============================================================================
ChangeWLD Exchange - Order Lifecycle Engine
============================================================================

Reliability Level: L5 High
Decimal Integrity: profit_margin quantized to 0.01 COP with ROUND_HALF_EVEN
Traceability: All operations log a correlation_id

ORDER CREATION:
    1. bank_destination must be a permitted payout rail     (InvalidBank)
    2. identity must carry a successful verification        (UnverifiedIdentity)
    3. amount_source finite and >= configured minimum       (BelowMinimum)
       both amounts positive and <= MAX_AMOUNT               (InvalidAmount)
    4. fewer than DAILY_ORDER_LIMIT orders for the identity
       since local midnight of the business day             (QuotaExceeded)
    5. id allocated, status=pending, one history entry, persisted

    Nothing is persisted and no id is consumed when steps 1-4 fail.

STATUS TRANSITIONS:
    The strict table in services.order_models is enforced by default. An
    out-of-table transition is refused with InvalidTransition (409) unless
    the caller forces it or strict mode is off; it is then accepted and its
    history entry is flagged as an anomaly.

    Entering paid requires an on-chain reference. In simulation mode a
    placeholder reference is synthesized instead.

ERROR CODES:
    - EXC-401: InvalidBank
    - EXC-402: BelowMinimum
    - EXC-403: UnverifiedIdentity
    - EXC-404: InvalidStatus
    - EXC-405: MissingOnchainReference
    - EXC-407: InvalidAmount (amount above MAX_AMOUNT)
    - ORD-409: InvalidTransition
    - QTA-429: QuotaExceeded

============================================================================
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Callable, Dict, List, Optional

from app.exchange.decimal_gateway import get_decimal_gateway
from app.infra.worldchain_client import TransferInfo, TransferStatus, WorldChainClient
from app.observability.metrics import (
    record_order_created,
    record_quota_rejection,
    record_transition,
)
from services.business_calendar import business_day_start, inventory_date
from services.exchange_config import ExchangeConfig
from services.exchange_errors import (
    ExchangeErrorCode,
    InternalError,
    InvalidTransitionError,
    QuotaExceededError,
    ValidationError,
)
from services.identity_store import IdentityStore
from services.order_models import (
    Order,
    OrderInput,
    OrderStatus,
    StatusHistoryEntry,
    VALID_TRANSITIONS,
    is_valid_transition,
    parse_status,
)
from services.order_store import OrderStore, utc_now

# Configure module logger
logger = logging.getLogger(__name__)

PRECISION_COP = Decimal("0.01")
# Upper bound for amount_source (WLD) and amount_target (COP)
MAX_AMOUNT = Decimal("1e15")
SIMULATED_REFERENCE_PREFIX = "sim_"

AWAITING_TRANSFER = (OrderStatus.PENDING, OrderStatus.SENT)
TRANSFER_CLAIMED = (OrderStatus.ASSET_RECEIVED, OrderStatus.PAID)


def compute_profit_margin(amount_target: Decimal, margin: Decimal) -> Decimal:
    """COP kept by the operator: margin / (1 - margin) * amount_target."""
    profit = margin / (Decimal("1") - margin) * amount_target
    return profit.quantize(PRECISION_COP, rounding=ROUND_HALF_EVEN)


@dataclass
class TransferCheck:
    """Outcome of matching an on-chain transfer against an order."""
    order: Order
    transfer: TransferInfo
    matched: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "transfer": self.transfer.to_dict(),
            "matched": self.matched,
            "reason": self.reason,
        }


class OrderLifecycleEngine:
    """
    Validates order creation, enforces the daily quota and governs status
    transitions.

    Reliability Level: L5 High
    Input Constraints: Validated OrderInput from the API layer
    Side Effects: Writes through the OrderStore, metrics, logging
    """

    def __init__(
        self,
        config: ExchangeConfig,
        store: OrderStore,
        identity_store: Optional[IdentityStore] = None,
        chain_client: Optional[WorldChainClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._identity_store = identity_store
        self._chain = chain_client
        self._clock = clock
        self._create_lock: Optional[asyncio.Lock] = None
        self._confirm_lock: Optional[asyncio.Lock] = None

    @property
    def store(self) -> OrderStore:
        return self._store

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_order(
        self,
        order_input: OrderInput,
        correlation_id: Optional[str] = None,
    ) -> Order:
        correlation_id = correlation_id or str(uuid.uuid4())

        self._validate_bank(order_input.bank_destination)
        await self._validate_identity(order_input)
        self._validate_amounts(order_input)

        # Quota check and insert must not interleave with another create
        if self._create_lock is None:
            self._create_lock = asyncio.Lock()
        async with self._create_lock:
            now = self._clock()
            await self._check_quota(order_input.identity_handle, now, correlation_id)

            profit_margin = compute_profit_margin(order_input.amount_target, self._config.margin)
            settles_on = inventory_date(now, self._config.business_utc_offset_hours)

            order_id = await self._store.next_id()
            order = Order(
                id=order_id,
                identity_handle=order_input.identity_handle,
                bank_destination=order_input.bank_destination,
                account_holder=order_input.account_holder,
                account_number=order_input.account_number,
                amount_source=order_input.amount_source,
                amount_target=order_input.amount_target,
                status=OrderStatus.PENDING,
                status_history=[StatusHistoryEntry(at=now, to=OrderStatus.PENDING)],
                created_at=now,
                updated_at=now,
                inventory_date=settles_on,
                profit_margin=profit_margin,
                onchain_reference=order_input.onchain_reference,
            )
            stored = await self._store.insert(order)

        record_order_created(stored.bank_destination)
        logger.info(
            f"[ORDER-CREATED] order_id={stored.id} | "
            f"bank={stored.bank_destination} | "
            f"amount_wld={stored.amount_source} | "
            f"amount_cop={stored.amount_target} | "
            f"inventory_date={stored.inventory_date.isoformat()} | "
            f"correlation_id={correlation_id}"
        )
        return stored

    def _validate_bank(self, bank: str) -> None:
        if bank not in self._config.allowed_banks:
            raise ValidationError(
                f"Bank '{bank}' is not permitted",
                error="InvalidBank",
                error_code=ExchangeErrorCode.INVALID_BANK,
                detail={"allowed": list(self._config.allowed_banks)},
            )

    async def _validate_identity(self, order_input: OrderInput) -> None:
        if not order_input.verified or not order_input.identity_handle:
            raise ValidationError(
                "Order requires a successful World ID verification",
                error="UnverifiedIdentity",
                error_code=ExchangeErrorCode.UNVERIFIED_IDENTITY,
            )
        if self._config.require_recorded_identity and self._identity_store is not None:
            record = await self._identity_store.get(order_input.identity_handle)
            if record is None or record.verified_at is None:
                raise ValidationError(
                    "Identity has not been verified by this backend",
                    error="UnverifiedIdentity",
                    error_code=ExchangeErrorCode.UNVERIFIED_IDENTITY,
                )

    def _validate_amounts(self, order_input: OrderInput) -> None:
        amount = order_input.amount_source
        minimum = self._config.min_amount_source
        if not isinstance(amount, Decimal) or not amount.is_finite() or amount < minimum:
            raise ValidationError(
                f"amount_source must be a finite number >= {minimum}",
                error="BelowMinimum",
                error_code=ExchangeErrorCode.BELOW_MINIMUM,
                detail={"minimum": str(minimum)},
            )
        target = order_input.amount_target
        if not isinstance(target, Decimal) or not target.is_finite() or target <= 0:
            raise ValidationError(
                "amount_target must be a finite positive number",
                error="InvalidAmount",
                error_code=ExchangeErrorCode.INVALID_AMOUNT,
            )
        for name, value in (("amount_source", amount), ("amount_target", target)):
            if value > MAX_AMOUNT:
                raise ValidationError(
                    f"{name} must not exceed {MAX_AMOUNT:f}",
                    error="InvalidAmount",
                    error_code=ExchangeErrorCode.INVALID_AMOUNT,
                    detail={"field": name, "maximum": f"{MAX_AMOUNT:f}"},
                )

    async def _check_quota(self, identity_handle: str, now: datetime, correlation_id: str) -> None:
        window_start = business_day_start(now, self._config.business_utc_offset_hours)
        todays = await self._store.find_by_identity(identity_handle, since=window_start)
        limit = self._config.daily_order_limit
        if len(todays) >= limit:
            record_quota_rejection()
            logger.warning(
                f"[QTA-429] Daily quota reached | count={len(todays)} | limit={limit} | "
                f"correlation_id={correlation_id}"
            )
            raise QuotaExceededError(
                f"Daily limit of {limit} orders reached",
                detail={"limit": limit, "window_start": window_start.isoformat()},
            )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def set_status(
        self,
        order_id: int,
        status: str,
        force: bool = False,
        onchain_reference: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Move an order to `status`.

        Raises:
            ValidationError: Unknown status, or paid without a reference
            InvalidTransitionError: Out-of-table move in strict mode, unforced
            NotFoundError: No such order
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        target = parse_status(status)
        if target is None:
            raise ValidationError(
                f"Invalid status '{status}'",
                error="InvalidStatus",
                error_code=ExchangeErrorCode.INVALID_STATUS,
                detail={"allowed": [s.value for s in OrderStatus]},
            )

        outcome: Dict[str, Any] = {}

        def apply(order: Order) -> None:
            current = order.status
            anomaly = not is_valid_transition(current, target)
            if anomaly and self._config.strict_transitions and not force:
                raise InvalidTransitionError(
                    f"Transition {current.value} -> {target.value} is not allowed",
                    detail={
                        "from": current.value,
                        "to": target.value,
                        "allowed": sorted(s.value for s in VALID_TRANSITIONS[current]),
                    },
                )

            if onchain_reference:
                order.onchain_reference = onchain_reference
            if target == OrderStatus.PAID and not order.onchain_reference:
                if not self._config.simulation_mode:
                    raise ValidationError(
                        "Marking an order paid requires an on-chain reference",
                        error="MissingOnchainReference",
                        error_code=ExchangeErrorCode.MISSING_ONCHAIN_REFERENCE,
                    )
                order.onchain_reference = SIMULATED_REFERENCE_PREFIX + secrets.token_hex(16)

            order.status = target
            order.status_history.append(
                StatusHistoryEntry(at=self._clock(), to=target, anomaly=anomaly, forced=force)
            )
            outcome["from"] = current
            outcome["anomaly"] = anomaly

        updated = await self._store.update(order_id, apply)

        record_transition(target.value, outcome["anomaly"])
        message = (
            f"order_id={order_id} | from={outcome['from'].value} | to={target.value} | "
            f"forced={force} | correlation_id={correlation_id}"
        )
        if outcome["anomaly"]:
            logger.warning(f"[ORDER-TRANSITION-ANOMALY] {message}")
        else:
            logger.info(f"[ORDER-TRANSITION] {message}")
        return updated

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_order(self, order_id: int) -> Order:
        return await self._store.find_by_id(order_id)

    async def list_for_identity(
        self,
        identity_handle: str,
        status: Optional[str] = None,
    ) -> List[Order]:
        orders = await self._store.find_by_identity(identity_handle)
        if status is None:
            return orders
        target = self._parse_filter(status)
        return [order for order in orders if order.status == target]

    async def list_all(self, status: Optional[str] = None) -> List[Order]:
        if status is None:
            return await self._store.list_all()
        return await self._store.list_all(statuses=[self._parse_filter(status)])

    def _parse_filter(self, status: str) -> OrderStatus:
        target = parse_status(status)
        if target is None:
            raise ValidationError(
                f"Invalid status '{status}'",
                error="InvalidStatus",
                error_code=ExchangeErrorCode.INVALID_STATUS,
            )
        return target

    # -------------------------------------------------------------------------
    # On-chain confirmation
    # -------------------------------------------------------------------------

    async def confirm_transfer(
        self,
        order_id: int,
        tx_hash: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> TransferCheck:
        """
        Check the order's WLD transfer on World Chain and, when it paid at
        least amount_source to the payout wallet, move the order to
        asset_received with the transaction as its reference.

        A transaction confirms at most one order: a hash that another order
        already reached asset_received with is reported as already-used.
        When the identity has linked a wallet, the transfer must come from it.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if self._chain is None:
            raise InternalError("World Chain client is not configured")
        if not self._config.payout_wallet:
            raise InternalError("Payout wallet (WALLET_DESTINO) is not configured")

        order = await self._store.find_by_id(order_id)
        reference = tx_hash or order.onchain_reference
        if not reference:
            raise ValidationError(
                "No transaction hash to confirm",
                error="MissingOnchainReference",
                error_code=ExchangeErrorCode.MISSING_ONCHAIN_REFERENCE,
            )

        transfer = await self._chain.get_transfer_info(
            reference, recipient=self._config.payout_wallet
        )

        if self._confirm_lock is None:
            self._confirm_lock = asyncio.Lock()
        async with self._confirm_lock:
            order = await self._store.find_by_id(order_id)
            reason = await self._mismatch_reason(order, transfer)
            if reason is not None:
                logger.info(
                    f"[TRANSFER-CHECK] order_id={order_id} | tx={reference} | "
                    f"matched=False | reason={reason} | correlation_id={correlation_id}"
                )
                return TransferCheck(order=order, transfer=transfer, matched=False, reason=reason)

            if order.status in AWAITING_TRANSFER:
                order = await self.set_status(
                    order_id,
                    OrderStatus.ASSET_RECEIVED.value,
                    onchain_reference=reference,
                    correlation_id=correlation_id,
                )
        logger.info(
            f"[TRANSFER-CHECK] order_id={order_id} | tx={reference} | matched=True | "
            f"value_wld={transfer.value_wld} | correlation_id={correlation_id}"
        )
        return TransferCheck(order=order, transfer=transfer, matched=True)

    async def _mismatch_reason(self, order: Order, transfer: TransferInfo) -> Optional[str]:
        if transfer.status != TransferStatus.CONFIRMED:
            return transfer.status.value
        if (transfer.to_address or "").lower() != self._config.payout_wallet.lower():
            return "wrong-recipient"
        expected_wei = get_decimal_gateway().wld_to_wei(order.amount_source)
        if transfer.value_wei is None or transfer.value_wei < expected_wei:
            return "insufficient-amount"
        if await self._sender_mismatch(order, transfer):
            return "wrong-sender"
        for other in await self._store.find_by_reference(transfer.tx_hash):
            if other.id != order.id and any(
                entry.to in TRANSFER_CLAIMED for entry in other.status_history
            ):
                return "already-used"
        return None

    async def _sender_mismatch(self, order: Order, transfer: TransferInfo) -> bool:
        if self._identity_store is None:
            return False
        record = await self._identity_store.get(order.identity_handle)
        if record is None or not record.wallet_address:
            return False
        return (transfer.from_address or "").lower() != record.wallet_address.lower()


__all__ = [
    "OrderLifecycleEngine",
    "TransferCheck",
    "compute_profit_margin",
    "SIMULATED_REFERENCE_PREFIX",
]
