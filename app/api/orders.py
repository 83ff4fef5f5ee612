"""
============================================================================
ChangeWLD Exchange
Order Endpoints
============================================================================

Reliability Level: L5 High
Input Constraints: Pydantic-validated bodies, integer order ids
Side Effects: Order store writes, metrics

User routes create and read orders by identity handle. Admin routes
(Bearer token from POST /admin/login) list every order, move orders
between statuses and confirm on-chain transfers. A refused admin call
never touches the order.

ERROR CODES:
    - EXC-400: Malformed body, id or missing identity parameter
    - EXC-401/402/403: InvalidBank / BelowMinimum / UnverifiedIdentity
    - AUTH-403: Admin token missing, invalid or expired
    - ORD-404: Order not found
    - ORD-409: Transition not allowed
    - QTA-429: Daily order quota exhausted

============================================================================
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from app.api.dependencies import ExchangeServices, get_services, require_admin
from app.schemas.order import (
    ConfirmTransferRequest,
    OrderCreateRequest,
    StatusUpdateRequest,
)
from services.exchange_errors import UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# User Routes
# ============================================================================

@router.post(
    "",
    summary="Create Order",
    description=(
        "Registers an exchange order in status pending.\n\n"
        "**Quota:** At most DAILY_ORDER_LIMIT orders per identity per "
        "business day (429 QTA-429 beyond that)\n\n"
        "**Inventory date:** Orders after the business cutoff settle on the "
        "next business day"
    ),
    responses={
        200: {"description": "Order created"},
        400: {"description": "InvalidBank, UnverifiedIdentity, BelowMinimum or malformed body"},
        429: {"description": "Daily quota exceeded (QTA-429)"},
    },
)
async def create_order(
    body: OrderCreateRequest,
    services: ExchangeServices = Depends(get_services),
):
    order = await services.engine.create_order(
        body.to_input(), correlation_id=str(uuid.uuid4())
    )
    return {"ok": True, "order": order.to_dict()}


@router.get(
    "/{order_id}",
    summary="Get Order",
    responses={
        400: {"description": "Malformed order id"},
        404: {"description": "Order not found (ORD-404)"},
    },
)
async def get_order(
    order_id: int,
    services: ExchangeServices = Depends(get_services),
):
    order = await services.engine.get_order(order_id)
    return {"ok": True, "order": order.to_dict()}


@router.get(
    "",
    summary="List Orders",
    description=(
        "With `identity`, lists that identity's orders, most recent first.\n\n"
        "Without it, an admin Bearer token is required and every order is "
        "returned. Both forms accept an optional `status` filter."
    ),
    responses={
        400: {"description": "identity parameter missing and no admin token sent, or invalid status"},
        403: {"description": "Admin token invalid or expired (AUTH-403)"},
    },
)
async def list_orders(
    identity: Optional[str] = Query(None, min_length=1, max_length=256),
    status: Optional[str] = Query(None, max_length=32),
    authorization: Optional[str] = Header(None),
    services: ExchangeServices = Depends(get_services),
):
    if identity:
        orders = await services.engine.list_for_identity(identity, status=status)
        return {"ok": True, "orders": [o.to_dict() for o in orders]}

    if authorization is None:
        raise ValidationError(
            "Query parameter 'identity' is required",
            error="MissingIdentity",
        )
    if not services.admin_gate.authorize(authorization):
        raise UnauthorizedError("Admin token invalid or expired")

    orders = await services.engine.list_all(status=status)
    return {"ok": True, "orders": [o.to_dict() for o in orders]}


# ============================================================================
# Admin Routes
# ============================================================================

@router.put(
    "/{order_id}/status",
    summary="Set Order Status",
    description=(
        "Moves an order to a new status and appends to its history.\n\n"
        "**Strict mode:** Transitions outside the table are refused with 409 "
        "unless `force` is set; forced moves are accepted and flagged as anomalies.\n\n"
        "**Paid:** Requires an on-chain reference unless SIMULATION_MODE is on"
    ),
    responses={
        400: {"description": "Invalid status or missing on-chain reference"},
        403: {"description": "Admin token missing, invalid or expired (AUTH-403)"},
        404: {"description": "Order not found (ORD-404)"},
        409: {"description": "Transition not allowed (ORD-409)"},
    },
)
async def set_order_status(
    order_id: int,
    body: StatusUpdateRequest,
    operator: str = Depends(require_admin),
    services: ExchangeServices = Depends(get_services),
):
    order = await services.engine.set_status(
        order_id,
        body.status,
        force=body.force,
        onchain_reference=body.onchain_reference,
        correlation_id=str(uuid.uuid4()),
    )
    return {"ok": True, "order": order.to_dict()}


@router.post(
    "/{order_id}/confirm-transfer",
    summary="Confirm WLD Transfer",
    description=(
        "Reads the transaction receipt from World Chain. A confirmed transfer "
        "of at least the order amount to the payout wallet moves a pending or "
        "sent order to asset_received."
    ),
    responses={
        403: {"description": "Admin token missing, invalid or expired (AUTH-403)"},
        404: {"description": "Order not found (ORD-404)"},
    },
)
async def confirm_transfer(
    order_id: int,
    body: Optional[ConfirmTransferRequest] = None,
    operator: str = Depends(require_admin),
    services: ExchangeServices = Depends(get_services),
):
    check = await services.engine.confirm_transfer(
        order_id,
        tx_hash=body.tx_hash if body is not None else None,
        correlation_id=str(uuid.uuid4()),
    )
    return {"ok": True, **check.to_dict()}
