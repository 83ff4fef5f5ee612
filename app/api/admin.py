"""
============================================================================
ChangeWLD Exchange
Admin Login Endpoint
============================================================================

Reliability Level: L5 High
Input Constraints: Operator PIN
Side Effects: None (tokens are stateless, HMAC-signed)

ERROR CODES:
    - AUTH-401: PIN mismatch or admin login disabled

============================================================================
"""

from fastapi import APIRouter, Depends

from app.api.dependencies import ExchangeServices, get_services
from app.schemas.admin import AdminLoginRequest

router = APIRouter()


@router.post(
    "/login",
    summary="Admin Login",
    description=(
        "Exchanges the operator PIN for a signed, time-limited admin token. "
        "Send it as `Authorization: Bearer <token>` on admin routes."
    ),
    responses={
        200: {"description": "Session token issued"},
        401: {"description": "Invalid PIN (AUTH-401)"},
    },
)
async def login(
    body: AdminLoginRequest,
    services: ExchangeServices = Depends(get_services),
):
    session = services.admin_gate.login(body.pin)
    return {"ok": True, **session.to_dict()}
