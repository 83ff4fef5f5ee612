"""
============================================================================
ChangeWLD Exchange
Rate Endpoint
============================================================================

Reliability Level: L4 Standard
Side Effects: May trigger a single-flight upstream refresh

ERROR CODES:
    - UPS-500: No live quote and no cached snapshot to fall back to

============================================================================
"""

from fastapi import APIRouter, Depends

from app.api.dependencies import ExchangeServices, get_services

router = APIRouter()


@router.get(
    "/rate",
    summary="Current WLD/COP Rate",
    description=(
        "Returns the cached WLD to COP rate. The gross rate is the product of "
        "the WLD/USD and USD/COP legs; the net rate applies the operator margin.\n\n"
        "**Freshness:** Served from cache inside the TTL. A failed refresh "
        "serves the previous snapshot marked stale."
    ),
    responses={
        200: {"description": "Rate snapshot"},
        500: {"description": "No rate data available (UPS-500)"},
    },
)
async def get_rate(services: ExchangeServices = Depends(get_services)):
    snapshot = await services.rate_cache.get_rate()
    return {"ok": True, "rate": snapshot.to_dict()}
