# ============================================================================
# ChangeWLD Exchange
# API Routes Module
# ============================================================================

from app.api.admin import router as admin_router
from app.api.identity import router as identity_router
from app.api.orders import router as orders_router
from app.api.rates import router as rates_router

__all__ = ["admin_router", "identity_router", "orders_router", "rates_router"]
