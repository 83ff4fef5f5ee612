"""
============================================================================
ChangeWLD Exchange - Services Layer
============================================================================

Order records, stores, rate cache and admin gate for the WLD to COP
exchange backend. The lifecycle engine and workers are imported from
their modules directly.

Reliability Level: L5 High
============================================================================
"""

from services.exchange_errors import (
    ExchangeError,
    ValidationError,
    NotFoundError,
    UnauthorizedError,
    InvalidPinError,
    QuotaExceededError,
    InvalidTransitionError,
    UpstreamUnavailableError,
    InternalError,
)

from services.exchange_config import (
    ExchangeConfig,
    ConfigurationError,
    get_exchange_config,
    reset_exchange_config,
)

from services.order_models import (
    Order,
    OrderInput,
    OrderStatus,
    StatusHistoryEntry,
    VALID_TRANSITIONS,
)

from services.order_store import (
    OrderStore,
    InMemoryOrderStore,
    SqlOrderStore,
)

from services.rate_cache import RateCache, RateSnapshot

from services.admin_gate import AdminGate

__all__ = [
    # Errors
    "ExchangeError",
    "ValidationError",
    "NotFoundError",
    "UnauthorizedError",
    "InvalidPinError",
    "QuotaExceededError",
    "InvalidTransitionError",
    "UpstreamUnavailableError",
    "InternalError",
    # Configuration
    "ExchangeConfig",
    "ConfigurationError",
    "get_exchange_config",
    "reset_exchange_config",
    # Orders
    "Order",
    "OrderInput",
    "OrderStatus",
    "StatusHistoryEntry",
    "VALID_TRANSITIONS",
    "OrderStore",
    "InMemoryOrderStore",
    "SqlOrderStore",
    # Rates
    "RateCache",
    "RateSnapshot",
    # Admin
    "AdminGate",
]
