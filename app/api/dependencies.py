"""
============================================================================
ChangeWLD Exchange
API Dependencies - Service container and admin guard
============================================================================

Reliability Level: L5 High
Input Constraints: Validated ExchangeConfig
Side Effects: Creates the database schema when a DATABASE_URL is configured

Every router reads its collaborators from ``request.app.state.services``
so tests can build the app around in-memory stores and fake transports.

============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Header, Request
from sqlalchemy.engine import Engine

from app.database.session import create_database_engine, init_schema
from app.exchange.price_feeds import create_price_feed
from app.infra.world_id_client import WorldIdClient
from app.infra.worldchain_client import WorldChainClient
from services.admin_gate import AdminGate
from services.exchange_config import ExchangeConfig
from services.exchange_errors import ExchangeErrorCode, UnauthorizedError
from services.identity_store import (
    IdentityStore,
    InMemoryIdentityStore,
    SqlIdentityStore,
)
from services.order_lifecycle import OrderLifecycleEngine
from services.order_store import InMemoryOrderStore, OrderStore, SqlOrderStore
from services.rate_cache import RateCache
from services.rate_refresher import RateRefresher
from services.transfer_watcher import TransferWatcher

logger = logging.getLogger(__name__)


# ============================================================================
# Service Container
# ============================================================================

@dataclass
class ExchangeServices:
    """Everything a request handler may need, wired once at startup."""

    config: ExchangeConfig
    order_store: OrderStore
    identity_store: IdentityStore
    rate_cache: RateCache
    engine: OrderLifecycleEngine
    admin_gate: AdminGate
    verifier: WorldIdClient
    chain_client: WorldChainClient
    refresher: RateRefresher
    watcher: TransferWatcher
    db_engine: Optional[Engine] = None

    @property
    def watcher_enabled(self) -> bool:
        return (
            self.config.transfer_watch_interval_seconds > 0
            and bool(self.config.payout_wallet)
            and self.chain_client.configured
        )


def build_services(
    config: ExchangeConfig,
    feed_transport: Optional[httpx.AsyncBaseTransport] = None,
    verifier_transport: Optional[httpx.AsyncBaseTransport] = None,
    chain_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExchangeServices:
    """
    Wire stores, cache, clients and workers from configuration.

    DATABASE_URL=memory selects the in-memory stores; anything else is
    handed to SQLAlchemy and the schema is created if missing.
    """
    db_engine: Optional[Engine] = None
    if config.uses_database:
        db_engine = create_database_engine(config.database_url)
        init_schema(db_engine)
        order_store: OrderStore = SqlOrderStore(db_engine)
        identity_store: IdentityStore = SqlIdentityStore(db_engine)
    else:
        order_store = InMemoryOrderStore()
        identity_store = InMemoryIdentityStore()

    feed = create_price_feed(
        config.rate_provider,
        timeout=config.upstream_timeout_seconds,
        transport=feed_transport,
    )
    rate_cache = RateCache(
        feed,
        margin=config.margin,
        ttl_seconds=config.rate_ttl_seconds,
        fallback_source_usd=config.fallback_source_usd,
        fallback_target_per_usd=config.fallback_target_per_usd,
    )
    chain_client = WorldChainClient(
        config.worldchain_rpc_url,
        config.wld_token_address,
        timeout=config.upstream_timeout_seconds,
        transport=chain_transport,
    )
    engine = OrderLifecycleEngine(
        config,
        order_store,
        identity_store=identity_store,
        chain_client=chain_client,
    )

    logger.info(
        f"[SERVICES] Wired | store={'sql' if db_engine is not None else 'memory'} | "
        f"rate_provider={config.rate_provider} | simulation_mode={config.simulation_mode}"
    )
    return ExchangeServices(
        config=config,
        order_store=order_store,
        identity_store=identity_store,
        rate_cache=rate_cache,
        engine=engine,
        admin_gate=AdminGate(
            config.admin_pin,
            config.session_secret,
            config.session_ttl_seconds,
        ),
        verifier=WorldIdClient(
            config.app_id,
            api_base=config.world_id_api_base,
            timeout=config.upstream_timeout_seconds,
            transport=verifier_transport,
        ),
        chain_client=chain_client,
        refresher=RateRefresher(rate_cache),
        watcher=TransferWatcher(
            engine,
            interval_seconds=config.transfer_watch_interval_seconds or 30,
        ),
        db_engine=db_engine,
    )


# ============================================================================
# Request Dependencies
# ============================================================================

def get_services(request: Request) -> ExchangeServices:
    return request.app.state.services


def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None, description="Bearer <admin token>"),
) -> str:
    """
    Reject the request unless it carries a valid admin token.

    Raises:
        UnauthorizedError: 403 AUTH-403 for a missing, forged or expired token
    """
    services = get_services(request)
    if not services.admin_gate.authorize(authorization):
        logger.warning(
            f"[{ExchangeErrorCode.UNAUTHORIZED}] Admin route refused | "
            f"path={request.url.path} | header_present={authorization is not None}"
        )
        raise UnauthorizedError("Admin token missing, invalid or expired")
    return "operator"


__all__ = [
    "ExchangeServices",
    "build_services",
    "get_services",
    "require_admin",
]
