"""
============================================================================
ChangeWLD Exchange
FastAPI Application Entry Point
============================================================================

Reliability Level: L5 High
Input Constraints: JSON over HTTPS from the mini app and the operator panel
Side Effects: Order store writes, upstream rate/verifier/RPC calls

Every failure leaves the API as JSON:
    {"ok": false, "error": <name>, "error_code": <code>, "detail": ...}

Background workers (rate refresher, transfer watcher) are owned by the
lifespan: started on startup, cancelled and awaited on shutdown.

============================================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api import admin_router, identity_router, orders_router, rates_router
from app.api.dependencies import ExchangeServices, build_services
from app.database.session import check_database_connection
from services.exchange_config import ExchangeConfig, get_exchange_config
from services.exchange_errors import ExchangeError, ExchangeErrorCode

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

async def exchange_error_handler(request: Request, exc: ExchangeError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"[{exc.error_code}] {exc.message} | path={request.url.path}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed bodies, ids and query strings all answer 400."""
    detail = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "ok": False,
            "error": "ValidationError",
            "error_code": ExchangeErrorCode.MALFORMED_REQUEST,
            "message": "Request failed validation",
            "detail": detail,
        },
    )


async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "ok": False,
            "error": "NotFound" if exc.status_code == 404 else "HTTPError",
            "error_code": f"HTTP-{exc.status_code}",
            "message": str(exc.detail),
        },
        headers=getattr(exc, "headers", None),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled errors.

    Reliability Level: L5 High
    Input Constraints: Any unhandled exception
    Side Effects: Logs error, returns safe response
    """
    error_code = ExchangeErrorCode.INTERNAL
    logger.exception(f"[{error_code}] Unhandled exception | path={request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": "InternalError",
            "error_code": error_code,
            "message": "Internal server error. This incident has been logged.",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    config: Optional[ExchangeConfig] = None,
    services: Optional[ExchangeServices] = None,
    start_workers: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Defaults to the environment-backed singleton
        services: Pre-wired services (tests); built on startup when omitted
        start_workers: Run the rate refresher and transfer watcher
    """
    if services is not None:
        config = services.config
    config = config or get_exchange_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info(f"CHANGEWLD EXCHANGE v{APP_VERSION}")
        logger.info("=" * 60)

        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(config)
        wired: ExchangeServices = app.state.services

        workers = []
        if start_workers:
            workers.append(wired.refresher)
            if wired.watcher_enabled:
                workers.append(wired.watcher)
            else:
                logger.info("[STARTUP] Transfer watcher disabled")
            for worker in workers:
                await worker.start()

        logger.info(
            f"[STARTUP] Ready | port={config.port} | "
            f"simulation_mode={config.simulation_mode} | workers={len(workers)}"
        )
        try:
            yield
        finally:
            for worker in reversed(workers):
                await worker.stop()
            if wired.db_engine is not None:
                wired.db_engine.dispose()
                logger.info("[SHUTDOWN] Database connections closed")
            logger.info("[SHUTDOWN] ChangeWLD Exchange stopped")

    app = FastAPI(
        title="ChangeWLD Exchange",
        description=(
            "Order backend for a peer-to-peer WLD to COP exchange.\n\n"
            "Users verify with World ID, read the cached rate and create orders. "
            "The operator logs in with a PIN and moves orders through "
            "pending, sent, asset_received, paid and rejected."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials="*" not in config.allowed_origins,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ExchangeError, exchange_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(rates_router, tags=["Rates"])
    app.include_router(identity_router, tags=["Identity"])
    app.include_router(orders_router, prefix="/orders", tags=["Orders"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # ------------------------------------------------------------------------
    # System routes
    # ------------------------------------------------------------------------

    @app.get(
        "/",
        summary="Service Info",
        tags=["System"],
    )
    async def root():
        return {
            "ok": True,
            "service": "changewld-exchange",
            "version": APP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get(
        "/health",
        summary="Health Check",
        description="Lightweight health check for load balancers and monitoring.",
        tags=["System"],
    )
    async def health_check(request: Request):
        wired: Optional[ExchangeServices] = request.app.state.services
        if wired is None:
            return JSONResponse(
                status_code=503,
                content={"ok": False, "status": "starting"},
            )

        database = "memory"
        if wired.db_engine is not None:
            try:
                check_database_connection(wired.db_engine)
                database = "connected"
            except Exception as e:
                logger.error(f"[HEALTH] Database check failed | error={e}")
                return JSONResponse(
                    status_code=503,
                    content={
                        "ok": False,
                        "status": "unhealthy",
                        "database": "disconnected",
                    },
                )

        snapshot = wired.rate_cache.snapshot
        return {
            "ok": True,
            "status": "healthy",
            "database": database,
            "rate": {
                "cached": snapshot is not None,
                "stale": snapshot.stale if snapshot is not None else None,
                "age_seconds": wired.rate_cache.age_seconds(),
                "provider": config.rate_provider,
            },
            "simulation_mode": config.simulation_mode,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get(
        "/metrics",
        summary="Prometheus Metrics",
        description="Exposes Prometheus metrics for observability.",
        tags=["Observability"],
    )
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app", "APP_VERSION"]
