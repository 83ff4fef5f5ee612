"""
============================================================================
ChangeWLD Exchange
Prometheus Metrics - Exchange Observability
============================================================================

Reliability Level: L4 Standard
Input Constraints: Currency values are Decimal
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- exchange_orders_created_total: Orders accepted, by bank
- exchange_quota_rejections_total: Orders refused by the daily quota
- exchange_order_transitions_total: Status transitions, by target and anomaly
- exchange_rate_refresh_total: Rate refresh attempts, by outcome
- exchange_rate_fallback_legs_total: Rate legs served from fallback
- exchange_net_rate_cop: Last computed net COP per WLD
- exchange_transfer_checks_total: On-chain transfer checks, by result

Decimal values are converted to float only at the Prometheus boundary.
Recording a metric never raises into the caller.

============================================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from prometheus_client import Counter, Gauge

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

ORDERS_CREATED = Counter(
    "exchange_orders_created_total",
    "Total number of exchange orders created",
    ["bank"]
)

QUOTA_REJECTIONS = Counter(
    "exchange_quota_rejections_total",
    "Total number of orders refused by the per-identity daily quota"
)

ORDER_TRANSITIONS = Counter(
    "exchange_order_transitions_total",
    "Total number of order status transitions",
    ["to_status", "anomaly"]
)

RATE_REFRESHES = Counter(
    "exchange_rate_refresh_total",
    "Total number of rate refresh attempts",
    ["outcome"]
)

RATE_FALLBACK_LEGS = Counter(
    "exchange_rate_fallback_legs_total",
    "Total number of rate legs served from the configured fallback",
    ["leg"]
)

NET_RATE_GAUGE = Gauge(
    "exchange_net_rate_cop",
    "Last computed net rate offered to users (COP per WLD)"
)

TRANSFER_CHECKS = Counter(
    "exchange_transfer_checks_total",
    "Total number of on-chain transfer checks",
    ["result"]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_order_created(bank: str) -> None:
    try:
        ORDERS_CREATED.labels(bank=bank).inc()
    except Exception as e:
        logger.error(f"[OBS-001] Failed to record order_created metric | error={e}")


def record_quota_rejection() -> None:
    try:
        QUOTA_REJECTIONS.inc()
    except Exception as e:
        logger.error(f"[OBS-002] Failed to record quota_rejection metric | error={e}")


def record_transition(to_status: str, anomaly: bool) -> None:
    """Count a status transition; anomalies are forced out-of-table moves."""
    try:
        ORDER_TRANSITIONS.labels(
            to_status=to_status,
            anomaly="true" if anomaly else "false",
        ).inc()
    except Exception as e:
        logger.error(f"[OBS-003] Failed to record transition metric | error={e}")


def record_rate_refresh(outcome: str, net_rate: Optional[Decimal] = None) -> None:
    """
    Record a refresh attempt.

    Args:
        outcome: "fresh", "partial", "fallback", "stale" or "failed"
        net_rate: Net rate of the resulting snapshot, if any
    """
    try:
        RATE_REFRESHES.labels(outcome=outcome).inc()
        if net_rate is not None:
            NET_RATE_GAUGE.set(float(net_rate))
    except Exception as e:
        logger.error(f"[OBS-004] Failed to record rate_refresh metric | error={e}")


def record_fallback_leg(leg: str) -> None:
    try:
        RATE_FALLBACK_LEGS.labels(leg=leg).inc()
    except Exception as e:
        logger.error(f"[OBS-005] Failed to record fallback_leg metric | error={e}")


def record_transfer_check(result: str) -> None:
    try:
        TRANSFER_CHECKS.labels(result=result).inc()
    except Exception as e:
        logger.error(f"[OBS-006] Failed to record transfer_check metric | error={e}")
