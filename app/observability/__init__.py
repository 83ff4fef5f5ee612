"""
============================================================================
ChangeWLD Exchange
Observability Module - Prometheus Metrics
============================================================================
"""

from app.observability.metrics import (
    ORDERS_CREATED,
    QUOTA_REJECTIONS,
    ORDER_TRANSITIONS,
    RATE_REFRESHES,
    RATE_FALLBACK_LEGS,
    NET_RATE_GAUGE,
    TRANSFER_CHECKS,
    record_order_created,
    record_quota_rejection,
    record_transition,
    record_rate_refresh,
    record_fallback_leg,
    record_transfer_check,
)

__all__ = [
    "ORDERS_CREATED",
    "QUOTA_REJECTIONS",
    "ORDER_TRANSITIONS",
    "RATE_REFRESHES",
    "RATE_FALLBACK_LEGS",
    "NET_RATE_GAUGE",
    "TRANSFER_CHECKS",
    "record_order_created",
    "record_quota_rejection",
    "record_transition",
    "record_rate_refresh",
    "record_fallback_leg",
    "record_transfer_check",
]
