"""
============================================================================
ChangeWLD Exchange - Order Models
============================================================================

Reliability Level: L5 High
Decimal Integrity: Amounts are decimal.Decimal, serialized as strings
Side Effects: None (data containers)

ORDER STATE MACHINE (strict default):

    pending        -> sent, asset_received, rejected
    sent           -> asset_received, rejected
    asset_received -> paid, rejected

    Terminal States: paid, rejected

An admin may force any other transition; the history entry is then
flagged as an anomaly.

============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List, FrozenSet
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


# =============================================================================
# Enums
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ASSET_RECEIVED = "asset_received"
    PAID = "paid"
    REJECTED = "rejected"


VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.SENT,
        OrderStatus.ASSET_RECEIVED,
        OrderStatus.REJECTED,
    }),
    OrderStatus.SENT: frozenset({
        OrderStatus.ASSET_RECEIVED,
        OrderStatus.REJECTED,
    }),
    OrderStatus.ASSET_RECEIVED: frozenset({
        OrderStatus.PAID,
        OrderStatus.REJECTED,
    }),
    OrderStatus.PAID: frozenset(),
    OrderStatus.REJECTED: frozenset(),
}

def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def parse_status(value: str) -> Optional[OrderStatus]:
    """Map a raw status string to OrderStatus, or None if unknown."""
    try:
        return OrderStatus(value)
    except ValueError:
        return None


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class StatusHistoryEntry:
    """One append-only audit entry of the order status trail."""
    at: datetime
    to: OrderStatus
    anomaly: bool = False
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "to": self.to.value,
            "anomaly": self.anomaly,
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusHistoryEntry":
        return cls(
            at=datetime.fromisoformat(data["at"]),
            to=OrderStatus(data["to"]),
            anomaly=bool(data.get("anomaly", False)),
            forced=bool(data.get("forced", False)),
        )


@dataclass
class Order:
    """
    Exchange order: a user sells `amount_source` WLD for `amount_target` COP.

    Reliability Level: L5 High
    Input Constraints: id assigned once by the store, never mutated
    Side Effects: None (data container)
    """
    id: int
    identity_handle: str
    bank_destination: str
    account_holder: str
    account_number: str
    amount_source: Decimal
    amount_target: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    inventory_date: date
    profit_margin: Decimal
    status_history: List[StatusHistoryEntry] = field(default_factory=list)
    onchain_reference: Optional[str] = None

    @property
    def has_anomaly(self) -> bool:
        return any(entry.anomaly for entry in self.status_history)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for the API and persistence."""
        return {
            "id": self.id,
            "identity_handle": self.identity_handle,
            "bank_destination": self.bank_destination,
            "account_holder": self.account_holder,
            "account_number": self.account_number,
            "amount_source": str(self.amount_source),
            "amount_target": str(self.amount_target),
            "status": self.status.value,
            "status_history": [entry.to_dict() for entry in self.status_history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "inventory_date": self.inventory_date.isoformat(),
            "profit_margin": str(self.profit_margin),
            "onchain_reference": self.onchain_reference,
            "has_anomaly": self.has_anomaly,
        }


@dataclass
class OrderInput:
    """Validated creation input handed to the lifecycle engine."""
    identity_handle: str
    verified: bool
    bank_destination: str
    account_holder: str
    account_number: str
    amount_source: Decimal
    amount_target: Decimal
    onchain_reference: Optional[str] = None


__all__ = [
    "OrderStatus",
    "VALID_TRANSITIONS",
    "is_valid_transition",
    "parse_status",
    "StatusHistoryEntry",
    "Order",
    "OrderInput",
]
