"""
============================================================================
ChangeWLD Exchange - Order Store
============================================================================

Reliability Level: L5 High
Input Constraints: Orders built by the lifecycle engine
Side Effects: Database writes to the orders and counters tables

The store is the single owner of Order records:

- next_id() increments a persisted counter atomically and never repeats.
- insert() refuses an id that already exists (DuplicateId).
- update() applies a mutation to a copy, refreshes updated_at and persists.
  A mutation that raises leaves the stored record untouched.
- Every read returns an independent copy.

Two backends share the OrderStore interface: InMemoryOrderStore for tests
and single-process demos, SqlOrderStore over SQLAlchemy for everything else.

Suspension points: the in-memory backend has no lock; its methods never
await between reading and writing shared state, so each call is atomic on
the event loop. The SQL backend issues synchronous SQLAlchemy calls inside
its async methods, so a slow database blocks the event loop for the
duration of the statement. Atomicity there comes from the transaction.

ERROR CODES:
    - ORD-404: Order not found
    - ORD-410: Duplicate order id
    - SYS-500: Database persistence failure

============================================================================
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.database.session import ORDER_COUNTER
from services.exchange_errors import DuplicateIdError, InternalError, NotFoundError
from services.order_models import Order, OrderStatus, StatusHistoryEntry

# Configure module logger
logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Mutation = Callable[[Order], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _sort_recent_first(orders: Iterable[Order]) -> List[Order]:
    return sorted(orders, key=lambda o: (o.created_at, o.id), reverse=True)


# =============================================================================
# Interface
# =============================================================================

class OrderStore(ABC):
    """Durable, atomic CRUD over Order records."""

    @abstractmethod
    async def next_id(self) -> int:
        ...

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def find_by_id(self, order_id: int) -> Order:
        ...

    @abstractmethod
    async def find_by_identity(
        self,
        identity_handle: str,
        since: Optional[datetime] = None,
    ) -> List[Order]:
        ...

    @abstractmethod
    async def find_by_reference(self, onchain_reference: str) -> List[Order]:
        ...

    @abstractmethod
    async def update(self, order_id: int, mutation: Mutation) -> Order:
        ...

    @abstractmethod
    async def list_all(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        ...


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryOrderStore(OrderStore):
    """
    Process-local store.

    None of the methods await between reading and writing shared state, so
    each call runs to completion on the event loop without interleaving.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._orders: Dict[int, Order] = {}
        self._last_id = 0
        self._clock = clock or utc_now

    async def next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    async def insert(self, order: Order) -> Order:
        if order.id in self._orders:
            raise DuplicateIdError(f"Order id {order.id} already exists")
        self._orders[order.id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    async def find_by_id(self, order_id: int) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return copy.deepcopy(order)

    async def find_by_identity(
        self,
        identity_handle: str,
        since: Optional[datetime] = None,
    ) -> List[Order]:
        matches = [
            o for o in self._orders.values()
            if o.identity_handle == identity_handle
            and (since is None or o.created_at >= since)
        ]
        return [copy.deepcopy(o) for o in _sort_recent_first(matches)]

    async def find_by_reference(self, onchain_reference: str) -> List[Order]:
        matches = [
            o for o in self._orders.values()
            if o.onchain_reference == onchain_reference
        ]
        return [copy.deepcopy(o) for o in _sort_recent_first(matches)]

    async def update(self, order_id: int, mutation: Mutation) -> Order:
        current = self._orders.get(order_id)
        if current is None:
            raise NotFoundError(f"Order {order_id} not found")
        working = copy.deepcopy(current)
        mutation(working)
        working.id = current.id
        working.updated_at = self._clock()
        self._orders[order_id] = working
        return copy.deepcopy(working)

    async def list_all(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        wanted = set(statuses) if statuses is not None else None
        matches = [
            o for o in self._orders.values()
            if wanted is None or o.status in wanted
        ]
        return [copy.deepcopy(o) for o in _sort_recent_first(matches)]


# =============================================================================
# SQL Backend
# =============================================================================

ORDER_COLUMNS = (
    "id, identity_handle, bank_destination, account_holder, account_number, "
    "amount_source, amount_target, status, status_history, created_at, "
    "updated_at, inventory_date, profit_margin, onchain_reference"
)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _order_params(order: Order) -> Dict[str, object]:
    return {
        "id": order.id,
        "identity_handle": order.identity_handle,
        "bank_destination": order.bank_destination,
        "account_holder": order.account_holder,
        "account_number": order.account_number,
        "amount_source": str(order.amount_source),
        "amount_target": str(order.amount_target),
        "status": order.status.value,
        "status_history": json.dumps([e.to_dict() for e in order.status_history]),
        "created_at": _ts(order.created_at),
        "updated_at": _ts(order.updated_at),
        "inventory_date": order.inventory_date.isoformat(),
        "profit_margin": str(order.profit_margin),
        "onchain_reference": order.onchain_reference,
    }


def _row_to_order(row) -> Order:
    data = row._mapping
    return Order(
        id=int(data["id"]),
        identity_handle=data["identity_handle"],
        bank_destination=data["bank_destination"],
        account_holder=data["account_holder"],
        account_number=data["account_number"],
        amount_source=Decimal(data["amount_source"]),
        amount_target=Decimal(data["amount_target"]),
        status=OrderStatus(data["status"]),
        status_history=[
            StatusHistoryEntry.from_dict(entry)
            for entry in json.loads(data["status_history"])
        ],
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
        inventory_date=date.fromisoformat(data["inventory_date"]),
        profit_margin=Decimal(data["profit_margin"]),
        onchain_reference=data["onchain_reference"],
    )


class SqlOrderStore(OrderStore):
    """
    SQLAlchemy-backed store.

    Requires init_schema() to have run on the engine. Timestamps are stored
    as fixed-width UTC ISO strings so lexical order equals time order.
    Statements run synchronously and block the event loop while they execute.
    """

    def __init__(self, engine: Engine, clock: Optional[Clock] = None) -> None:
        self._engine = engine
        self._clock = clock or utc_now

    async def next_id(self) -> int:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text("UPDATE counters SET value = value + 1 WHERE name = :name"),
                    {"name": ORDER_COUNTER},
                )
                value = conn.execute(
                    text("SELECT value FROM counters WHERE name = :name"),
                    {"name": ORDER_COUNTER},
                ).scalar_one()
            return int(value)
        except SQLAlchemyError as e:
            logger.error(f"[ORDER-STORE] Counter increment failed | error={e}")
            raise InternalError("Failed to allocate order id") from e

    async def insert(self, order: Order) -> Order:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(f"""
                        INSERT INTO orders ({ORDER_COLUMNS})
                        VALUES (
                            :id, :identity_handle, :bank_destination,
                            :account_holder, :account_number, :amount_source,
                            :amount_target, :status, :status_history,
                            :created_at, :updated_at, :inventory_date,
                            :profit_margin, :onchain_reference
                        )
                    """),
                    _order_params(order),
                )
        except IntegrityError as e:
            raise DuplicateIdError(f"Order id {order.id} already exists") from e
        except SQLAlchemyError as e:
            logger.error(f"[ORDER-STORE] Insert failed | order_id={order.id} | error={e}")
            raise InternalError("Failed to persist order") from e
        return copy.deepcopy(order)

    async def find_by_id(self, order_id: int) -> Order:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id"),
                    {"id": order_id},
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"[ORDER-STORE] Read failed | order_id={order_id} | error={e}")
            raise InternalError("Failed to read order") from e
        if row is None:
            raise NotFoundError(f"Order {order_id} not found")
        return _row_to_order(row)

    async def find_by_identity(
        self,
        identity_handle: str,
        since: Optional[datetime] = None,
    ) -> List[Order]:
        query = f"SELECT {ORDER_COLUMNS} FROM orders WHERE identity_handle = :handle"
        params: Dict[str, object] = {"handle": identity_handle}
        if since is not None:
            query += " AND created_at >= :since"
            params["since"] = _ts(since)
        query += " ORDER BY created_at DESC, id DESC"
        return self._fetch(query, params)

    async def find_by_reference(self, onchain_reference: str) -> List[Order]:
        return self._fetch(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE onchain_reference = :reference"
            " ORDER BY created_at DESC, id DESC",
            {"reference": onchain_reference},
        )

    async def update(self, order_id: int, mutation: Mutation) -> Order:
        try:
            with self._engine.begin() as conn:
                row = conn.execute(
                    text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id"),
                    {"id": order_id},
                ).first()
                if row is None:
                    raise NotFoundError(f"Order {order_id} not found")
                working = _row_to_order(row)
                mutation(working)
                working.id = order_id
                working.updated_at = self._clock()
                params = _order_params(working)
                conn.execute(
                    text("""
                        UPDATE orders SET
                            status = :status,
                            status_history = :status_history,
                            updated_at = :updated_at,
                            onchain_reference = :onchain_reference
                        WHERE id = :id
                    """),
                    params,
                )
        except SQLAlchemyError as e:
            logger.error(f"[ORDER-STORE] Update failed | order_id={order_id} | error={e}")
            raise InternalError("Failed to update order") from e
        return working

    async def list_all(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        query = f"SELECT {ORDER_COLUMNS} FROM orders"
        params: Dict[str, object] = {}
        if statuses is not None:
            names = [s.value for s in statuses]
            if not names:
                return []
            placeholders = ", ".join(f":s{i}" for i in range(len(names)))
            query += f" WHERE status IN ({placeholders})"
            params = {f"s{i}": name for i, name in enumerate(names)}
        query += " ORDER BY created_at DESC, id DESC"
        return self._fetch(query, params)

    def _fetch(self, query: str, params: Dict[str, object]) -> List[Order]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(query), params).fetchall()
        except SQLAlchemyError as e:
            logger.error(f"[ORDER-STORE] Query failed | error={e}")
            raise InternalError("Failed to read orders") from e
        return [_row_to_order(row) for row in rows]


__all__ = [
    "OrderStore",
    "InMemoryOrderStore",
    "SqlOrderStore",
    "utc_now",
]
