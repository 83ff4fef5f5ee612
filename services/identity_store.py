"""
============================================================================
ChangeWLD Exchange - Identity Store
============================================================================

Reliability Level: L4 Standard
Input Constraints: identity_handle is a World ID nullifier hash
Side Effects: Database writes to the identities table

Maps a verified identity handle to the wallet address it linked, so the
backend can read WLD balances for that person. Records are created on
verification or on wallet link and are never deleted.

============================================================================
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from services.exchange_errors import InternalError

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class IdentityRecord:
    identity_handle: str
    created_at: datetime
    updated_at: datetime
    wallet_address: Optional[str] = None
    verified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_handle": self.identity_handle,
            "wallet_address": self.wallet_address,
            "verified_at": _ts(self.verified_at),
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }


class IdentityStore(ABC):

    @abstractmethod
    async def record_verified(self, identity_handle: str) -> IdentityRecord:
        ...

    @abstractmethod
    async def link_wallet(self, identity_handle: str, wallet_address: str) -> IdentityRecord:
        ...

    @abstractmethod
    async def get(self, identity_handle: str) -> Optional[IdentityRecord]:
        ...


class InMemoryIdentityStore(IdentityStore):

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._records: Dict[str, IdentityRecord] = {}
        self._clock = clock or _utc_now

    def _upsert(self, identity_handle: str) -> IdentityRecord:
        now = self._clock()
        record = self._records.get(identity_handle)
        if record is None:
            record = IdentityRecord(identity_handle=identity_handle, created_at=now, updated_at=now)
            self._records[identity_handle] = record
        record.updated_at = now
        return record

    async def record_verified(self, identity_handle: str) -> IdentityRecord:
        record = self._upsert(identity_handle)
        record.verified_at = record.updated_at
        return copy.deepcopy(record)

    async def link_wallet(self, identity_handle: str, wallet_address: str) -> IdentityRecord:
        record = self._upsert(identity_handle)
        record.wallet_address = wallet_address
        return copy.deepcopy(record)

    async def get(self, identity_handle: str) -> Optional[IdentityRecord]:
        record = self._records.get(identity_handle)
        return copy.deepcopy(record) if record is not None else None


class SqlIdentityStore(IdentityStore):

    def __init__(self, engine: Engine, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._engine = engine
        self._clock = clock or _utc_now

    async def record_verified(self, identity_handle: str) -> IdentityRecord:
        now = _ts(self._clock())
        self._upsert(
            identity_handle,
            "verified_at = :now",
            {"now": now, "verified_at": now, "wallet_address": None},
        )
        return await self._require(identity_handle)

    async def link_wallet(self, identity_handle: str, wallet_address: str) -> IdentityRecord:
        now = _ts(self._clock())
        self._upsert(
            identity_handle,
            "wallet_address = :wallet_address",
            {"now": now, "verified_at": None, "wallet_address": wallet_address},
        )
        return await self._require(identity_handle)

    async def get(self, identity_handle: str) -> Optional[IdentityRecord]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text("""
                        SELECT identity_handle, wallet_address, verified_at,
                               created_at, updated_at
                        FROM identities WHERE identity_handle = :handle
                    """),
                    {"handle": identity_handle},
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"[IDENTITY-STORE] Read failed | error={e}")
            raise InternalError("Failed to read identity") from e
        if row is None:
            return None
        data = row._mapping
        return IdentityRecord(
            identity_handle=data["identity_handle"],
            wallet_address=data["wallet_address"],
            verified_at=_parse_ts(data["verified_at"]),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )

    def _upsert(self, identity_handle: str, assignment: str, params: Dict[str, Any]) -> None:
        params = dict(params, handle=identity_handle)
        try:
            with self._engine.begin() as conn:
                updated = conn.execute(
                    text(
                        f"UPDATE identities SET {assignment}, updated_at = :now "
                        "WHERE identity_handle = :handle"
                    ),
                    params,
                ).rowcount
                if not updated:
                    conn.execute(
                        text("""
                            INSERT INTO identities (
                                identity_handle, wallet_address, verified_at,
                                created_at, updated_at
                            ) VALUES (
                                :handle, :wallet_address, :verified_at, :now, :now
                            )
                        """),
                        params,
                    )
        except SQLAlchemyError as e:
            logger.error(f"[IDENTITY-STORE] Upsert failed | error={e}")
            raise InternalError("Failed to persist identity") from e

    async def _require(self, identity_handle: str) -> IdentityRecord:
        record = await self.get(identity_handle)
        if record is None:
            raise InternalError(f"Identity {identity_handle} missing after write")
        return record


__all__ = [
    "IdentityRecord",
    "IdentityStore",
    "InMemoryIdentityStore",
    "SqlIdentityStore",
]
