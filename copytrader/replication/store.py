"""
Copy relationship persistence.

The coordinator only depends on :class:`RelationshipStore`; the DuckDB
implementation below is what the service wires in.
"""

import asyncio
import json
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set

import duckdb
from pydantic import ValidationError as PydanticValidationError

from ..common.exceptions import ValidationError
from ..common.logging import get_logger, short_wallet
from ..common.monitoring import ERRORS_TOTAL, increment_counter
from .models import CopyRelationship

logger = get_logger(__name__)

ChangeListener = Callable[[str, CopyRelationship], Awaitable[None]]

COLUMNS = (
    "id",
    "user_wallet",
    "master_wallet",
    "encrypted_api_key",
    "sizing_method",
    "sizing_value",
    "max_position_cap",
    "symbols",
    "is_active",
    "custom_leverage",
    "max_total_exposure",
    "symbol_multipliers",
    "created_at",
    "updated_at",
)
_SELECT = f"SELECT {', '.join(COLUMNS)} FROM copy_relationships"

# id and timestamps are owned by the store
UPDATABLE_FIELDS = frozenset(CopyRelationship.model_fields) - {"id", "created_at", "updated_at"}


class RelationshipStore(Protocol):
    """Queries the replication coordinator needs."""

    async def list_active_by_master(self, master_wallet: str) -> List[CopyRelationship]:
        ...

    async def list_active_master_wallets(self) -> Set[str]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DuckDBRelationshipStore:
    """
    DuckDB-backed relationship store.

    Calls run in a worker thread behind a lock so the event loop never blocks
    on the embedded database. Every create/update/delete is reported to the
    registered listeners after it commits.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn
        self._lock = threading.Lock()
        self._listeners: List[ChangeListener] = []
        self.create_tables()

    def create_tables(self) -> None:
        """Create the relationships table and its sequence."""
        with self._lock:
            self.conn.execute("CREATE SEQUENCE IF NOT EXISTS copy_relationships_id_seq START 1")
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS copy_relationships (
                    id INTEGER PRIMARY KEY DEFAULT nextval('copy_relationships_id_seq'),
                    user_wallet VARCHAR NOT NULL,
                    master_wallet VARCHAR NOT NULL,
                    encrypted_api_key VARCHAR NOT NULL,
                    sizing_method VARCHAR NOT NULL DEFAULT 'multiplier',
                    sizing_value DECIMAL(38, 10) NOT NULL DEFAULT 0.5,
                    max_position_cap DECIMAL(38, 10),
                    symbols VARCHAR NOT NULL DEFAULT '[]',
                    is_active BOOLEAN NOT NULL DEFAULT FALSE,
                    custom_leverage INTEGER,
                    max_total_exposure DECIMAL(38, 10),
                    symbol_multipliers VARCHAR,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
        logger.info("DuckDB relationship table created/verified")

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a coroutine called with (action, relationship) after each mutation."""
        self._listeners.append(listener)

    async def _notify(self, action: str, relationship: CopyRelationship) -> None:
        for listener in self._listeners:
            try:
                await listener(action, relationship)
            except Exception as e:
                logger.error("Relationship listener failed", action=action, exception=e)
                increment_counter(ERRORS_TOTAL, component="store", error_type=type(e).__name__)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._locked, func, *args)

    def _locked(self, func: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            return func(*args)

    @staticmethod
    def _to_params(relationship: CopyRelationship) -> Dict[str, Any]:
        multipliers = relationship.symbol_multipliers
        return {
            "user_wallet": relationship.user_wallet,
            "master_wallet": relationship.master_wallet,
            "encrypted_api_key": relationship.encrypted_api_key,
            "sizing_method": relationship.sizing_method.value,
            "sizing_value": relationship.sizing_value,
            "max_position_cap": relationship.max_position_cap,
            "symbols": json.dumps(relationship.symbols),
            "is_active": relationship.is_active,
            "custom_leverage": relationship.custom_leverage,
            "max_total_exposure": relationship.max_total_exposure,
            "symbol_multipliers": (
                json.dumps({k: str(v) for k, v in multipliers.items()}) if multipliers else None
            ),
            "created_at": relationship.created_at,
            "updated_at": relationship.updated_at,
        }

    @staticmethod
    def _from_row(row: Sequence[Any]) -> CopyRelationship:
        data = dict(zip(COLUMNS, row))
        data["symbols"] = json.loads(data["symbols"]) if data["symbols"] else []
        if data["symbol_multipliers"]:
            data["symbol_multipliers"] = json.loads(data["symbol_multipliers"])
        return CopyRelationship.model_validate(data)

    def _fetch(self, where: str, params: Sequence[Any]) -> List[CopyRelationship]:
        rows = self.conn.execute(f"{_SELECT} {where}", list(params)).fetchall()
        return [self._from_row(row) for row in rows]

    # Mutations

    def _insert(self, relationship: CopyRelationship) -> CopyRelationship:
        now = _utcnow()
        relationship = relationship.model_copy(update={"created_at": now, "updated_at": now})
        params = self._to_params(relationship)
        columns = list(params)
        row = self.conn.execute(
            f"INSERT INTO copy_relationships ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) RETURNING id",
            [params[c] for c in columns],
        ).fetchone()
        return relationship.model_copy(update={"id": row[0]})

    async def create(self, relationship: CopyRelationship) -> CopyRelationship:
        """Persist a new relationship and return it with its id."""
        created = await self._run(self._insert, relationship)
        logger.info(
            "Relationship created",
            id=created.id,
            copier=short_wallet(created.user_wallet),
            master=short_wallet(created.master_wallet),
        )
        await self._notify("create", created)
        return created

    def _update(self, relationship_id: int, changes: Dict[str, Any]) -> CopyRelationship:
        invalid = sorted(set(changes) - UPDATABLE_FIELDS)
        if invalid:
            raise ValidationError(
                f"Cannot update relationship fields: {', '.join(invalid)}",
                error_code="invalid_relationship_field",
                context={"id": relationship_id, "fields": invalid},
            )

        current = self._fetch("WHERE id = ?", [relationship_id])
        if not current:
            raise ValidationError(
                f"Relationship {relationship_id} not found",
                error_code="relationship_not_found",
            )

        data = current[0].model_dump()
        data.update(changes)
        data["id"] = relationship_id
        data["updated_at"] = _utcnow()
        try:
            updated = CopyRelationship.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid relationship update: {e}",
                error_code="invalid_relationship",
                context={"id": relationship_id},
            ) from e

        params = self._to_params(updated)
        params.pop("created_at")
        assignments = ", ".join(f"{column} = ?" for column in params)
        self.conn.execute(
            f"UPDATE copy_relationships SET {assignments} WHERE id = ?",
            list(params.values()) + [relationship_id],
        )
        return updated

    async def update(self, relationship_id: int, **changes: Any) -> CopyRelationship:
        """
        Apply field changes to a relationship.

        Raises:
            ValidationError: unknown id, unknown or read-only field, or the
                result violates a range rule
        """
        updated = await self._run(self._update, relationship_id, changes)
        logger.info("Relationship updated", id=relationship_id, fields=sorted(changes))
        await self._notify("update", updated)
        return updated

    def _delete(self, relationship_id: int) -> Optional[CopyRelationship]:
        current = self._fetch("WHERE id = ?", [relationship_id])
        if not current:
            return None
        self.conn.execute("DELETE FROM copy_relationships WHERE id = ?", [relationship_id])
        return current[0]

    async def delete(self, relationship_id: int) -> bool:
        """Delete a relationship; False when it does not exist."""
        deleted = await self._run(self._delete, relationship_id)
        if deleted is None:
            return False
        logger.info("Relationship deleted", id=relationship_id)
        await self._notify("delete", deleted)
        return True

    # Queries

    async def get(self, relationship_id: int) -> Optional[CopyRelationship]:
        rows = await self._run(self._fetch, "WHERE id = ?", [relationship_id])
        return rows[0] if rows else None

    async def list_by_user(self, user_wallet: str) -> List[CopyRelationship]:
        return await self._run(self._fetch, "WHERE user_wallet = ? ORDER BY id", [user_wallet])

    async def list_active_by_master(self, master_wallet: str) -> List[CopyRelationship]:
        """Active relationships following ``master_wallet``."""
        return await self._run(
            self._fetch,
            "WHERE master_wallet = ? AND is_active ORDER BY id",
            [master_wallet],
        )

    def _active_masters(self) -> Set[str]:
        rows = self.conn.execute(
            "SELECT DISTINCT master_wallet FROM copy_relationships WHERE is_active"
        ).fetchall()
        return {row[0] for row in rows}

    async def list_active_master_wallets(self) -> Set[str]:
        """Distinct master wallets with at least one active relationship."""
        return await self._run(self._active_masters)
