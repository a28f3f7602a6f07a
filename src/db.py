"""
Database Store - PostgreSQL-backed StateStore.

Keeps every object as a JSONB body in a single ``objects`` table keyed
by (kind, namespace, name). Optimistic concurrency uses a per-row
BIGINT resource_version compared on every update.
"""

import asyncio
import json
import logging
from typing import Any, List, Optional, Type

import asyncpg

from events import EventBus, EventType
from models import ObjectKey, kind_for_name
from store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StateStore,
    StoreError,
    T,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS objects (
    kind VARCHAR(63) NOT NULL,
    namespace VARCHAR(253) NOT NULL,
    name VARCHAR(253) NOT NULL,
    resource_version BIGINT NOT NULL DEFAULT 1,
    body JSONB NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    PRIMARY KEY (kind, namespace, name)
);

CREATE INDEX IF NOT EXISTS idx_objects_owner_refs
    ON objects USING GIN ((body -> 'metadata' -> 'owner_references'));
"""

# Errors that mean "the backend could not be reached or timed out"
TRANSIENT_ERRORS = (asyncpg.PostgresError, OSError, asyncio.TimeoutError)


class PostgresStore(StateStore):
    """StateStore backed by a PostgreSQL connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        super().__init__(event_bus)
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create the objects table if it does not exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Database schema initialized")

    @staticmethod
    def _parse_row(kind: Type[T], row: Any) -> T:
        """Turn an objects row into a model, stamping its resource version."""
        body = row["body"]
        if isinstance(body, str):
            body = json.loads(body)
        body["metadata"]["resource_version"] = str(row["resource_version"])
        return kind.from_dict(body)

    @staticmethod
    def _dump_body(obj: T) -> str:
        body = obj.to_dict()
        # The row column is authoritative for the version
        body["metadata"].pop("resource_version", None)
        return json.dumps(body)

    async def get(self, kind: Type[T], key: ObjectKey) -> Optional[T]:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT body, resource_version FROM objects
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    """,
                    kind.KIND,
                    key.namespace,
                    key.name,
                )
        except TRANSIENT_ERRORS as e:
            raise StoreError(f"Failed to get {kind.KIND} {key}: {e}") from e

        if not row:
            return None
        return self._parse_row(kind, row)

    async def list(self, kind: Type[T], namespace: Optional[str] = None) -> List[T]:
        self._ensure_connected()
        query = "SELECT body, resource_version FROM objects WHERE kind = $1"
        params: List[Any] = [kind.KIND]
        if namespace is not None:
            query += " AND namespace = $2"
            params.append(namespace)
        query += " ORDER BY namespace, name"

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except TRANSIENT_ERRORS as e:
            raise StoreError(f"Failed to list {kind.KIND}: {e}") from e

        return [self._parse_row(kind, row) for row in rows]

    async def create(self, obj: T) -> T:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                version = await conn.fetchval(
                    """
                    INSERT INTO objects (kind, namespace, name, body)
                    VALUES ($1, $2, $3, $4::jsonb)
                    RETURNING resource_version
                    """,
                    obj.KIND,
                    obj.metadata.namespace,
                    obj.metadata.name,
                    self._dump_body(obj),
                )
        except asyncpg.UniqueViolationError as e:
            raise AlreadyExistsError(f"{obj.KIND} {obj.key} already exists") from e
        except TRANSIENT_ERRORS as e:
            raise StoreError(f"Failed to create {obj.KIND} {obj.key}: {e}") from e

        stored = obj.copy()
        stored.metadata.resource_version = str(version)
        logger.info(f"Created {obj.KIND} {obj.key} (version {version})")

        await self._publish(EventType.CREATED, stored)
        return stored

    async def update(self, obj: T) -> T:
        self._ensure_connected()
        if obj.metadata.resource_version is None:
            raise ConflictError(f"{obj.KIND} {obj.key} has no resource version")
        try:
            expected = int(obj.metadata.resource_version)
        except ValueError:
            raise ConflictError(
                f"{obj.KIND} {obj.key} has an invalid resource version: "
                f"{obj.metadata.resource_version}"
            )

        try:
            async with self.pool.acquire() as conn:
                version = await conn.fetchval(
                    """
                    UPDATE objects
                    SET body = $5::jsonb,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                      AND resource_version = $4
                    RETURNING resource_version
                    """,
                    obj.KIND,
                    obj.metadata.namespace,
                    obj.metadata.name,
                    expected,
                    self._dump_body(obj),
                )
                if version is None:
                    exists = await conn.fetchval(
                        """
                        SELECT 1 FROM objects
                        WHERE kind = $1 AND namespace = $2 AND name = $3
                        """,
                        obj.KIND,
                        obj.metadata.namespace,
                        obj.metadata.name,
                    )
        except TRANSIENT_ERRORS as e:
            raise StoreError(f"Failed to update {obj.KIND} {obj.key}: {e}") from e

        if version is None:
            if exists:
                raise ConflictError(
                    f"{obj.KIND} {obj.key} has been modified: resource version "
                    f"{expected} is stale"
                )
            raise NotFoundError(f"{obj.KIND} {obj.key} not found")

        stored = obj.copy()
        stored.metadata.resource_version = str(version)
        logger.info(f"Updated {obj.KIND} {obj.key} (version {version})")

        await self._publish(EventType.MODIFIED, stored)
        return stored

    async def delete(self, kind: Type[T], key: ObjectKey) -> None:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        DELETE FROM objects
                        WHERE kind = $1 AND namespace = $2 AND name = $3
                        RETURNING body, resource_version
                        """,
                        kind.KIND,
                        key.namespace,
                        key.name,
                    )
                    dependents = []
                    owners = [(kind.KIND, key.name)] if row else []
                    while owners:
                        owner_kind, owner_name = owners.pop()
                        owner = json.dumps([{"kind": owner_kind, "name": owner_name}])
                        rows = await conn.fetch(
                            """
                            DELETE FROM objects
                            WHERE namespace = $1
                              AND body -> 'metadata' -> 'owner_references'
                                  @> $2::jsonb
                            RETURNING kind, name, body, resource_version
                            """,
                            key.namespace,
                            owner,
                        )
                        dependents.extend(rows)
                        owners.extend((r["kind"], r["name"]) for r in rows)
        except TRANSIENT_ERRORS as e:
            raise StoreError(f"Failed to delete {kind.KIND} {key}: {e}") from e

        if not row:
            raise NotFoundError(f"{kind.KIND} {key} not found")

        logger.info(f"Deleted {kind.KIND} {key}")
        await self._publish(EventType.DELETED, self._parse_row(kind, row))

        for dependent in dependents:
            obj = self._parse_row(kind_for_name(dependent["kind"]), dependent)
            logger.info(f"Garbage collected {obj.KIND} {obj.key} owned by {key}")
            await self._publish(EventType.DELETED, obj)
