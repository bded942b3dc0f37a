"""
Canonical schema persistence for fieldsync.

Stores are versioned: every save names the version it was based on and is
refused with ConflictError when somebody else saved in between.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import asyncpg

from .connection import ConnectionPool
from .metadata import METADATA_SCHEMA
from ..exceptions import ConflictError, SchemaNotFoundError, StoreError
from ..schema.fields import CanonicalSchema, FieldDefinition


logger = logging.getLogger(__name__)


def _persisted_copy(
    connection_id: str,
    schema: CanonicalSchema,
    version: str,
) -> CanonicalSchema:
    """Canonical form of a schema as stored: no transient or preview data."""
    stored = CanonicalSchema.from_dict(schema.to_dict())
    stored.connection_id = connection_id
    stored.version = version
    stored.updated_at = datetime.now(timezone.utc)
    return stored


class SchemaStore(ABC):
    """Versioned storage of canonical schemas, one per connection."""

    @abstractmethod
    async def get(self, connection_id: str) -> CanonicalSchema:
        """
        Load the canonical schema of a connection.

        Raises:
            SchemaNotFoundError: If nothing was saved for the connection yet
        """
        pass

    @abstractmethod
    async def put(
        self,
        connection_id: str,
        schema: CanonicalSchema,
        expected_version: Optional[str],
    ) -> str:
        """
        Save a schema if the stored version still equals expected_version.

        Args:
            connection_id: Connection the schema belongs to
            schema: Schema to persist; transient field data is dropped
            expected_version: Version the edit was based on, None for the
                first save of a connection

        Returns:
            The new version token

        Raises:
            ConflictError: If the stored version moved on
        """
        pass

    async def history(self, connection_id: str, limit: int = 20) -> List[CanonicalSchema]:
        """Previously saved versions, newest first."""
        return []

    async def close(self) -> None:
        pass


class InMemorySchemaStore(SchemaStore):
    """Process local store, used for tests and offline runs."""

    def __init__(self):
        self._schemas: Dict[str, CanonicalSchema] = {}
        self._history: Dict[str, List[CanonicalSchema]] = {}
        self._lock = asyncio.Lock()

    async def get(self, connection_id: str) -> CanonicalSchema:
        stored = self._schemas.get(connection_id)
        if stored is None:
            raise SchemaNotFoundError(connection_id)
        return copy.deepcopy(stored)

    async def put(
        self,
        connection_id: str,
        schema: CanonicalSchema,
        expected_version: Optional[str],
    ) -> str:
        async with self._lock:
            current = self._schemas.get(connection_id)
            actual = current.version if current else None
            if actual != expected_version:
                raise ConflictError(connection_id, expected_version, actual)

            version = str(int(actual or 0) + 1)
            stored = _persisted_copy(connection_id, schema, version)
            self._schemas[connection_id] = stored
            self._history.setdefault(connection_id, []).append(stored)

            logger.info(f"Saved schema for {connection_id} as version {version}")
            return version

    async def history(self, connection_id: str, limit: int = 20) -> List[CanonicalSchema]:
        saved = self._history.get(connection_id, [])
        return [copy.deepcopy(item) for item in reversed(saved[-limit:])]


class PostgresSchemaStore(SchemaStore):
    """Schema store on PostgreSQL, fields kept as JSONB."""

    def __init__(self, pool: ConnectionPool, schema: str = METADATA_SCHEMA):
        self.pool = pool
        self.schema = schema

    @staticmethod
    def _load_json(value) -> list:
        if value is None:
            return []
        if isinstance(value, str):
            return json.loads(value)
        return value

    def _row_to_schema(self, row) -> CanonicalSchema:
        return CanonicalSchema(
            connection_id=row["connection_id"],
            source_id=row["source_id"],
            version=str(row["version"]),
            fields=[FieldDefinition.from_dict(f) for f in self._load_json(row["fields"])],
            retired_ids=list(self._load_json(row["retired_ids"])),
            updated_at=row["updated_at"],
        )

    async def get(self, connection_id: str) -> CanonicalSchema:
        try:
            row = await self.pool.fetchrow(
                f"""
                SELECT connection_id, source_id, version, fields, retired_ids, updated_at
                FROM {self.schema}.canonical_schemas
                WHERE connection_id = $1
                """,
                connection_id,
            )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to load schema for {connection_id}: {e}", cause=e) from e

        if row is None:
            raise SchemaNotFoundError(connection_id)
        return self._row_to_schema(row)

    async def put(
        self,
        connection_id: str,
        schema: CanonicalSchema,
        expected_version: Optional[str],
    ) -> str:
        data = schema.to_dict()
        fields_json = json.dumps(data["fields"])
        retired_json = json.dumps(data["retired_ids"])

        try:
            async with self.pool.transaction() as conn:
                if expected_version is None:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO {self.schema}.canonical_schemas
                            (connection_id, source_id, version, fields, retired_ids)
                        VALUES ($1, $2, 1, $3::jsonb, $4::jsonb)
                        ON CONFLICT (connection_id) DO NOTHING
                        RETURNING version
                        """,
                        connection_id, schema.source_id, fields_json, retired_json,
                    )
                else:
                    try:
                        expected = int(expected_version)
                    except ValueError:
                        raise ConflictError(connection_id, expected_version) from None
                    row = await conn.fetchrow(
                        f"""
                        UPDATE {self.schema}.canonical_schemas
                        SET version = version + 1,
                            source_id = $2,
                            fields = $3::jsonb,
                            retired_ids = $4::jsonb,
                            updated_at = NOW()
                        WHERE connection_id = $1 AND version = $5
                        RETURNING version
                        """,
                        connection_id, schema.source_id, fields_json, retired_json, expected,
                    )

                if row is None:
                    actual = await conn.fetchval(
                        f"SELECT version FROM {self.schema}.canonical_schemas WHERE connection_id = $1",
                        connection_id,
                    )
                    raise ConflictError(
                        connection_id,
                        expected_version,
                        str(actual) if actual is not None else None,
                    )

                version = row["version"]
                await conn.execute(
                    f"""
                    INSERT INTO {self.schema}.schema_history
                        (connection_id, version, fields, retired_ids)
                    VALUES ($1, $2, $3::jsonb, $4::jsonb)
                    """,
                    connection_id, version, fields_json, retired_json,
                )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to save schema for {connection_id}: {e}", cause=e) from e

        logger.info(f"Saved schema for {connection_id} as version {version}")
        return str(version)

    async def history(self, connection_id: str, limit: int = 20) -> List[CanonicalSchema]:
        rows = await self.pool.fetch(
            f"""
            SELECT connection_id, NULL AS source_id, version, fields, retired_ids,
                   saved_at AS updated_at
            FROM {self.schema}.schema_history
            WHERE connection_id = $1
            ORDER BY version DESC
            LIMIT $2
            """,
            connection_id, limit,
        )
        return [self._row_to_schema(row) for row in rows]
