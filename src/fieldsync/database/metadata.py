"""
Metadata management for fieldsync.

Creates the `fieldsync_metadata` schema and the tables holding canonical
schemas, their save history and the dependents of each connection.
"""

import logging
from typing import Any, Dict

from .connection import ConnectionPool
from ..exceptions import StoreError


logger = logging.getLogger(__name__)

METADATA_SCHEMA = "fieldsync_metadata"


class MetadataManager:
    """Manages the fieldsync metadata schema and tables."""

    def __init__(self, pool: ConnectionPool, schema: str = METADATA_SCHEMA):
        self.pool = pool
        self.schema = schema

        self.required_tables = {
            "canonical_schemas": self._get_canonical_schemas_ddl(),
            "schema_history": self._get_schema_history_ddl(),
            "connection_dependents": self._get_connection_dependents_ddl(),
        }

    async def setup_metadata_schema(self) -> Dict[str, Any]:
        """Create the metadata schema and any missing tables."""
        results = {
            "schemas_created": [],
            "tables_created": [],
            "errors": [],
        }

        try:
            await self._create_schema_if_not_exists(self.schema)
            results["schemas_created"].append(self.schema)
        except Exception as e:
            logger.error(f"Metadata schema setup failed: {e}")
            raise StoreError(f"Failed to create schema {self.schema}: {e}", cause=e) from e

        for table_name, ddl in self.required_tables.items():
            try:
                await self._create_table_if_not_exists(self.schema, table_name, ddl)
                results["tables_created"].append(f"{self.schema}.{table_name}")
            except Exception as e:
                error_msg = f"Failed to create table {table_name}: {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)

        logger.info(f"Metadata schema setup completed: {len(results['errors'])} errors")
        return results

    async def check_metadata_integrity(self) -> Dict[str, Any]:
        """Report which metadata tables exist."""
        integrity_report = {
            "schema_exists": False,
            "tables_exist": {},
            "missing_components": [],
            "is_healthy": True,
        }

        try:
            schema_exists = await self.pool.fetchval(
                "SELECT EXISTS (SELECT 1 FROM information_schema.schemata WHERE schema_name = $1)",
                self.schema,
            )
            integrity_report["schema_exists"] = bool(schema_exists)
            if not schema_exists:
                integrity_report["missing_components"].append(f"schema:{self.schema}")
                integrity_report["is_healthy"] = False
                return integrity_report

            rows = await self.pool.fetch(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = $1",
                self.schema,
            )
            existing = {row["table_name"] for row in rows}

            for table_name in self.required_tables:
                exists = table_name in existing
                integrity_report["tables_exist"][table_name] = exists
                if not exists:
                    integrity_report["missing_components"].append(f"table:{table_name}")
                    integrity_report["is_healthy"] = False

            return integrity_report

        except Exception as e:
            logger.error(f"Metadata integrity check failed: {e}")
            return {
                "error": str(e),
                "is_healthy": False,
            }

    async def _create_schema_if_not_exists(self, schema_name: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {schema_name}")

    async def _create_table_if_not_exists(self, schema: str, table: str, ddl: str) -> None:
        check_sql = """
        SELECT EXISTS (
            SELECT 1 FROM information_schema.tables
            WHERE table_schema = $1 AND table_name = $2
        )
        """

        async with self.pool.acquire() as conn:
            exists = await conn.fetchval(check_sql, schema, table)
            if not exists:
                await conn.execute(ddl)
                logger.info(f"Created table {schema}.{table}")
            else:
                logger.debug(f"Table {schema}.{table} already exists")

    # DDL definitions for metadata tables

    def _get_canonical_schemas_ddl(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.schema}.canonical_schemas (
            connection_id TEXT PRIMARY KEY,
            source_id TEXT,
            version BIGINT NOT NULL,
            fields JSONB NOT NULL DEFAULT '[]'::jsonb,
            retired_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """

    def _get_schema_history_ddl(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.schema}.schema_history (
            id BIGSERIAL PRIMARY KEY,
            connection_id TEXT NOT NULL,
            version BIGINT NOT NULL,
            fields JSONB NOT NULL,
            retired_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
            saved_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE(connection_id, version)
        );

        CREATE INDEX IF NOT EXISTS idx_schema_history_connection
        ON {self.schema}.schema_history(connection_id, saved_at DESC);
        """

    def _get_connection_dependents_ddl(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.schema}.connection_dependents (
            connection_id TEXT NOT NULL,
            dependent_id TEXT NOT NULL,
            registered_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (connection_id, dependent_id)
        );
        """
