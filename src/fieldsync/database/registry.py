"""
Registry of the consumers that depend on a connection's schema.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List

import asyncpg

from .connection import ConnectionPool
from .metadata import METADATA_SCHEMA
from ..exceptions import StoreError


logger = logging.getLogger(__name__)


class DependentRegistry(ABC):
    """Knows which dependents (apps, forms, ...) read a connection's schema."""

    @abstractmethod
    async def list_dependents(self, connection_id: str) -> List[str]:
        pass

    @abstractmethod
    async def register(self, connection_id: str, dependent_id: str) -> None:
        pass

    @abstractmethod
    async def unregister(self, connection_id: str, dependent_id: str) -> None:
        pass


class InMemoryDependentRegistry(DependentRegistry):

    def __init__(self, dependents: Dict[str, List[str]] = None):
        self._dependents: Dict[str, List[str]] = {
            connection_id: list(dict.fromkeys(ids))
            for connection_id, ids in (dependents or {}).items()
        }

    async def list_dependents(self, connection_id: str) -> List[str]:
        return list(self._dependents.get(connection_id, []))

    async def register(self, connection_id: str, dependent_id: str) -> None:
        dependents = self._dependents.setdefault(connection_id, [])
        if dependent_id not in dependents:
            dependents.append(dependent_id)

    async def unregister(self, connection_id: str, dependent_id: str) -> None:
        dependents = self._dependents.get(connection_id, [])
        if dependent_id in dependents:
            dependents.remove(dependent_id)


class PostgresDependentRegistry(DependentRegistry):

    def __init__(self, pool: ConnectionPool, schema: str = METADATA_SCHEMA):
        self.pool = pool
        self.schema = schema

    async def list_dependents(self, connection_id: str) -> List[str]:
        try:
            rows = await self.pool.fetch(
                f"""
                SELECT dependent_id FROM {self.schema}.connection_dependents
                WHERE connection_id = $1
                ORDER BY registered_at, dependent_id
                """,
                connection_id,
            )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to list dependents of {connection_id}: {e}", cause=e) from e
        return [row["dependent_id"] for row in rows]

    async def register(self, connection_id: str, dependent_id: str) -> None:
        await self.pool.execute(
            f"""
            INSERT INTO {self.schema}.connection_dependents (connection_id, dependent_id)
            VALUES ($1, $2)
            ON CONFLICT DO NOTHING
            """,
            connection_id, dependent_id,
        )
        logger.info(f"Registered dependent {dependent_id} for {connection_id}")

    async def unregister(self, connection_id: str, dependent_id: str) -> None:
        await self.pool.execute(
            f"""
            DELETE FROM {self.schema}.connection_dependents
            WHERE connection_id = $1 AND dependent_id = $2
            """,
            connection_id, dependent_id,
        )
