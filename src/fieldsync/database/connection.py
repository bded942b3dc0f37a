"""
PostgreSQL connectivity for the fieldsync store.

One pool is shared by the schema store, the dependent registry and the
NOTIFY publisher. Writes that must be atomic (a new schema version plus
its history row) go through transaction().
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import asyncpg
from pydantic import BaseModel, Field, field_validator

from ..exceptions import ConfigurationError, DatabaseConnectionError


logger = logging.getLogger(__name__)


class ConnectionConfig(BaseModel):
    """Connection settings for the metadata database."""

    host: str = Field(..., description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field(..., description="Database password")

    min_size: int = Field(2, description="Minimum connections in pool")
    max_size: int = Field(10, description="Maximum connections in pool")

    command_timeout: float = Field(60.0, description="Command timeout in seconds")
    application_name: str = Field("fieldsync", description="Reported in pg_stat_activity")
    ssl_mode: Optional[str] = Field(None, description="libpq sslmode")

    @field_validator("database")
    @classmethod
    def validate_database(cls, v):
        if not v or not v.strip():
            raise ValueError("Database name is required")
        return v

    @classmethod
    def from_url(cls, url: str) -> "ConnectionConfig":
        """Parse a postgresql:// URL; sslmode defaults to prefer."""
        parsed = urlparse(url)

        if parsed.scheme not in ("postgresql", "postgres"):
            raise ConfigurationError(f"Invalid database URL scheme: {parsed.scheme}")
        if not parsed.path or parsed.path == "/":
            raise ConfigurationError("Database name is required")

        query = parse_qs(parsed.query)
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            database=parsed.path.lstrip("/"),
            user=parsed.username or "",
            password=parsed.password or "",
            ssl_mode=query.get("sslmode", ["prefer"])[0],
            application_name=query.get("application_name", ["fieldsync"])[0],
        )

    @classmethod
    def from_store_config(cls, store) -> "ConnectionConfig":
        """Build from the `store` section of FieldSyncConfig."""
        if store.database is None:
            raise ConfigurationError("The store section has no database connection")

        db = store.database
        return cls(
            host=db.host,
            port=db.port,
            database=db.database,
            user=db.user,
            password=db.password,
            ssl_mode=db.ssl_mode,
            command_timeout=float(db.command_timeout),
            min_size=store.pool.min_size,
            max_size=store.pool.max_size,
        )

    def to_connection_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for asyncpg.connect and asyncpg.create_pool."""
        kwargs = {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "command_timeout": self.command_timeout,
            "server_settings": {"application_name": self.application_name},
        }
        if self.ssl_mode:
            kwargs["ssl"] = self.ssl_mode
        return kwargs

    def describe(self) -> str:
        """host:port/database, without credentials, for logs."""
        return f"{self.host}:{self.port}/{self.database}"


class ConnectionPool:
    """Lazily created asyncpg pool with query helpers."""

    def __init__(self, config: ConnectionConfig):
        self.config = config
        self._pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """Create the pool; calling it again is a no-op."""
        async with self._lock:
            if self._pool is not None:
                return

            logger.info(
                f"Connecting to metadata database {self.config.describe()} "
                f"(pool {self.config.min_size}-{self.config.max_size})"
            )
            try:
                self._pool = await asyncpg.create_pool(
                    **self.config.to_connection_kwargs(),
                    min_size=self.config.min_size,
                    max_size=self.config.max_size,
                )
            except Exception as e:
                logger.error(f"Failed to initialize connection pool: {e}")
                raise DatabaseConnectionError(
                    f"Failed to initialize connection pool for {self.config.describe()}: {e}",
                    cause=e,
                ) from e

    async def close(self) -> None:
        async with self._lock:
            if self._pool is not None:
                logger.info(f"Closing pool to {self.config.describe()}")
                await self._pool.close()
                self._pool = None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a connection for the duration of the block."""
        if self._pool is None:
            raise DatabaseConnectionError("Pool is not connected; call initialize() first")

        async with self._pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a connection inside a transaction; commits when the block exits cleanly."""
        async with self.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args, column: int = 0) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args, column=column)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
