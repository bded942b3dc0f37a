"""
Schema change fan-out for fieldsync.

After a successful, versioned save the session emits one event so that
other consumers of the same connection know to re-fetch the schema. The
event carries identifiers only; no schema data is pushed.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from .database.connection import ConnectionPool
from .exceptions import PublishError


logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "fieldsync_schema_events"


@dataclass
class SchemaChangedEvent:
    """Notification that a connection's canonical schema has a new version."""

    connection_id: str
    version: str
    dependents: List[str] = field(default_factory=list)
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps({
            "connection_id": self.connection_id,
            "version": self.version,
            "dependents": list(self.dependents),
            "changed_at": self.changed_at.isoformat(),
        })

    @classmethod
    def from_json(cls, payload: str) -> "SchemaChangedEvent":
        data = json.loads(payload)
        changed_at = data.get("changed_at")
        return cls(
            connection_id=data["connection_id"],
            version=str(data["version"]),
            dependents=list(data.get("dependents") or []),
            changed_at=(
                datetime.fromisoformat(changed_at) if changed_at
                else datetime.now(timezone.utc)
            ),
        )


class SchemaEventPublisher(ABC):
    """Emits schema change events."""

    @abstractmethod
    async def publish(self, event: SchemaChangedEvent) -> None:
        """
        Publish an event.

        Raises:
            PublishError: If the event could not be delivered
        """
        pass

    async def close(self) -> None:
        pass


class RedisEventPublisher(SchemaEventPublisher):
    """Publishes events on a Redis pub/sub channel."""

    def __init__(
        self,
        connection: Optional[Dict[str, Any]] = None,
        channel: str = DEFAULT_CHANNEL,
        client: Optional[redis.Redis] = None,
    ):
        self.connection = connection or {}
        self.channel = channel
        self._client = client
        self._pool: Optional[redis.ConnectionPool] = None

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._pool = redis.ConnectionPool(
                host=self.connection.get("host", "localhost"),
                port=self.connection.get("port", 6379),
                db=self.connection.get("db", 0),
                password=self.connection.get("password"),
            )
            self._client = redis.Redis(connection_pool=self._pool)
        return self._client

    async def publish(self, event: SchemaChangedEvent) -> None:
        try:
            receivers = await self._get_client().publish(self.channel, event.to_json())
            logger.debug(
                f"Published schema change for {event.connection_id} "
                f"v{event.version} to {receivers} subscriber(s)"
            )
        except Exception as e:
            raise PublishError(f"Failed to publish schema change event: {e}", cause=e) from e

    async def close(self) -> None:
        if self._pool:
            await self._pool.disconnect()
            self._pool = None
            self._client = None


class PostgresNotifyPublisher(SchemaEventPublisher):
    """Publishes events with PostgreSQL NOTIFY on the store's database."""

    def __init__(self, pool: ConnectionPool, channel: str = DEFAULT_CHANNEL):
        self.pool = pool
        self.channel = channel

    async def publish(self, event: SchemaChangedEvent) -> None:
        try:
            await self.pool.execute("SELECT pg_notify($1, $2)", self.channel, event.to_json())
            logger.debug(f"Notified {self.channel} of schema change for {event.connection_id}")
        except Exception as e:
            raise PublishError(f"Failed to notify schema change: {e}", cause=e) from e


class RecordingEventPublisher(SchemaEventPublisher):
    """Keeps published events in memory; used with the in-memory store."""

    def __init__(self):
        self.events: List[SchemaChangedEvent] = []

    async def publish(self, event: SchemaChangedEvent) -> None:
        self.events.append(event)
