"""
Schema change listener for fieldsync.

Subscribes to the channel the session publishes on after a save and hands
each event to a callback, so dependents know to re-fetch the schema.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Collection, Optional, Union

import asyncpg
import redis.asyncio as redis

from .config import EventsConfig
from .database.connection import ConnectionConfig
from .events import SchemaChangedEvent
from .exceptions import ConfigurationError, ListenerError

logger = logging.getLogger(__name__)

EventCallback = Callable[[SchemaChangedEvent], Awaitable[None]]


class SchemaChangeListener:
    """
    Receives schema change events from Redis pub/sub or PostgreSQL NOTIFY.

    Only events for `connection_ids` are dispatched when given; otherwise
    every event is.
    """

    def __init__(
        self,
        config: EventsConfig,
        callback: EventCallback,
        connection_ids: Optional[Collection[str]] = None,
        database: Optional[ConnectionConfig] = None,
    ):
        if config.backend == "none":
            raise ConfigurationError("No event backend configured to listen on")
        if config.backend == "postgres" and database is None:
            raise ConfigurationError("Listening on postgres requires a database connection")

        self.config = config
        self.channel = config.channel
        self.callback = callback
        self.connection_ids = set(connection_ids) if connection_ids else None
        self.database = database

        self.redis_pool: Optional[redis.ConnectionPool] = None
        self.pubsub = None
        self.pg_connection: Optional[asyncpg.Connection] = None
        self.running = False
        self.received = 0

    async def start(self) -> None:
        """Start listening and block until stopped."""
        logger.info(f"Starting schema change listener on '{self.channel}' ({self.config.backend})")

        try:
            if self.config.backend == "redis":
                await self._setup_redis()
            else:
                await self._setup_postgres()
        except ListenerError:
            await self.stop()
            raise
        except Exception as e:
            logger.error(f"Failed to start listener: {e}")
            await self.stop()
            raise ListenerError(f"Listener startup failed: {e}", cause=e) from e

        self.running = True
        await self._run_forever()

    async def stop(self) -> None:
        """Stop listening and release connections."""
        self.running = False

        if self.pubsub is not None:
            try:
                await self.pubsub.unsubscribe(self.channel)
                await self.pubsub.aclose()
            except Exception as e:
                logger.warning(f"Error closing pub/sub subscription: {e}")
            self.pubsub = None

        if self.redis_pool is not None:
            try:
                await self.redis_pool.disconnect()
            except Exception as e:
                logger.warning(f"Error closing Redis pool: {e}")
            self.redis_pool = None

        if self.pg_connection is not None:
            try:
                if not self.pg_connection.is_closed():
                    await self.pg_connection.close()
            except Exception as e:
                logger.warning(f"Error closing listener connection: {e}")
            self.pg_connection = None

        logger.info("Schema change listener stopped")

    async def _setup_redis(self) -> None:
        connection = self.config.connection
        try:
            self.redis_pool = redis.ConnectionPool(
                host=connection.get("host", "localhost"),
                port=connection.get("port", 6379),
                db=connection.get("db", 0),
                password=connection.get("password"),
            )
            client = redis.Redis(connection_pool=self.redis_pool)
            await client.ping()

            self.pubsub = client.pubsub()
            await self.pubsub.subscribe(self.channel)

            logger.info(
                f"Subscribed to {self.channel} on "
                f"{connection.get('host', 'localhost')}:{connection.get('port', 6379)}"
            )
        except Exception as e:
            raise ListenerError(f"Failed to subscribe on Redis: {e}", cause=e) from e

    async def _setup_postgres(self) -> None:
        try:
            self.pg_connection = await asyncpg.connect(**self.database.to_connection_kwargs())
            await self.pg_connection.add_listener(self.channel, self._handle_notification)
            logger.info(f"Listening on PostgreSQL channel {self.channel}")
        except Exception as e:
            raise ListenerError(f"Failed to LISTEN on PostgreSQL: {e}", cause=e) from e

    async def _handle_notification(
        self, connection: asyncpg.Connection, pid: int, channel: str, payload: str
    ) -> None:
        await self.dispatch(payload)

    async def dispatch(self, payload: Union[str, bytes]) -> Optional[SchemaChangedEvent]:
        """
        Parse one payload and hand it to the callback.

        Malformed payloads and callback failures are logged; the listener
        keeps running either way.
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        try:
            event = SchemaChangedEvent.from_json(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid schema change payload: {payload!r}, error: {e}")
            return None

        if self.connection_ids is not None and event.connection_id not in self.connection_ids:
            logger.debug(f"Ignoring schema change for {event.connection_id}")
            return None

        self.received += 1
        logger.info(f"Schema of {event.connection_id} changed to version {event.version}")

        try:
            await self.callback(event)
        except Exception as e:
            logger.error(f"Schema change callback failed for {event.connection_id}: {e}")

        return event

    async def _run_forever(self) -> None:
        while self.running:
            try:
                if self.pubsub is not None:
                    message = await self.pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                    if message and message.get("type") == "message":
                        await self.dispatch(message["data"])
                else:
                    if self.pg_connection is not None and self.pg_connection.is_closed():
                        logger.warning("Listener connection closed, reconnecting...")
                        await self._setup_postgres()
                    await asyncio.sleep(1)

            except asyncio.CancelledError:
                self.running = False
                raise
            except Exception as e:
                logger.error(f"Error in listener loop: {e}")
                await asyncio.sleep(5)
