"""Live extraction updates.

Browsers hold a WebSocket to the API and subscribe to a user id. The
worker runs in another process, so it publishes each update to the
Redis channel ``extractions:user:<user_id>`` and the API's
:meth:`Notifier.relay` task forwards it to the subscribed sockets.

Delivery is best effort: with no subscriber an update is dropped, and a
socket whose send fails is disconnected.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Optional, Protocol

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

UPDATE_EVENT = "extraction-update"
CHANNEL_PREFIX = "extractions:user:"


def user_channel(user_id: str) -> str:
    return f"{CHANNEL_PREFIX}{user_id}"


async def _close_pubsub(pubsub: Any) -> None:
    try:
        await pubsub.punsubscribe()
    except (RedisError, OSError) as exc:
        logger.debug("Ignoring error while unsubscribing relay: %s", exc)
    finally:
        await pubsub.aclose()


class UpdateSink(Protocol):
    async def emit_update(self, user_id: str, payload: dict[str, Any]) -> Any: ...


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionRegistry:
    """Maps user ids to the connection ids subscribed to them."""

    def __init__(self) -> None:
        self._by_user: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, user_id: str, connection_id: str) -> None:
        async with self._lock:
            self._by_user.setdefault(user_id, set()).add(connection_id)

    async def unsubscribe(self, user_id: str, connection_id: str) -> None:
        async with self._lock:
            sockets = self._by_user.get(user_id)
            if sockets is None:
                return
            sockets.discard(connection_id)
            if not sockets:
                del self._by_user[user_id]

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            for user_id in list(self._by_user):
                sockets = self._by_user[user_id]
                sockets.discard(connection_id)
                if not sockets:
                    del self._by_user[user_id]

    async def connections_for(self, user_id: str) -> set[str]:
        async with self._lock:
            return set(self._by_user.get(user_id, ()))

    async def user_count(self) -> int:
        async with self._lock:
            return len(self._by_user)


class Notifier:
    """Pushes ``extraction-update`` events to connected clients."""

    def __init__(self, registry: Optional[ConnectionRegistry] = None) -> None:
        self.registry = registry or ConnectionRegistry()
        self._connections: dict[str, Connection] = {}

    def register(self, connection: Connection) -> str:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = connection
        logger.info("Client connected: %s", connection_id)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        await self.registry.disconnect(connection_id)
        logger.info("Client disconnected: %s", connection_id)

    async def subscribe(self, connection_id: str, user_id: str) -> bool:
        if connection_id not in self._connections or not user_id:
            return False
        await self.registry.subscribe(user_id, connection_id)
        logger.info("Client %s subscribed to user %s", connection_id, user_id)
        return True

    async def unsubscribe(self, connection_id: str, user_id: str) -> bool:
        if not user_id:
            return False
        await self.registry.unsubscribe(user_id, connection_id)
        logger.info("Client %s unsubscribed from user %s", connection_id, user_id)
        return True

    async def _send(self, connection_id: str, frame: dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            await self.registry.disconnect(connection_id)
            return False
        try:
            await connection.send_json(frame)
            return True
        except Exception as exc:
            logger.warning("Dropping connection %s after failed send: %s", connection_id, exc)
            await self.disconnect(connection_id)
            return False

    async def emit_update(self, user_id: str, payload: dict[str, Any]) -> int:
        """Send ``payload`` to every socket subscribed to ``user_id``.

        Returns the number of successful sends. Never raises.
        """
        connection_ids = await self.registry.connections_for(user_id)
        if not connection_ids:
            return 0
        frame = {"event": UPDATE_EVENT, "data": payload}
        results = await asyncio.gather(*(self._send(cid, frame) for cid in connection_ids))
        sent = sum(1 for ok in results if ok)
        logger.info("Emitted extraction update to %d client(s) for user %s", sent, user_id)
        return sent

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Forward one Redis pub/sub message to local subscribers."""
        if message.get("type") not in ("message", "pmessage"):
            return
        channel = message.get("channel")
        data = message.get("data")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8", errors="ignore")
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="ignore")
        if not isinstance(channel, str) or not channel.startswith(CHANNEL_PREFIX):
            return
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed update on %s", channel)
            return
        await self.emit_update(channel[len(CHANNEL_PREFIX):], payload)

    async def relay(self, redis_client: Any, poll_timeout: float = 1.0, retry_delay: float = 1.0) -> None:
        """Forward worker updates from Redis until cancelled.

        A lost Redis connection is logged and the pattern subscription is
        re-established on a fresh pub/sub after ``retry_delay`` seconds.
        """
        while True:
            pubsub = redis_client.pubsub()
            try:
                await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
                while True:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=poll_timeout)
                    if message:
                        await self.handle_message(message)
            except (RedisError, OSError) as exc:
                logger.warning("Update relay lost Redis (%s); resubscribing in %.1fs", exc, retry_delay)
            finally:
                await _close_pubsub(pubsub)
            await asyncio.sleep(retry_delay)


class RedisUpdatePublisher:
    """Worker-side sink: publishes updates for the API relay."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def emit_update(self, user_id: str, payload: dict[str, Any]) -> None:
        try:
            await self._client.publish(user_channel(user_id), json.dumps(payload))
        except Exception as exc:
            logger.warning("Failed to publish update for user %s: %s", user_id, exc)
