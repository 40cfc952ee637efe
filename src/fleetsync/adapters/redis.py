"""Redis pub/sub change feed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import pydantic
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from fleetsync.events import ChangeEvent

_logger = logging.getLogger(__name__)


def change_channel(resource: str, *, prefix: str = "fleetsync") -> str:
    """Channel name carrying change events for a resource."""
    return f"{prefix}:changes:{resource}"


async def publish_change(
    client: Any,  # redis.asyncio.Redis
    event: ChangeEvent,
    *,
    prefix: str = "fleetsync",
) -> int:
    """Publish an event; returns the number of receiving connections."""
    return int(
        await client.publish(change_channel(event.resource, prefix=prefix), event.model_dump_json())
    )


class RedisChangeFeed:
    """Change feed reading JSON events from Redis pub/sub channels."""

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "fleetsync",
        poll_timeout: float = 1.0,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._poll_timeout = poll_timeout
        self._pubsub: Any = None

    def _channel(self, resource: str) -> str:
        return change_channel(resource, prefix=self._prefix)

    async def connect(self) -> None:
        """Check the server is reachable and open a pub/sub connection."""
        try:
            await self._client.ping()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise ConnectionError(str(exc)) from exc
        if self._pubsub is not None:
            await self._pubsub.aclose()
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)

    async def subscribe(self, resource: str) -> None:
        try:
            await self._require().subscribe(self._channel(resource))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise ConnectionError(str(exc)) from exc

    async def unsubscribe(self, resource: str) -> None:
        try:
            await self._require().unsubscribe(self._channel(resource))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise ConnectionError(str(exc)) from exc

    async def events(self) -> AsyncIterator[ChangeEvent]:
        pubsub = self._require()
        while True:
            if not pubsub.subscribed:
                await asyncio.sleep(self._poll_timeout)
                continue
            try:
                message = await pubsub.get_message(timeout=self._poll_timeout)
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise ConnectionError(str(exc)) from exc
            if message is None or message.get("type") != "message":
                continue
            try:
                yield ChangeEvent.model_validate_json(message["data"])
            except pydantic.ValidationError:
                _logger.warning(
                    "Skipping malformed change event on %s", message.get("channel"), exc_info=True
                )

    async def disconnect(self) -> None:
        """Close the pub/sub connection."""
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

    def _require(self) -> Any:
        if self._pubsub is None:
            raise ConnectionError("change feed is not connected")
        return self._pubsub
