"""Shared storage in Redis for contexts in separate processes."""

from __future__ import annotations

import asyncio
import contextlib
import os
from typing import override

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from structlog.stdlib import BoundLogger

from ..constants import REDIS_BACKOFF_MAX, REDIS_BACKOFF_START
from .base import SharedStore, StorageChange

__all__ = ["RedisStore"]


class _ChangeMessage(BaseModel):
    """Change notification as published on the Redis channel."""

    origin: str
    key: str
    value: str | None


class RedisStore(SharedStore):
    """Shared storage backed by Redis.

    Keys are stored under a common prefix. Every change is also published on
    the ``<prefix>:changes`` channel, tagged with a random identifier for
    this store, so that other stores sharing the prefix can deliver change
    notifications while ignoring their own writes.

    Parameters
    ----------
    redis
        Redis client.
    prefix
        Prefix for keys and for the change channel.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.

    Notes
    -----
    `start` must be called before changes from other contexts are seen.
    Reads and writes work without it.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str,
        logger: BoundLogger | None = None,
    ) -> None:
        super().__init__(logger)
        self._redis = redis
        self._prefix = prefix
        self._channel = f"{prefix}:changes"
        self._origin = os.urandom(8).hex()
        self._pubsub: PubSub | None = None
        self._listener_task: asyncio.Task[None] | None = None

    @override
    async def start(self) -> None:
        if self._listener_task:
            return
        await self._subscribe()
        self._listener_task = asyncio.create_task(self._listen())

    @override
    async def aclose(self) -> None:
        if self._listener_task:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None
        if self._pubsub:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None

    @override
    async def get(self, key: str) -> str | None:
        return _decode(await self._redis.get(self._key(key)))

    @override
    async def set_many(self, items: dict[str, str]) -> None:
        current = await self._redis.mget([self._key(k) for k in items])
        changed = [
            key
            for key, old in zip(items, current, strict=True)
            if _decode(old) != items[key]
        ]
        async with self._redis.pipeline(transaction=True) as pipeline:
            pipeline.mset({self._key(k): v for k, v in items.items()})
            for key in changed:
                message = self._message(key, items[key])
                pipeline.publish(self._channel, message)
            await pipeline.execute()

    @override
    async def delete_many(self, keys: list[str]) -> None:
        async with self._redis.pipeline(transaction=True) as pipeline:
            for key in keys:
                pipeline.delete(self._key(key))
            counts = await pipeline.execute()
        for key, count in zip(keys, counts, strict=True):
            if count:
                message = self._message(key, None)
                await self._redis.publish(self._channel, message)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _message(self, key: str, value: str | None) -> str:
        message = _ChangeMessage(origin=self._origin, key=key, value=value)
        return message.model_dump_json()

    async def _subscribe(self) -> PubSub:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        return self._pubsub

    async def _listen(self) -> None:
        """Deliver change notifications published by other stores.

        If the connection to Redis is lost, subscribe again after a delay
        that doubles with each failure up to `REDIS_BACKOFF_MAX`. Changes
        published while disconnected are not delivered.
        """
        delay = REDIS_BACKOFF_START
        while True:
            try:
                pubsub = self._pubsub
                if not pubsub:
                    pubsub = await self._subscribe()
                    self._logger.info(
                        "Resubscribed to storage changes",
                        channel=self._channel,
                    )
                async for raw in pubsub.listen():
                    delay = REDIS_BACKOFF_START
                    if raw["type"] == "message":
                        await self._handle_message(raw["data"])
                return
            except RedisConnectionError as e:
                self._logger.warning(
                    "Lost connection to storage changes",
                    channel=self._channel,
                    delay=delay,
                    error=str(e),
                )
                if self._pubsub:
                    pubsub, self._pubsub = self._pubsub, None
                    with contextlib.suppress(RedisError):
                        await pubsub.aclose()
                await asyncio.sleep(delay)
                delay = min(delay * 2, REDIS_BACKOFF_MAX)

    async def _handle_message(self, data: str | bytes) -> None:
        try:
            message = _ChangeMessage.model_validate_json(data)
        except ValidationError:
            self._logger.warning(
                "Ignoring malformed storage change message",
                channel=self._channel,
            )
            return
        if message.origin == self._origin:
            return
        change = StorageChange(key=message.key, value=message.value)
        await self._notify(change)


def _decode(value: bytes | str | None) -> str | None:
    return value.decode() if isinstance(value, bytes) else value
