from __future__ import annotations

import codecs
from typing import AsyncGenerator

import redis.asyncio as redis

from ci_runner.redis_client import get_redis, redis_key

_COMPLETE = "__complete__"


class LogStore:
    """Redis-backed build output with list + pubsub for streaming."""

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or get_redis()

    def _list(self, build_id: str) -> str:
        return redis_key("log", "list", build_id)

    def _complete(self, build_id: str) -> str:
        return redis_key("log", "complete", build_id)

    def _channel(self, build_id: str) -> str:
        return redis_key("log", "channel", build_id)

    def sink(self, build_id: str) -> LogSink:
        return LogSink(self, build_id)

    async def register(self, build_id: str) -> None:
        await self.redis.delete(self._list(build_id), self._complete(build_id))

    async def append(self, build_id: str, text: str) -> None:
        index = await self.redis.rpush(self._list(build_id), text)  # type: ignore[misc]
        await self.redis.publish(self._channel(build_id), f"{index}:{text}")  # type: ignore[misc]

    async def mark_complete(self, build_id: str) -> None:
        await self.redis.set(self._complete(build_id), "1")
        await self.redis.publish(self._channel(build_id), _COMPLETE)

    async def is_complete(self, build_id: str) -> bool:
        return bool(await self.redis.exists(self._complete(build_id)))

    async def tail(self, build_id: str) -> list[str]:
        raw = await self.redis.lrange(self._list(build_id), 0, -1)  # type: ignore[misc]
        return [self._decode(item) for item in raw]

    async def stream(
        self, build_id: str, start_at: int = 0
    ) -> AsyncGenerator[str, None]:
        # subscribe before reading the backlog so no chunk falls in between
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self._channel(build_id))
        try:
            buffer = await self.redis.lrange(self._list(build_id), start_at, -1)  # type: ignore[misc]
            seen = start_at + len(buffer)
            for line in buffer:
                yield self._decode(line)
            if await self.is_complete(build_id):
                return

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                data = self._decode(message["data"])
                if data == _COMPLETE:
                    return
                index, _, text = data.partition(":")
                if int(index) <= seen:
                    continue
                seen = int(index)
                yield text
        finally:
            await pubsub.unsubscribe(self._channel(build_id))
            await pubsub.close()

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode(errors="replace")
        return str(value)


class LogSink:
    """Output sink appending container output to a build's log."""

    def __init__(self, store: LogStore, build_id: str) -> None:
        self.store = store
        self.build_id = build_id
        # attach frames may split a multibyte character
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def write(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if text:
            await self.store.append(self.build_id, text)
