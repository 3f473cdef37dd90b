from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as redis

from ci_runner.models import (
    BuildRecord,
    BuildRequest,
    BuildState,
    BuildStatus,
)
from ci_runner.redis_client import get_redis, redis_key


class BuildStore:
    """Redis-backed build records."""

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or get_redis()

    def _key(self, build_id: str) -> str:
        return redis_key("build", build_id)

    async def create(self, build_id: str, request: BuildRequest) -> BuildRecord:
        record = BuildRecord(
            id=build_id,
            request=request,
            status=BuildStatus.queued,
            created_at=self._now(),
        )
        await self.redis.set(self._key(build_id), record.model_dump_json())
        return record

    async def get(self, build_id: str) -> BuildRecord:
        raw = await self.redis.get(self._key(build_id))
        if raw is None:
            raise KeyError(build_id)
        return BuildRecord.model_validate_json(raw)

    async def mark_running(self, build_id: str) -> BuildRecord:
        return await self._update(
            build_id, status=BuildStatus.running, started_at=self._now()
        )

    async def mark_finished(
        self,
        build_id: str,
        state: BuildState | None,
        error: str | None = None,
    ) -> BuildRecord:
        return await self._update(
            build_id,
            status=status_for(state, error),
            finished_at=self._now(),
            state=state,
            exit_code=state.exit_code if state is not None else None,
            error=error,
        )

    async def _update(self, build_id: str, **kwargs) -> BuildRecord:
        record = await self.get(build_id)
        record = record.model_copy(update=kwargs)
        await self.redis.set(self._key(build_id), record.model_dump_json())
        return record

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)


def status_for(state: BuildState | None, error: str | None) -> BuildStatus:
    if error is not None:
        return BuildStatus.error
    if state is None:
        return BuildStatus.error
    if state.timed_out:
        return BuildStatus.timeout
    if state.exit_code == 0:
        return BuildStatus.succeeded
    return BuildStatus.failed
