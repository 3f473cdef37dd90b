"""Destinations for build output and build results."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ci_runner.models import BuildState
    from ci_runner.worker import BuildJob


class OutputSink(Protocol):
    async def write(self, data: bytes) -> None: ...


class ResultSink(Protocol):
    async def started(self, job: BuildJob) -> None: ...

    async def finished(
        self, job: BuildJob, state: BuildState | None, error: str | None
    ) -> None: ...


class BufferSink:
    """Keeps build output in memory."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    async def write(self, data: bytes) -> None:
        self._chunks.append(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)

    def text(self) -> str:
        return self.getvalue().decode(errors="replace")


class NullSink:
    async def write(self, data: bytes) -> None:
        return None
