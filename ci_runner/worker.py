"""Bounded pool of workers running queued builds."""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from ci_runner.builder import STOP_TIMEOUT, Builder
from ci_runner.docker_client import DockerClient
from ci_runner.errors import CIRunnerError
from ci_runner.models import BuildRequest, BuildState
from ci_runner.registry import DEFAULT_REGISTRY, Registry
from ci_runner.sinks import NullSink, OutputSink, ResultSink

logger = logging.getLogger(__name__)

# the attach pump and the container wait each hold a thread for the whole build
THREADS_PER_BUILD = 3


@dataclass(frozen=True)
class BuildJob:
    request: BuildRequest
    output: OutputSink = field(default_factory=NullSink)
    sink: ResultSink | None = None
    id: str = field(default_factory=lambda: uuid4().hex)


class BuildRunner:
    """Configuration shared by every build the pool runs."""

    def __init__(
        self,
        client: DockerClient,
        timeout: float,
        *,
        registry: Registry = DEFAULT_REGISTRY,
        cache_root: Path | None = None,
        stop_timeout: int = STOP_TIMEOUT,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.registry = registry
        self.cache_root = cache_root
        self.stop_timeout = stop_timeout

    def builder(self, job: BuildJob, executor: ThreadPoolExecutor | None = None) -> Builder:
        return Builder(
            self.client,
            job.request,
            job.output,
            timeout=job.request.timeout_sec or self.timeout,
            registry=self.registry,
            cache_root=self.cache_root,
            executor=executor,
            stop_timeout=self.stop_timeout,
        )

    async def run(
        self, job: BuildJob, executor: ThreadPoolExecutor | None = None
    ) -> BuildState:
        return await self.builder(job, executor).run()


class WorkerPool:
    def __init__(self, runner: BuildRunner, concurrency: int | None = None) -> None:
        self.runner = runner
        self.concurrency = concurrency or os.cpu_count() or 1
        self._queue: asyncio.Queue[BuildJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._executor: ThreadPoolExecutor | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> WorkerPool:
        if self._workers:
            return self
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency * THREADS_PER_BUILD,
            thread_name_prefix="ci-runner",
        )
        self._workers = [
            asyncio.create_task(self._work(n), name=f"ci-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info("started %d build workers", self.concurrency)
        return self

    def enqueue(self, job: BuildJob) -> BuildJob:
        self._queue.put_nowait(job)
        return job

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def _work(self, n: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            except Exception:
                logger.exception("worker %d failed to report build %s", n, job.id)
            finally:
                self._queue.task_done()

    async def _run(self, job: BuildJob) -> None:
        logger.info("build %s picked up", job.id)
        if job.sink is not None:
            try:
                await job.sink.started(job)
            except Exception:
                logger.exception("failed to mark build %s as started", job.id)

        builder = self.runner.builder(job, self._executor)
        error = None
        try:
            await builder.run()
        except CIRunnerError as exc:
            error = str(exc)
            logger.error("build %s failed: %s", job.id, exc)
        except Exception as exc:
            error = f"internal error: {exc}"
            logger.exception("build %s crashed", job.id)
        finally:
            state = builder.build_state
            if state is not None:
                logger.info(
                    "build %s finished with exit code %d", job.id, state.exit_code
                )
            if job.sink is not None:
                await job.sink.finished(job, state, error)


def start(concurrency: int | None, runner: BuildRunner) -> WorkerPool:
    """Start a pool on the running event loop."""
    return WorkerPool(runner, concurrency).start()
