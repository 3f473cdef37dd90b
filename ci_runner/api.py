from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from ci_runner.build_store import BuildStore
from ci_runner.buildconf import parse_build
from ci_runner.docker_client import DockerClient
from ci_runner.errors import ConfigurationError
from ci_runner.log_store import LogStore
from ci_runner.models import BuildFileRequest, BuildRecord, BuildRequest, BuildState
from ci_runner.redis_client import close_redis
from ci_runner.settings import get_settings
from ci_runner.worker import BuildJob, BuildRunner, WorkerPool

logger = logging.getLogger(__name__)

API_DESCRIPTION = """
Continuous integration build executor.

Submit a build with `POST /builds`, or send the `.ci.yml` text of a build
with `POST /builds/file`. Each build runs in a container built
from the requested image, with the requested services linked in, and is
torn down when it finishes or exceeds its timeout (exit code `124`).

## Environment Variables Available in Your Build

- `CI`, `CI_RUNNER` - always `true`
- `CI_BRANCH`, `CI_COMMIT`, `CI_PR` - what is being built
- `CI_BUILD_DIR` - working directory of the checkout
"""


class BuildReporter:
    """Result sink recording build progress in Redis."""

    def __init__(self, builds: BuildStore, logs: LogStore) -> None:
        self.builds = builds
        self.logs = logs

    async def started(self, job: BuildJob) -> None:
        await self.builds.mark_running(job.id)

    async def finished(
        self, job: BuildJob, state: BuildState | None, error: str | None
    ) -> None:
        if error:
            await self.logs.append(job.id, f"[runner] {error}\n")
        if state is not None:
            await self.logs.append(
                job.id, f"[runner] finished with code {state.exit_code}\n"
            )
        await self.builds.mark_finished(job.id, state, error)
        await self.logs.mark_complete(job.id)


def create_app(
    runner: BuildRunner | None = None, concurrency: int | None = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        build_runner = runner or BuildRunner(DockerClient(), settings.timeout_sec)
        pool = WorkerPool(build_runner, concurrency or settings.concurrency).start()
        builds = BuildStore()
        logs = LogStore()
        app.state.pool = pool
        app.state.builds = builds
        app.state.logs = logs
        app.state.reporter = BuildReporter(builds, logs)
        try:
            yield
        finally:
            await pool.stop()
            await close_redis()

    app = FastAPI(
        title="CI Runner",
        version="0.1.0",
        description=API_DESCRIPTION,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/builds", response_model=BuildRecord, status_code=202)
    async def submit(build: BuildRequest, request: Request) -> BuildRecord:
        return await _enqueue(request, build)

    @app.post("/builds/file", response_model=BuildRecord, status_code=202)
    async def submit_file(submission: BuildFileRequest, request: Request) -> BuildRecord:
        try:
            script = parse_build(submission.config)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        build = BuildRequest(
            build=script,
            repo=submission.repo,
            key=submission.key,
            timeout_sec=submission.timeout_sec,
        )
        return await _enqueue(request, build)

    @app.get("/builds/{build_id}", response_model=BuildRecord)
    async def get_build(build_id: str, request: Request) -> BuildRecord:
        return await _record(request, build_id)

    @app.get("/builds/{build_id}/out.txt", response_class=PlainTextResponse)
    async def build_output(build_id: str, request: Request) -> str:
        await _record(request, build_id)
        lines = await request.app.state.logs.tail(build_id)
        return "".join(lines)

    @app.get("/builds/{build_id}/stream")
    async def stream_output(build_id: str, request: Request) -> StreamingResponse:
        await _record(request, build_id)
        return StreamingResponse(
            request.app.state.logs.stream(build_id), media_type="text/plain"
        )

    return app


async def _record(request: Request, build_id: str) -> BuildRecord:
    try:
        return await request.app.state.builds.get(build_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="build not found") from exc


async def _enqueue(request: Request, build: BuildRequest) -> BuildRecord:
    state = request.app.state
    build_id = uuid4().hex
    record = await state.builds.create(build_id, build)
    await state.logs.register(build_id)
    state.pool.enqueue(
        BuildJob(
            id=build_id,
            request=build,
            output=state.logs.sink(build_id),
            sink=state.reporter,
        )
    )
    logger.info("queued build %s", build_id)
    return record


app = create_app()
