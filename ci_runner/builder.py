"""Per-job build lifecycle: setup, run with a deadline, teardown."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from concurrent.futures import Executor
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator, NamedTuple, TypeVar

from ci_runner import artifacts
from ci_runner.config import cache_dir
from ci_runner.docker_client import DockerClient
from ci_runner.errors import (
    ConfigurationError,
    ContainerRuntimeError,
    NotFoundError,
    RunError,
    SetupError,
)
from ci_runner.models import (
    TIMEOUT_EXIT_CODE,
    BuildRequest,
    BuildState,
    ContainerInfo,
    ImageInfo,
)
from ci_runner.registry import DEFAULT_REGISTRY, Registry
from ci_runner.sinks import OutputSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

RUN_FAILED_EXIT_CODE = 1
STOP_TIMEOUT = 15


class Builder:
    """Runs one build request inside a freshly built container.

    ``run`` executes setup, then races the container against the request
    timeout, and always finishes with teardown. Once ``run`` returns or
    raises, ``build_state`` is set. A timeout is not an error: the state
    carries exit code 124.
    """

    def __init__(
        self,
        client: DockerClient,
        request: BuildRequest,
        output: OutputSink,
        *,
        timeout: float,
        registry: Registry = DEFAULT_REGISTRY,
        cache_root: Path | None = None,
        executor: Executor | None = None,
        stop_timeout: int = STOP_TIMEOUT,
    ) -> None:
        self.client = client
        self.request = request
        self.output = output
        self.timeout = timeout
        self.registry = registry
        self.cache_root = cache_root
        self.executor = executor
        self.stop_timeout = stop_timeout

        self.build_state: BuildState | None = None
        self.image_name = ""

        self._image: ImageInfo | None = None
        self._container_id: str | None = None
        self._services: list[ContainerInfo] = []
        self._halted = asyncio.Event()
        self._execution: asyncio.Task | None = None
        self._attach: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return self.request.build.name or self.request.repo.display_name()

    async def run(self) -> BuildState:
        try:
            try:
                image = await self._setup()
            except Exception:
                self.build_state = BuildState()
                self.build_state.finish(RUN_FAILED_EXIT_CODE)
                raise

            self.build_state = BuildState()
            self._execution = asyncio.create_task(self._execute(image))
            done, _ = await asyncio.wait({self._execution}, timeout=self.timeout)
            if self._execution not in done:
                # the container keeps running until teardown stops it
                logger.error("time limit exceeded for build %s", self.name)
                await self._log(f"[runner] time limit of {self.timeout}s exceeded\n")
                self.build_state.finish(TIMEOUT_EXIT_CODE)
                return self.build_state

            try:
                exit_code = self._execution.result()
            except Exception:
                self.build_state.finish(RUN_FAILED_EXIT_CODE)
                raise
            self.build_state.finish(exit_code)
            return self.build_state
        finally:
            await self._teardown()

    # setup

    async def _setup(self) -> ImageInfo:
        context = Path(tempfile.mkdtemp(prefix="ci-runner-"))
        try:
            return await self._prepare(context)
        except SetupError:
            raise
        except (OSError, ContainerRuntimeError) as exc:
            raise SetupError(str(exc)) from exc
        finally:
            shutil.rmtree(context, ignore_errors=True)

    async def _prepare(self, context: Path) -> ImageInfo:
        build, repo = self.request.build, self.request.repo
        if not build.image:
            logger.error("no image specified for build %s", self.name)
            raise ConfigurationError("missing Docker image")

        self.image_name = self.registry.resolve_image(build.image)

        if repo.is_local():
            # build contexts cannot follow symlinks out of the context root
            await self._call(
                shutil.copytree,
                repo.path,
                context / artifacts.SOURCE_DIR,
                symlinks=True,
            )

        for declaration in build.services:
            await self._start_service(declaration)

        await self._call(
            artifacts.write_context,
            context,
            self.request,
            self.image_name,
            self._services,
            self.registry,
        )

        await self._log(f"[runner] creating build image from {self.image_name}\n")
        try:
            await self._call(self.client.inspect_image, self.image_name)
        except NotFoundError:
            await self._call(self.client.pull_image, self.image_name)

        tag = f"ci-runner/{uuid.uuid4().hex}"
        await self._call(self.client.build_image, tag, str(context))
        try:
            image = await self._call(self.client.inspect_image, tag)
        except ContainerRuntimeError:
            await self._discard(self.client.remove_image, tag, what="build image")
            raise
        self._image = image
        return image

    async def _start_service(self, declaration: str) -> None:
        image = self.registry.resolve_service(declaration)
        logger.info("starting service container %s", declaration)
        await self._log(f"[runner] starting service {declaration}\n")

        container_id = await self._call(
            self.client.run_daemon, image.tag, list(image.ports)
        )
        try:
            info = await self._call(self.client.inspect_container, container_id)
        except ContainerRuntimeError:
            # not tracked yet, so teardown would never see it
            await self._discard(
                self.client.stop, container_id, self.stop_timeout, what="service"
            )
            await self._discard(
                self.client.remove_container, container_id, what="service"
            )
            raise
        self._services.append(info)

    # run

    async def _execute(self, image: ImageInfo) -> int:
        links = self._links()

        logger.info("starting build %s", self.name)
        try:
            volumes, binds = self._cache_volumes()
            container_id = await self._call(
                self.client.create_container, image.id, volumes, binds, links
            )
            self._container_id = container_id
            if self._halted.is_set():
                return TIMEOUT_EXIT_CODE

            # attach before start so no output is lost
            stream = await self._call(self.client.attach, container_id)
            self._attach = asyncio.create_task(self._pump(stream))
            if self._halted.is_set():
                return TIMEOUT_EXIT_CODE

            await self._call(self.client.start, container_id)
            exit_code = await self._call(self.client.wait, container_id)
        except (ContainerRuntimeError, OSError) as exc:
            logger.error("build %s failed to run: %s", self.name, exc)
            raise RunError(str(exc)) from exc

        await self._attach
        return exit_code

    async def _pump(self, stream: Iterator[bytes]) -> None:
        while True:
            chunk = await self._call(next, stream, None)
            if chunk is None:
                return
            try:
                await self.output.write(chunk)
            except Exception as exc:
                logger.error("build %s output sink failed: %s", self.name, exc)
                raise RunError(f"cannot record build output: {exc}") from exc

    def _links(self) -> list[str]:
        links = []
        for declaration, service in zip(self.request.build.services, self._services):
            image = self.registry.resolve_service(declaration)
            links.append(f"{service.link_name}:{image.name}")
        return links

    def _cache_volumes(self) -> tuple[list[str], list[str]]:
        if not self.request.build.cache:
            return [], []
        root = self.cache_root or cache_dir()
        logger.info("cache directory is %s", root)
        volumes, binds = [], []
        for volume in self.request.build.cache:
            path = cache_volume_path(
                root, self.request.repo.display_name(), self.request.repo.branch,
                volume, self.request.repo.dir,
            )
            path.host.mkdir(mode=0o777, parents=True, exist_ok=True)
            volumes.append(path.container)
            binds.append(f"{path.host}:{path.container}")
            logger.info("mounting volume %s:%s", path.host, path.container)
        return volumes, binds

    # teardown

    async def _teardown(self) -> None:
        self._halted.set()
        execution = self._execution
        if execution is not None and not execution.done() and self._container_id is None:
            # container creation is in flight; let it land so it gets removed
            await asyncio.wait({execution}, timeout=self.stop_timeout)

        if self._container_id is not None:
            logger.info("removing build container %s", self._container_id)
            await self._discard(
                self.client.stop, self._container_id, self.stop_timeout,
                what="build container",
            )
            await self._discard(
                self.client.remove_container, self._container_id,
                what="build container",
            )

        for service in self._services:
            logger.info("removing service container %s", service.id)
            await self._discard(
                self.client.stop, service.id, self.stop_timeout, what="service"
            )
            await self._discard(
                self.client.remove_container, service.id, what="service"
            )

        if self._image is not None:
            logger.info("removing build image %s", self._image.id)
            await self._discard(
                self.client.remove_image, self._image.id, what="build image"
            )

        for task in (execution, self._attach):
            if task is not None:
                await self._reap(task)

    async def _discard(self, func: Callable[..., Any], *args: Any, what: str) -> None:
        try:
            await self._call(func, *args)
        except Exception as exc:
            logger.error("failed to clean up %s %s: %s", what, args[0], exc)

    async def _reap(self, task: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.error("build %s left a task running after teardown", self.name)
        except Exception as exc:
            logger.warning("build %s task ended with %r", self.name, exc)

    # helpers

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args, **kwargs))

    async def _log(self, text: str) -> None:
        await self.output.write(text.encode())


class CacheVolume(NamedTuple):
    host: Path
    container: str


def cache_volume_path(
    root: Path, name: str, branch: str, volume: str, workdir: str
) -> CacheVolume:
    """Host directory backing ``volume`` for builds of ``name``@``branch``.

    Relative volumes are resolved against the in-container working
    directory. The host path only depends on its inputs.
    """
    container = os.path.normpath(volume)
    if not container.startswith("/"):
        container = os.path.normpath(str(PurePosixPath(workdir) / container))
    host = root.joinpath(_relative(name), _relative(branch), container.lstrip("/"))
    return CacheVolume(host=host, container=container)


def _relative(part: str) -> str:
    return os.path.normpath(part).lstrip("/")
