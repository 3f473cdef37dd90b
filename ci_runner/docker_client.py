"""Container runtime client used by the builder.

Every method blocks; the builder calls them from worker threads. One client
is shared by all workers.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Iterator

import docker
from docker import errors as docker_errors

from ci_runner.errors import ContainerRuntimeError, NotFoundError
from ci_runner.models import ContainerInfo, ImageInfo

logger = logging.getLogger(__name__)


def _translate(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except docker_errors.NotFound as exc:
            raise NotFoundError(str(exc)) from exc
        except docker_errors.DockerException as exc:
            raise ContainerRuntimeError(str(exc)) from exc

    return wrapper


def _ports(network_settings: dict) -> list[str]:
    ports = network_settings.get("Ports") or {}
    return sorted({key.split("/", 1)[0] for key in ports})


class DockerClient:
    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self.client = client or docker.from_env()
        self.api = self.client.api

    # images

    @_translate
    def inspect_image(self, name: str) -> ImageInfo:
        info = self.api.inspect_image(name)
        return ImageInfo(id=info["Id"], tags=info.get("RepoTags") or [])

    @_translate
    def pull_image(self, name: str) -> None:
        logger.info("pulling image %s", name)
        self.client.images.pull(name)

    @_translate
    def build_image(self, tag: str, context: str) -> None:
        self.client.images.build(path=context, tag=tag, rm=True, forcerm=True)

    @_translate
    def remove_image(self, image_id: str) -> None:
        self.api.remove_image(image_id, force=True)

    # containers

    @_translate
    def run_daemon(self, tag: str, ports: list[str]) -> str:
        """Start a detached container with ``ports`` published on the host."""
        try:
            self.api.inspect_image(tag)
        except docker_errors.ImageNotFound:
            self.client.images.pull(tag)
        host_config = self.api.create_host_config(
            port_bindings={f"{port}/tcp": None for port in ports},
        )
        container = self.api.create_container(
            tag,
            detach=True,
            ports=[(int(port), "tcp") for port in ports],
            host_config=host_config,
        )
        try:
            self.api.start(container["Id"])
        except docker_errors.DockerException:
            # never started, so the caller has no id to clean up
            try:
                self.api.remove_container(container["Id"], force=True)
            except docker_errors.DockerException as exc:
                logger.error(
                    "failed to remove service container %s: %s", container["Id"], exc
                )
            raise
        return container["Id"]

    @_translate
    def inspect_container(self, container_id: str) -> ContainerInfo:
        info = self.api.inspect_container(container_id)
        network = info.get("NetworkSettings") or {}
        return ContainerInfo(
            id=info["Id"],
            name=info.get("Name", ""),
            ip_address=network.get("IPAddress", ""),
            ports=_ports(network),
        )

    @_translate
    def create_container(
        self,
        image: str,
        volumes: list[str],
        binds: list[str],
        links: list[str],
    ) -> str:
        host_config = self.api.create_host_config(
            privileged=False,
            binds=binds,
            links=[tuple(link.split(":", 1)) for link in links],
        )
        container = self.api.create_container(
            image,
            stdin_open=False,
            attach_stdin=False,
            attach_stdout=True,
            attach_stderr=True,
            volumes=volumes,
            host_config=host_config,
        )
        return container["Id"]

    @_translate
    def attach(self, container_id: str) -> Iterator[bytes]:
        return self.api.attach(
            container_id, stdout=True, stderr=True, stream=True, logs=True
        )

    @_translate
    def start(self, container_id: str) -> None:
        self.api.start(container_id)

    @_translate
    def wait(self, container_id: str) -> int:
        result = self.api.wait(container_id)
        return int(result.get("StatusCode", 1))

    @_translate
    def stop(self, container_id: str, timeout: int) -> None:
        self.api.stop(container_id, timeout=timeout)

    @_translate
    def remove_container(self, container_id: str) -> None:
        self.api.remove_container(container_id, force=True)
