"""Generated files that make up a build context."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ci_runner.buildfile import Buildfile
from ci_runner.dockerfile import Dockerfile
from ci_runner.models import BuildRequest, ContainerInfo
from ci_runner.proxy import Proxy
from ci_runner.registry import Registry

BUILD_SCRIPT = "ci-build"
PROXY_SCRIPT = "proxy.sh"
IDENTITY_FILE = "id_rsa"
DOCKERFILE = "Dockerfile"
SOURCE_DIR = "src"

SCRIPT_DIR = "/usr/local/bin/"
CONFIG_DIR = "/etc/ci.d/"
CACHE_DIR = "/var/cache/ci"


def build_script(request: BuildRequest) -> Buildfile:
    repo, build = request.repo, request.build
    f = Buildfile()

    f.write_env("CI", "true")
    f.write_env("CI_RUNNER", "true")
    f.write_env("CI_BRANCH", repo.branch)
    f.write_env("CI_COMMIT", repo.commit)
    f.write_env("CI_PR", repo.pr)
    f.write_env("CI_BUILD_DIR", repo.dir)

    for mapping in build.hosts:
        f.write_host(mapping)

    if repo.is_remote():
        for cmd in repo.commands():
            f.write_cmd(cmd)

    # deploy and publish steps may carry credentials; never run them
    # against pull request code
    commands = build.build_commands() if repo.pr else build.commands()
    for cmd in commands:
        f.write_cmd(cmd)
    return f


def proxy_script(services: Iterable[ContainerInfo]) -> Proxy:
    proxy = Proxy()
    for service in services:
        for port in service.ports:
            proxy.set(port, service.ip_address)
    return proxy


def dockerfile(request: BuildRequest, image: str, registry: Registry) -> Dockerfile:
    repo = request.repo
    d = Dockerfile(image)
    d.write_workdir(repo.dir)
    d.write_add(BUILD_SCRIPT, SCRIPT_DIR)

    # remote repositories are cloned by the build script instead
    if repo.is_local():
        d.write_add(SOURCE_DIR, repo.dir)

    if registry.is_official(image):
        # official images ship an unprivileged "ubuntu" user
        d.write_user("ubuntu")
        d.write_env("HOME", "/home/ubuntu")
        d.write_env("LANG", "en_US.UTF-8")
        d.write_env("LANGUAGE", "en_US:en")
        d.write_env("LOGNAME", "ubuntu")
        d.write_env("TERM", "xterm")
        d.write_env("SHELL", "/bin/bash")
        d.write_add(IDENTITY_FILE, "/home/ubuntu/.ssh/id_rsa")
        d.write_run("sudo chown -R ubuntu:ubuntu /home/ubuntu/.ssh")
        d.write_run(
            f"sudo mkdir -p {CACHE_DIR} && sudo chown -R ubuntu:ubuntu {CACHE_DIR}"
        )
        d.write_run(f"sudo chown -R ubuntu:ubuntu {SCRIPT_DIR}{BUILD_SCRIPT}")
        d.write_run("sudo chmod 600 /home/ubuntu/.ssh/id_rsa")
    else:
        d.write_user("root")
        d.write_env("HOME", "/root")
        d.write_env("LANG", "en_US.UTF-8")
        d.write_env("LANGUAGE", "en_US:en")
        d.write_env("LOGNAME", "root")
        d.write_env("TERM", "xterm")
        d.write_env("SHELL", "/bin/bash")
        d.write_env("GOPATH", CACHE_DIR)
        d.write_add(IDENTITY_FILE, "/root/.ssh/id_rsa")
        d.write_run("chmod 600 /root/.ssh/id_rsa")
        d.write_run("echo 'StrictHostKeyChecking no' > /root/.ssh/config")

    d.write_add(PROXY_SCRIPT, CONFIG_DIR)
    d.write_entrypoint(f"/bin/bash -e {SCRIPT_DIR}{BUILD_SCRIPT}")
    return d


def write_context(
    context: Path,
    request: BuildRequest,
    image: str,
    services: Iterable[ContainerInfo],
    registry: Registry,
) -> None:
    """Write the identity, scripts and Dockerfile into ``context``."""
    _write(context / IDENTITY_FILE, request.key, 0o600)
    _write(context / BUILD_SCRIPT, bytes(build_script(request)), 0o700)
    _write(context / PROXY_SCRIPT, bytes(proxy_script(services)), 0o755)
    _write(context / DOCKERFILE, bytes(dockerfile(request, image, registry)), 0o644)


def _write(path: Path, data: bytes, mode: int) -> None:
    path.write_bytes(data)
    path.chmod(mode)
