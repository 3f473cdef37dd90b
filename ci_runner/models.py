from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field

TIMEOUT_EXIT_CODE = 124

_REMOTE_PREFIXES = ("git://", "git@", "gitlab@", "http://", "https://")


class BuildScript(BaseModel):
    """Image, commands and supporting services of one build."""

    name: str = ""
    image: str = ""
    script: list[str] = Field(default_factory=list)
    deploy: list[str] = Field(default_factory=list)
    publish: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)
    cache: list[str] = Field(default_factory=list)
    hosts: list[str] = Field(default_factory=list)

    def build_commands(self) -> list[str]:
        return list(self.script)

    def commands(self) -> list[str]:
        return [*self.script, *self.deploy, *self.publish]


class Repo(BaseModel):
    name: str = ""
    path: str
    branch: str = "master"
    commit: str = ""
    pr: str = ""
    dir: str
    depth: int = Field(default=50, gt=0)

    def is_remote(self) -> bool:
        return self.path.startswith(_REMOTE_PREFIXES)

    def is_local(self) -> bool:
        return not self.is_remote()

    def display_name(self) -> str:
        if self.name:
            return self.name
        tail = PurePosixPath(self.path.rstrip("/")).name
        return tail.removesuffix(".git") or "repo"

    def commands(self) -> list[str]:
        """Shell commands that clone the repository into ``dir``."""
        if self.pr:
            return [
                f"git clone --depth={self.depth} --recursive {self.path} {self.dir}",
                f"git fetch origin +refs/pull/{self.pr}/head:refs/remotes/origin/pr/{self.pr}",
                f"git checkout -qf -b pr/{self.pr} origin/pr/{self.pr}",
            ]
        cmds = [
            f"git clone --depth={self.depth} --recursive --branch={self.branch} "
            f"{self.path} {self.dir}"
        ]
        if self.commit:
            cmds.append(f"git checkout -qf {self.commit}")
        return cmds


class BuildRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    build: BuildScript
    repo: Repo
    key: bytes = Field(default=b"", repr=False, exclude=True)
    timeout_sec: float | None = Field(default=None, gt=0)


class BuildFileRequest(BaseModel):
    """A build whose image, commands and services come as ``.ci.yml`` text."""

    config: str
    repo: Repo
    key: bytes = Field(default=b"", repr=False)
    timeout_sec: float | None = Field(default=None, gt=0)


class BuildState(BaseModel):
    started: int = Field(default_factory=lambda: now())
    finished: int = 0
    exit_code: int = 0

    def finish(self, exit_code: int) -> None:
        self.exit_code = exit_code
        self.finished = max(now(), self.started)

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE


class BuildStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    timeout = "timeout"
    error = "error"


class BuildRecord(BaseModel):
    id: str
    request: BuildRequest
    status: BuildStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    state: BuildState | None = None
    exit_code: int | None = None
    error: str | None = None


class ContainerInfo(BaseModel):
    id: str
    name: str = ""
    ip_address: str = ""
    ports: list[str] = Field(default_factory=list)

    @property
    def link_name(self) -> str:
        return self.name.lstrip("/")


class ImageInfo(BaseModel):
    id: str
    tags: list[str] = Field(default_factory=list)


def now() -> int:
    return int(time.time())
