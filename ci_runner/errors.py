from __future__ import annotations


class CIRunnerError(Exception):
    """Base class for build executor errors."""


class SetupError(CIRunnerError):
    """Preparing the build context, services or image failed."""


class ConfigurationError(SetupError):
    """The build request cannot be executed as specified."""


class InvalidServiceError(ConfigurationError):
    def __init__(self, declaration: str, reason: str = "invalid service") -> None:
        self.declaration = declaration
        super().__init__(f"{reason}: {declaration!r}")


class RunError(CIRunnerError):
    """Creating, starting or waiting on the build container failed."""


class ContainerRuntimeError(CIRunnerError):
    """A call into the container runtime failed."""


class NotFoundError(ContainerRuntimeError):
    """The container runtime does not know the requested object."""
