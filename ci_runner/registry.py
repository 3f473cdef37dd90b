"""Build image aliases and the service image table.

Both tables are configuration: a ``Registry`` is built once and handed to
the runner, which passes it to every builder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

from ci_runner.errors import InvalidServiceError


class ServiceImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    tag: str
    ports: tuple[str, ...] = Field(default_factory=tuple)


def _freeze(table: Mapping[str, ServiceImage]) -> Mapping[str, ServiceImage]:
    return MappingProxyType(dict(table))


@dataclass(frozen=True)
class Registry:
    builders: Mapping[str, ServiceImage] = field(default_factory=dict)
    services: Mapping[str, ServiceImage] = field(default_factory=dict)
    official_prefixes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "builders", _freeze(self.builders))
        object.__setattr__(self, "services", _freeze(self.services))

    def resolve_image(self, image: str) -> str:
        """Return the canonical tag when ``image`` is a builder alias."""
        alias = self.builders.get(image)
        return alias.tag if alias is not None else image

    def resolve_service(self, declaration: str) -> ServiceImage:
        """Parse a service declaration.

        ``"redis"`` looks up the registry, ``"name tag"`` and
        ``"name tag port,port"`` declare an ad hoc service.
        """
        tokens = declaration.split()
        if len(tokens) == 1:
            image = self.services.get(tokens[0])
            if image is None:
                raise InvalidServiceError(declaration, "unknown service")
            return image
        if len(tokens) == 2:
            return ServiceImage(name=tokens[0], tag=tokens[1])
        if len(tokens) == 3:
            ports = tuple(p for p in tokens[2].split(",") if p)
            for port in ports:
                if not (port.isascii() and port.isdigit()) or not 0 < int(port) < 65536:
                    raise InvalidServiceError(declaration, f"invalid port {port!r}")
            return ServiceImage(name=tokens[0], tag=tokens[1], ports=ports)
        raise InvalidServiceError(declaration)

    def is_official(self, image: str) -> bool:
        return image.startswith(self.official_prefixes)


def _image(name: str, tag: str, *ports: str) -> ServiceImage:
    return ServiceImage(name=name, tag=tag, ports=ports)


BUILDERS = {
    # go
    "go": _image("go", "bradrydzewski/go:1.2"),
    "go1": _image("go1", "bradrydzewski/go:1.0"),
    "go1.1": _image("go1.1", "bradrydzewski/go:1.1"),
    "go1.2": _image("go1.2", "bradrydzewski/go:1.2"),
    # node
    "node": _image("node", "bradrydzewski/node:0.10"),
    "node0.10": _image("node0.10", "bradrydzewski/node:0.10"),
    "node0.8": _image("node0.8", "bradrydzewski/node:0.8"),
    # python
    "python": _image("python", "bradrydzewski/python:2.7"),
    "python2.7": _image("python2.7", "bradrydzewski/python:2.7"),
    "python3.2": _image("python3.2", "bradrydzewski/python:3.2"),
    "python3.3": _image("python3.3", "bradrydzewski/python:3.3"),
    "pypy": _image("pypy", "bradrydzewski/python:pypy"),
    # ruby
    "ruby": _image("ruby", "bradrydzewski/ruby:2.0.0"),
    "ruby2.1.0": _image("ruby2.1.0", "bradrydzewski/ruby:2.1.0"),
    "ruby2.0.0": _image("ruby2.0.0", "bradrydzewski/ruby:2.0.0"),
    "ruby1.9.3": _image("ruby1.9.3", "bradrydzewski/ruby:1.9.3"),
    # php
    "php": _image("php", "bradrydzewski/php:5.5"),
    "php5.5": _image("php5.5", "bradrydzewski/php:5.5"),
    "php5.4": _image("php5.4", "bradrydzewski/php:5.4"),
    # jvm
    "java": _image("java", "bradrydzewski/java:openjdk7"),
    "openjdk6": _image("openjdk6", "bradrydzewski/java:openjdk6"),
    "openjdk7": _image("openjdk7", "bradrydzewski/java:openjdk7"),
    "oraclejdk7": _image("oraclejdk7", "bradrydzewski/java:oraclejdk7"),
    "oraclejdk8": _image("oraclejdk8", "bradrydzewski/java:oraclejdk8"),
    "scala": _image("scala", "bradrydzewski/scala:2.10.3"),
    "scala2.10": _image("scala2.10", "bradrydzewski/scala:2.10.3"),
    "scala2.9": _image("scala2.9", "bradrydzewski/scala:2.9.3"),
    # others
    "haskell": _image("haskell", "bradrydzewski/haskell:7.4"),
    "erlang": _image("erlang", "bradrydzewski/erlang:R16B02"),
    "dart": _image("dart", "bradrydzewski/dart:stable"),
}

SERVICES = {
    "cassandra": _image("cassandra", "relateiq/cassandra", "9042", "7000", "7001", "7199", "9160", "49183"),
    "couchdb": _image("couchdb", "bradrydzewski/couchdb:1.5", "5984"),
    "elasticsearch": _image("elasticsearch", "bradrydzewski/elasticsearch:0.90", "9200", "9300"),
    "memcached": _image("memcached", "bradrydzewski/memcached", "11211"),
    "mongodb": _image("mongodb", "bradrydzewski/mongodb:2.4", "27017"),
    "mysql": _image("mysql", "bradrydzewski/mysql:5.5", "3306"),
    "neo4j": _image("neo4j", "bradrydzewski/neo4j:1.9", "7474"),
    "postgres": _image("postgres", "bradrydzewski/postgres:9.1", "5432"),
    "rabbitmq": _image("rabbitmq", "bradrydzewski/rabbitmq:3.2", "5672", "15672"),
    "redis": _image("redis", "bradrydzewski/redis:2.8", "6379"),
    "riak": _image("riak", "guillermo/riak", "8087", "8098"),
    "zookeeper": _image("zookeeper", "jplock/zookeeper:3.4.5", "2181"),
}

DEFAULT_REGISTRY = Registry(
    builders=BUILDERS,
    services=SERVICES,
    official_prefixes=("bradrydzewski/", "drone/"),
)
