"""Parsing of ``.ci.yml`` build files."""

from __future__ import annotations

import yaml
from pydantic import ValidationError

from ci_runner.errors import ConfigurationError
from ci_runner.models import BuildScript


def parse_build(text: str, name: str = "") -> BuildScript:
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"build file is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("build file must be a mapping")

    # a single command may be written as a plain string
    for key in ("script", "deploy", "publish", "services", "cache", "hosts"):
        if isinstance(data.get(key), str):
            data[key] = [data[key]]
    if name and not data.get("name"):
        data["name"] = name

    try:
        return BuildScript.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid build file: {exc}") from exc
