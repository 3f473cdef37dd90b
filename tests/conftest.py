import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ci_runner.redis_client import reset_redis  # noqa: E402


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Use an in-process Redis for every test."""
    monkeypatch.setenv("FAKE_REDIS", "1")
    reset_redis()
    yield
    reset_redis()


@pytest.fixture
def cache_root(tmp_path, monkeypatch):
    """Set up a temporary cache volume directory."""
    root = tmp_path / "cache"
    monkeypatch.setenv("CI_RUNNER_TMP", str(root))
    return root


@pytest.fixture
def local_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "main.go").write_text("package main\n")
    (repo / "pkg").mkdir()
    (repo / "pkg" / "lib.go").write_text("package pkg\n")
    return repo
