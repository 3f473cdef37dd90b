from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(default_factory=lambda: _env_flag("FAKE_REDIS"))
    redis_prefix: str = field(default_factory=lambda: os.getenv("REDIS_PREFIX", "ci"))
    cache_dir: str = field(
        default_factory=lambda: os.getenv("CI_RUNNER_TMP") or "/tmp/ci-runner"
    )
    concurrency: int = field(
        default_factory=lambda: int(
            os.getenv("CI_RUNNER_CONCURRENCY") or os.cpu_count() or 1
        )
    )
    # 300 minutes
    timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("CI_RUNNER_TIMEOUT", 300 * 60))
    )
    stop_timeout: int = field(
        default_factory=lambda: int(os.getenv("DOCKER_STOP_TIMEOUT", 15))
    )


def get_settings() -> Settings:
    return Settings()
