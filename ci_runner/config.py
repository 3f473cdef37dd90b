from __future__ import annotations

from pathlib import Path

from ci_runner.settings import get_settings


def cache_dir() -> Path:
    """Root directory for cache volumes shared between builds."""
    root = Path(get_settings().cache_dir)
    root.mkdir(mode=0o777, parents=True, exist_ok=True)
    return root
