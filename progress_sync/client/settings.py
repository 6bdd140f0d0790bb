"""Client-side configuration, read from the environment.

Remote sync is optional: with no ``PROGRESS_API_BASE_URL`` the local
snapshot cache still works and nothing is ever sent.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class ClientSettings:
    api_base_url: str | None
    timeout_s: float
    cache_path: str

    @property
    def remote_sync_enabled(self) -> bool:
        return self.api_base_url is not None


def load_client_settings() -> ClientSettings:
    timeout_raw = _getenv("PROGRESS_API_TIMEOUT_S", "10")
    try:
        timeout_s = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"PROGRESS_API_TIMEOUT_S must be a number (got {timeout_raw!r})"
        ) from None
    if timeout_s <= 0:
        raise ValueError(f"PROGRESS_API_TIMEOUT_S must be positive (got {timeout_raw!r})")

    base_url = _getenv("PROGRESS_API_BASE_URL", "").rstrip("/") or None
    return ClientSettings(
        api_base_url=base_url,
        timeout_s=timeout_s,
        cache_path=_getenv("PROGRESS_CACHE_PATH", ".progress_cache.json"),
    )
