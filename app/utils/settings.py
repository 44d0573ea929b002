"""
Runtime settings for storage, capacity limits and offline synchronization.

Values come from environment variables so the same build runs on a
disconnected edge box (local mode) and in front of an upstream LMS (forward
mode, ``SYNC_SINK_URL`` set).
"""

import os
import pathlib
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

BACKEND_DIR = pathlib.Path(__file__).parent.parent.parent


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


@dataclass
class Settings:
    storage_dir: pathlib.Path
    max_package_size: int = 500 * 1024 * 1024  # 500MB
    max_payload_bytes: int = 5 * 1024 * 1024
    max_batch_actions: int = 1000
    sync_batch_size: int = 100
    sync_max_retries: int = 3
    sync_interval_seconds: float = 60.0
    sync_sink_url: Optional[str] = None
    sync_sink_timeout: float = 10.0

    @property
    def packages_dir(self) -> pathlib.Path:
        return self.storage_dir / "packages"

    @property
    def uploads_dir(self) -> pathlib.Path:
        return self.storage_dir / "uploads"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            storage_dir=pathlib.Path(
                os.getenv("STORAGE_DIR", str(BACKEND_DIR / "storage"))
            ),
            max_package_size=_env_int("MAX_PACKAGE_SIZE", 500 * 1024 * 1024),
            max_payload_bytes=_env_int("MAX_PAYLOAD_BYTES", 5 * 1024 * 1024),
            max_batch_actions=_env_int("MAX_BATCH_ACTIONS", 1000),
            sync_batch_size=_env_int("SYNC_BATCH_SIZE", 100),
            sync_max_retries=_env_int("SYNC_MAX_RETRIES", 3),
            sync_interval_seconds=_env_float("SYNC_INTERVAL_SECONDS", 60.0),
            sync_sink_url=os.getenv("SYNC_SINK_URL") or None,
            sync_sink_timeout=_env_float("SYNC_SINK_TIMEOUT", 10.0),
        )


@lru_cache
def get_settings() -> Settings:
    """FastAPI dependency returning the process-wide settings."""
    return Settings.from_env()
