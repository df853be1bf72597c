"""Sync engine configuration.

Settings are read from environment variables; a ``.env`` file at the project
root is loaded first if present.

    SYNC_DB_PATH                SQLite file for mappings, jobs and history (default ./sync.db)
    SYNC_CHUNK_SIZE             Items per batch chunk (default 10)
    SYNC_MAX_CONCURRENCY        Concurrent jobs per tenant (default 4)
    SYNC_JOB_TIMEOUT_SECONDS    Wall-clock limit per job attempt (default 30)
    SYNC_MAX_ATTEMPTS           Attempts per job for transient errors (default 5)
    SYNC_BASE_DELAY_SECONDS     Backoff base delay (default 1.0)
    SYNC_MAX_DELAY_SECONDS      Backoff cap (default 60.0)
    SYNC_RESOLVE_DEPENDENCIES   Push referenced contacts/products first (default true)
    SYNC_EVENTS_DIR             Directory for daily event files (unset: no file events)
    SYNC_RECORDS_DIR            JSON record store directory (unset: in-memory records)
    SYNC_LOG_JSON               JSON log output (default false)
    REMOTE_CONNECTOR            "http" or "sandbox" (default sandbox)
    REMOTE_BASE_URL             ERP API base URL for the http connector
    REMOTE_TIMEOUT_SECONDS      HTTP timeout (default 30)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.retry.classifier import RetryPolicy

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


@dataclass
class SyncSettings:
    """Runtime settings for a SyncContext."""
    db_path: str = str(PROJECT_ROOT / "sync.db")
    chunk_size: int = 10
    max_concurrency: int = 4
    job_timeout_seconds: float = 30.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    resolve_dependencies: bool = True
    events_dir: Optional[str] = None
    records_dir: Optional[str] = None
    log_json: bool = False

    remote_connector: str = "sandbox"
    remote_base_url: Optional[str] = None
    remote_timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.job_timeout_seconds <= 0:
            raise ValueError("job_timeout_seconds must be > 0")
        if self.retry_policy.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "SyncSettings":
        """Build settings from the environment (and .env, if present)."""
        env_path = env_file or PROJECT_ROOT / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        return cls(
            db_path=os.getenv("SYNC_DB_PATH", str(PROJECT_ROOT / "sync.db")),
            chunk_size=_env_int("SYNC_CHUNK_SIZE", 10),
            max_concurrency=_env_int("SYNC_MAX_CONCURRENCY", 4),
            job_timeout_seconds=_env_float("SYNC_JOB_TIMEOUT_SECONDS", 30.0),
            retry_policy=RetryPolicy(
                max_attempts=_env_int("SYNC_MAX_ATTEMPTS", 5),
                base_delay=_env_float("SYNC_BASE_DELAY_SECONDS", 1.0),
                max_delay=_env_float("SYNC_MAX_DELAY_SECONDS", 60.0),
            ),
            resolve_dependencies=_env_bool("SYNC_RESOLVE_DEPENDENCIES", True),
            events_dir=os.getenv("SYNC_EVENTS_DIR") or None,
            records_dir=os.getenv("SYNC_RECORDS_DIR") or None,
            log_json=_env_bool("SYNC_LOG_JSON", False),
            remote_connector=os.getenv("REMOTE_CONNECTOR", "sandbox"),
            remote_base_url=os.getenv("REMOTE_BASE_URL") or None,
            remote_timeout_seconds=_env_float("REMOTE_TIMEOUT_SECONDS", 30.0),
        )
