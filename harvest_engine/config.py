"""Centralized configuration loaded from .env."""

import os
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

# Persistent disk mount (or local fallback)
_data_env = os.getenv("DATA_DIR", "")
_DATA_DIR = Path(_data_env) if _data_env else None


def _csv(value: str) -> list[str]:
    return [v.strip().lower() for v in value.split(",") if v.strip()]


class _Config:
    # Paths
    project_root: Path = Path(__file__).resolve().parent.parent

    db_path: Path = (
        _DATA_DIR / "harvest.db" if _DATA_DIR and _DATA_DIR.is_dir()
        else project_root / "harvest_engine" / "db" / "harvest.db"
    )
    # Bloom filter + batched store files, one sub-directory per job
    storage_dir: Path = Path(os.getenv("STORAGE_DIR", "")) if os.getenv("STORAGE_DIR") else (
        _DATA_DIR / "storage" if _DATA_DIR and _DATA_DIR.is_dir()
        else project_root / "storage"
    )

    # Search provider (SerpApi)
    serpapi_key: str = os.getenv("SERPAPI_KEY", "")
    search_engine: str = os.getenv("SEARCH_ENGINE", "google")
    search_language: str = os.getenv("SEARCH_LANGUAGE", "en")
    search_num_results: int = int(os.getenv("SEARCH_NUM_RESULTS", "20"))
    search_timeout: int = int(os.getenv("SEARCH_TIMEOUT", "30"))
    search_result_types: list[str] = _csv(os.getenv("SEARCH_RESULT_TYPES", "web,places"))
    default_search_depth: int = int(os.getenv("DEFAULT_SEARCH_DEPTH", "10"))

    # Page fetching
    fetch_max_in_flight: int = int(os.getenv("FETCH_MAX_IN_FLIGHT", "40"))
    fetch_timeout: float = float(os.getenv("FETCH_TIMEOUT", "10"))
    fetch_connect_timeout: float = float(os.getenv("FETCH_CONNECT_TIMEOUT", "5"))
    fetch_max_redirects: int = int(os.getenv("FETCH_MAX_REDIRECTS", "3"))

    # Page filter bounds (bytes)
    page_min_bytes: int = int(os.getenv("PAGE_MIN_BYTES", "2048"))
    page_max_bytes: int = int(os.getenv("PAGE_MAX_BYTES", "5242880"))

    # Dedup
    bloom_expected_elements: int = int(os.getenv("BLOOM_EXPECTED_ELEMENTS", "1000000"))
    bloom_false_positive_rate: float = float(os.getenv("BLOOM_FALSE_POSITIVE_RATE", "0.01"))
    store_batch_size: int = int(os.getenv("STORE_BATCH_SIZE", "1000"))
    extra_fake_domains: list[str] = _csv(os.getenv("EXTRA_FAKE_DOMAINS", ""))

    # Workers
    worker_max_tasks: int = int(os.getenv("WORKER_MAX_TASKS", "50"))
    worker_max_idle_checks: int = int(os.getenv("WORKER_MAX_IDLE_CHECKS", "10"))
    worker_idle_sleep: float = float(os.getenv("WORKER_IDLE_SLEEP", "1.0"))
    extract_parallelism: int = int(os.getenv("EXTRACT_PARALLELISM", "10"))

    # Tasks stuck in 'processing' longer than this go back to 'pending'
    task_lease_seconds: int = int(os.getenv("TASK_LEASE_SECONDS", "900"))
    # A task whose lease expires this many times is failed instead of requeued
    task_max_attempts: int = int(os.getenv("TASK_MAX_ATTEMPTS", "3"))

    # Supervisor
    supervisor_poll_seconds: float = float(os.getenv("SUPERVISOR_POLL_SECONDS", "2.0"))
    supervisor_max_per_type: int = int(os.getenv("SUPERVISOR_MAX_PER_TYPE", "10"))

    # Operator alerts (Telegram push is optional)
    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_chat_id: str = os.getenv("TELEGRAM_CHAT_ID", "")


cfg = _Config()
