from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_files() -> list[str]:
    """Load .env from the project root, then a local .env in the working directory."""
    base = Path(__file__).resolve().parent.parent  # project root
    return [str(base / ".env"), ".env"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_env_files(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    env_name: str = "development"
    log_level: str = "INFO"

    # ── Backing store ────────────────────────────────────────────────────────
    firebase_project_id: str = ""
    firebase_credentials_path: str = ""  # service-account JSON; empty = ADC
    posts_collection: str = "posts"
    users_collection: str = "users"
    analytics_collection: str = "analytics"

    # ── Cache ────────────────────────────────────────────────────────────────
    cache_capacity: int = 500
    profile_ttl_s: float = 1800.0  # 30 min
    page_ttl_s: float = 120.0      # 2 min

    # ── Analytics batching ───────────────────────────────────────────────────
    batch_size: int = 10
    batch_timeout_ms: int = 100
    metrics_sample_rate: float = 0.1
    metrics_sink: Literal["log", "redis", "firestore"] = "log"
    redis_url: str = "redis://localhost:6379/0"

    # ── Housekeeping ─────────────────────────────────────────────────────────
    fetch_sample_size: int = 100
    cleanup_interval_s: float = 300.0  # 5 min
    subscription_limit: int = 50
