"""Centralized settings for the StageGate engine.

Uses pydantic-settings to load from environment variables (prefixed
STAGEGATE_) with defaults suitable for a single-process deployment.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """StageGate settings loaded from environment variables."""

    # --- Database ---
    database_url: str = "sqlite:///stagegate.db"
    database_echo: bool = False

    # --- Engine ---
    auto_progress_actor: str = "system:auto-progress"
    automation_actor: str = "system:automation"
    max_automation_chain_depth: int = 10

    # --- Side effects ---
    webhook_timeout_seconds: float = 10.0
    webhook_max_retries: int = 3
    notification_max_retries: int = 2
    retry_backoff_seconds: float = 0.5

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"

    # --- Feature flags ---
    load_builtin_templates: bool = True

    model_config = {
        "env_prefix": "STAGEGATE_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
