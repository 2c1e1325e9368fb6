"""KPIFlow — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Integration proxy ──
    integration_proxy_url: str = "https://api.nango.dev"
    integration_secret_key: str = ""
    integration_timeout_seconds: float = 30.0

    # ── Database ──
    database_url: str = ""

    # ── AI Providers ──
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    sarvam_api_key: Optional[str] = None
    default_ai_provider: str = "claude"  # claude | sarvam
    ai_max_tokens: int = 4000

    # ── Sandbox ──
    sandbox_timeout_seconds: float = 5.0
    sandbox_memory_mb: int = 256

    # ── Scheduler ──
    scheduler_enabled: bool = True
    poll_interval_minutes: int = 15
    poll_batch_size: int = 50
    poll_concurrency: int = 1
    refresh_lock_timeout_minutes: int = 15  # Locks older than this are stale

    # ── App ──
    log_level: str = "INFO"
    cors_origins: str = "*"

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/kpiflow.db"
        return "sqlite:///./kpiflow.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
