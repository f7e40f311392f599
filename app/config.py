"""Metricpipe — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Nango (integration connector) ──
    nango_secret_key: str = ""
    nango_base_url: str = "https://api.nango.dev"
    connector_timeout_seconds: float = 30.0

    # ── Database ──
    database_url: str = ""

    # ── AI Providers ──
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    sarvam_api_key: Optional[str] = None
    default_ai_provider: str = "claude"  # claude | openai | sarvam | heuristic
    openai_model: str = "gpt-4o-mini"
    claude_model: str = "claude-sonnet-4-20250514"

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    poll_interval_minutes: int = 15
    poll_batch_size: int = 50
    cron_secret: Optional[str] = None

    # ── Pipeline ──
    progress_window_seconds: int = 300
    dimension_sample_size: int = 100
    chart_data_point_limit: int = 1000
    pipeline_stale_after_seconds: int = 900
    pipeline_allow_concurrent_runs: bool = False
    shutdown_grace_seconds: float = 10.0

    # ── Dashboard cache ──
    dashboard_cache_ttl_seconds: int = 60
    cache_invalidation_delay_seconds: float = 0.0

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/metricpipe.db"
        return "sqlite:///./metricpipe.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
