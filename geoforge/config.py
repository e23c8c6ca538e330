"""Runtime settings — env-driven via pydantic-settings.

Reads from a .env file and GEOFORGE_* environment variables.  These are
operator knobs that apply to every pipeline; per-stage and per-service
values in the pipeline definition take precedence where both exist.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class GeoforgeSettings(BaseSettings):
    """Operator settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export GEOFORGE_LOG_LEVEL=DEBUG
        export GEOFORGE_FETCH_MAX_RETRIES=10
        export GEOFORGE_DEFAULT_SERVICE_TIMEOUT=600
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="GEOFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Bookkeeping, relative to the pipeline's state dir
    ledger_name: str = "ledger.db"
    lock_name: str = "run.lock"

    # Fetcher
    fetch_max_retries: int = 5
    fetch_backoff_base: float = 2.0
    fetch_backoff_max: float = 60.0
    fetch_connect_timeout: float = 15.0
    fetch_stall_timeout: float = 60.0
    fetch_chunk_size: int = 1024 * 1024
    progress_interval: float = 1.0

    # Stage executor
    diagnostic_tail_lines: int = 50
    stage_kill_grace_seconds: float = 10.0

    # Readiness gate; None means use each service's own timeout
    default_service_timeout: float | None = None


# Module-level singleton: import as `from geoforge.config import settings`
settings = GeoforgeSettings()
