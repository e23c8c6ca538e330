"""Tests for GeoforgeSettings — defaults and GEOFORGE_* overrides."""

from __future__ import annotations

from geoforge.config import GeoforgeSettings
from geoforge.core.fetcher import FetchOptions


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GEOFORGE_LOG_LEVEL", raising=False)
        cfg = GeoforgeSettings(_env_file=None)
        assert cfg.log_level == "INFO"
        assert cfg.ledger_name == "ledger.db"
        assert cfg.default_service_timeout is None
        assert cfg.fetch_max_retries >= 1

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("GEOFORGE_FETCH_MAX_RETRIES", "9")
        monkeypatch.setenv("GEOFORGE_DEFAULT_SERVICE_TIMEOUT", "600")
        monkeypatch.setenv("GEOFORGE_LOG_LEVEL", "DEBUG")
        cfg = GeoforgeSettings(_env_file=None)
        assert cfg.fetch_max_retries == 9
        assert cfg.default_service_timeout == 600.0
        assert cfg.log_level == "DEBUG"

    def test_fetch_options_follow_settings(self):
        cfg = GeoforgeSettings(_env_file=None, fetch_max_retries=7, progress_interval=0.5)
        options = FetchOptions.from_settings(cfg, force=True)
        assert options.max_retries == 7
        assert options.progress_interval_seconds == 0.5
        assert options.force
        assert not options.keep_partial_on_failure
