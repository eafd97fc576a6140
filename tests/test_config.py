"""Tests for configuration module."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tripcomposer.config import Settings


class TestSettings:
    """Tests for the Settings configuration class."""

    @patch.dict(os.environ, {}, clear=True)
    def test_default_values(self) -> None:
        """Settings loads with sane defaults."""
        s = Settings(
            tripcomposer_env="test",
            database_url="sqlite+aiosqlite:///:memory:",
            tripcomposer_log_level="INFO",
            _env_file=None,
        )
        assert s.tripcomposer_env == "test"
        assert s.api_port == 8000
        assert s.event_bus_backend == "memory"
        assert s.matching_min_agents == 2
        assert s.matching_max_agents == 3
        assert s.requests_max_open_per_user == 3
        assert s.review_window_days == 30

    def test_data_dir_creation(self, tmp_path, monkeypatch) -> None:
        """data_dir property creates the directory."""
        monkeypatch.chdir(tmp_path)
        s = Settings(tripcomposer_env="test", database_url="sqlite+aiosqlite:///:memory:")
        assert s.data_dir.exists()

    def test_log_level_normalized(self) -> None:
        s = Settings(tripcomposer_env="test", tripcomposer_log_level="debug", _env_file=None)
        assert s.tripcomposer_log_level == "DEBUG"

    def test_unknown_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(tripcomposer_env="test", tripcomposer_log_level="LOUD", _env_file=None)

    def test_event_bus_backend_validated(self) -> None:
        assert Settings(event_bus_backend="REDIS", _env_file=None).event_bus_backend == "redis"
        with pytest.raises(ValidationError):
            Settings(event_bus_backend="kafka", _env_file=None)

    def test_min_agents_cannot_exceed_max(self) -> None:
        with pytest.raises(ValidationError, match="matching_min_agents"):
            Settings(matching_min_agents=4, matching_max_agents=3, _env_file=None)

    def test_commission_rate_bounds(self) -> None:
        """Commission must stay within 8-12%."""
        Settings(booking_platform_commission_rate=0.08, _env_file=None)
        with pytest.raises(ValidationError):
            Settings(booking_platform_commission_rate=0.2, _env_file=None)

    @patch.dict(os.environ, {}, clear=True)
    def test_production_requires_secret(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY"):
            Settings(tripcomposer_env="production", _env_file=None)
        s = Settings(tripcomposer_env="production", tripcomposer_secret_key="s3cr3t-value", _env_file=None)
        assert s.is_production

    def test_evidence_mime_types_parsing(self) -> None:
        s = Settings(dispute_allowed_evidence_types="image/png, application/pdf ,", _env_file=None)
        assert s.evidence_mime_types == ["image/png", "application/pdf"]

    @patch.dict(os.environ, {"MATCHING_MAX_ATTEMPTS": "5", "REVIEW_WINDOW_DAYS": "14"})
    def test_environment_overrides(self) -> None:
        s = Settings(_env_file=None)
        assert s.matching_max_attempts == 5
        assert s.review_window_days == 14
