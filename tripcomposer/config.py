"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEV_SECRET = "change-me"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    tripcomposer_env: str = "development"
    tripcomposer_log_level: str = "INFO"
    tripcomposer_secret_key: str = _DEV_SECRET

    # ── API Server ───────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8000, ge=1, le=65535)

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///data/tripcomposer.db"
    redis_url: str = "redis://localhost:6379/0"

    # ── Event Bus ────────────────────────────────────────────────────
    event_bus_backend: str = "memory"
    event_bus_channel_prefix: str = "tripcomposer.events"
    event_handler_timeout_seconds: float = Field(default=30.0, gt=0)

    # ── JWT ──────────────────────────────────────────────────────────
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "tripcomposer-identity"
    jwt_audience: str = "tripcomposer"
    jwt_expire_minutes: int = Field(default=60, ge=1)

    # ── Matching ─────────────────────────────────────────────────────
    matching_min_agents: int = Field(default=2, ge=1, le=10)
    matching_max_agents: int = Field(default=3, ge=1, le=10)
    matching_response_timeout_hours: int = Field(default=24, ge=1, le=168)
    matching_star_min_rating: float = Field(default=4.5, ge=0, le=5)
    matching_star_min_completed_bookings: int = Field(default=10, ge=0)
    matching_max_attempts: int = Field(default=3, ge=1, le=10)
    matching_retry_cooldown_seconds: int = Field(default=300, ge=0)
    matching_enable_bench_fallback: bool = True
    matching_enable_geo_matching: bool = True
    matching_enable_specialization_matching: bool = True
    peak_season_enabled: bool = False
    peak_season_allow_single_agent: bool = False
    peak_season_timeout_hours: int = Field(default=48, ge=1, le=168)

    # ── Advisor Workload ─────────────────────────────────────────────
    workload_default_max_active_requests: int = Field(default=10, ge=1, le=50)
    workload_default_max_daily_matches: int = Field(default=15, ge=1)
    workload_default_max_weekly_matches: int = Field(default=75, ge=1)
    workload_default_auto_pause_threshold: float = Field(default=0.90, gt=0, le=1)
    workload_default_timezone: str = "Asia/Kolkata"
    workload_default_working_hours_start: str = "09:00"
    workload_default_working_hours_end: str = "18:00"

    # ── Travel Requests ──────────────────────────────────────────────
    requests_max_open_per_user: int = Field(default=3, ge=1)
    requests_daily_cap_per_user: int = Field(default=5, ge=1)
    requests_expiry_hours: int = Field(default=72, ge=1)

    # ── Bookings ─────────────────────────────────────────────────────
    booking_min_amount_cents: int = Field(default=1000, ge=100)
    booking_max_amount_cents: int = Field(default=10_000_000, le=100_000_000)
    booking_platform_commission_rate: float = Field(default=0.10, ge=0.08, le=0.12)
    booking_fee_rate: float = Field(default=0.029, ge=0, le=0.05)
    booking_fee_fixed_cents: int = Field(default=30, ge=0, le=100)

    # ── Disputes ─────────────────────────────────────────────────────
    dispute_window_hours: int = Field(default=168, ge=1)
    dispute_agent_response_hours: int = Field(default=48, ge=1)
    dispute_max_evidence_files: int = Field(default=10, ge=1)
    dispute_max_evidence_size_mb: int = Field(default=10, ge=1)
    dispute_allowed_evidence_types: str = "image/jpeg,image/png,application/pdf"
    dispute_max_per_user_per_day: int = Field(default=3, ge=1)
    dispute_auto_close_stale_days: int = Field(default=30, ge=1)
    dispute_escalation_threshold_hours: int = Field(default=72, ge=1)

    # ── Trust & Reviews ──────────────────────────────────────────────
    review_window_days: int = Field(default=30, ge=1)
    review_cooling_off_hours: int = Field(default=0, ge=0)
    score_decay_factor_days: int = Field(default=180, ge=1)
    score_min_reviews_for_public: int = Field(default=3, ge=1)

    @field_validator("tripcomposer_log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("event_bus_backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        backend = value.lower()
        if backend not in {"memory", "redis"}:
            raise ValueError("event_bus_backend must be 'memory' or 'redis'")
        return backend

    @model_validator(mode="after")
    def _validate_consistency(self) -> "Settings":
        if self.matching_min_agents > self.matching_max_agents:
            raise ValueError("matching_min_agents cannot exceed matching_max_agents")
        if self.tripcomposer_env == "production" and self.tripcomposer_secret_key == _DEV_SECRET:
            raise ValueError("TRIPCOMPOSER_SECRET_KEY must be set in production")
        return self

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def data_dir(self) -> Path:
        """Return the data directory, creating it if needed."""
        path = Path("data")
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def is_production(self) -> bool:
        return self.tripcomposer_env == "production"

    @property
    def evidence_mime_types(self) -> list[str]:
        """Parse the comma-separated evidence MIME types."""
        return [t.strip() for t in self.dispute_allowed_evidence_types.split(",") if t.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
