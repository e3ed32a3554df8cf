"""
Trendscope — Configuration Management

Pydantic Settings: loads from .env, validates all configuration at startup.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from trendscope.models import TieBreak


class Settings(BaseSettings):
    """Configuration loaded from environment variables (prefix ``TRENDSCOPE_``)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TRENDSCOPE_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"

    # ── Pattern Detection ──
    pattern_window: int = Field(default=20, ge=7)
    pattern_min_window: int = Field(default=7, ge=7)
    pattern_step: int = Field(default=1, ge=1)
    swing_order: int = Field(default=1, ge=1)
    slope_threshold: float = 0.1
    cluster_atr_multiple: float = 0.5
    target_distance_multiple: float = 1.5
    target_atr_multiple: float = 7.0
    target_min_move_pct: float = 5.0
    stop_buffer_pct: float = 1.0

    # ── Multi-Timeframe Confirmation ──
    confirmation_inside_channel_override: bool = True

    # ── Backtest ──
    backtest_horizon: int = Field(default=30, ge=1)
    backtest_tie_break: TieBreak = TieBreak.STOP_FIRST

    # ── Scan Orchestration ──
    scan_max_concurrency: int = Field(default=5, ge=1)
    scan_batch_delay_seconds: float = Field(default=1.0, ge=0.0)
    scan_lookback_bars: int = 300

    # ── Cache ──
    cache_ttl_seconds: int = 300
    redis_url: str = "redis://localhost:6379/0"

    # ── Bar Provider ──
    provider_max_retries: int = 3
    provider_failure_threshold: int = 5
    provider_recovery_timeout: float = 30.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance, created once and shared."""
    return Settings()
