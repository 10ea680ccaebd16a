"""
Application configuration using pydantic-settings.
Loads from environment variables with sensible defaults.
"""
from functools import lru_cache
from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Shiftline settings."""

    # Application
    app_name: str = "Shiftline Dashboard Engine"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Selection window (milliseconds unless noted)
    min_range_ms: int = 60 * 60 * 1000
    default_window_ms: int = 60 * 60 * 1000
    handle_tolerance_ms: int = 15 * 60 * 1000
    commit_debounce_s: float = 0.5

    # Cursor fan-out
    broadcast_rate_hz: float = 30.0

    # Normalization
    resolution_scan_limit: int = 2000
    source_timestamp_tolerance_ms: int = 12 * 60 * 60 * 1000

    # Upstream telemetry service
    telemetry_base_url: str = "http://localhost:8080"
    telemetry_drilling_path: str = "/reet_python/mccullochs/apis/get_drilling_json.php"
    telemetry_maintenance_path: str = "/reet_python/mccullochs/apis/get_maintenance_json.php"
    telemetry_timeout_s: float = 10.0

    # SSE
    sse_keepalive_s: int = 15

    @model_validator(mode='after')
    def check_window_bounds(self):
        """Reject window settings that cannot produce a usable selection."""
        if self.min_range_ms <= 0 or self.default_window_ms <= 0:
            raise ValueError("min_range_ms and default_window_ms must be positive")
        if self.broadcast_rate_hz <= 0:
            raise ValueError("broadcast_rate_hz must be positive")
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
