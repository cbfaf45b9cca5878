from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Scralytics"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8788
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/scralytics.db"
    sqlite_busy_timeout_sec: float = 30.0
    data_dir: Path = Path("./data")

    scraper_backend: str = ""

    max_concurrent_jobs: int = 3
    queue_poll_interval_sec: float = 10.0
    failed_restart_window_min: int = 60
    failed_restart_limit: int = 5
    failed_restart_max_attempts: int = 1

    max_retries: int = 3
    retry_base_delay_sec: float = 5.0
    retry_max_delay_sec: float = 30.0
    retry_jitter_ratio: float = 0.1
    account_retry_delay_sec: float = 60.0
    url_processing_delay_sec: float = 2.0
    pause_poll_interval_sec: float = 1.0
    job_max_consecutive_failures: int = 5
    eligibility_wait_cap_sec: float = 300.0
    max_eligibility_waits: int = 12

    default_rotation_policy: str = "load_balance"
    account_max_consecutive_failures: int = 5
    rate_limit_cooldown_min: int = 15
    rate_limit_cooldown_max_min: int = 60
    soft_cooldown_min: int = 30
    blocked_duration_hours: int = 24
    default_daily_request_limit: int = 100

    result_text_max_length: int = 1000

    cors_origins: str = "http://127.0.0.1:8788"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("default_rotation_policy")
    @classmethod
    def validate_rotation_policy(cls, value: str) -> str:
        allowed = {"round_robin", "load_balance", "manual"}
        if value not in allowed:
            raise ValueError(f"default_rotation_policy must be one of {sorted(allowed)}")
        return value

    @field_validator("max_retries", "max_concurrent_jobs")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
