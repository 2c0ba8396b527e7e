"""Engine settings, read from IGNITION_* environment variables or a .env file."""

from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IgnitionSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IGNITION_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    # Used for actions that do not declare retryDelay.
    default_retry_delay_ms: int = Field(1000, ge=0)
    # Upper bound on any action's retryCount.
    max_retry_count: int = Field(10, ge=0)

    # Directory for JsonFileStore; records stay in memory when unset.
    store_path: Optional[str] = None
    persist_progress: bool = True

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()
