"""Configuration management for agent deployment."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Deployment tool settings.

    Every field can be overridden from the environment with the
    ``AGENT_DEPLOY_`` prefix, e.g. ``AGENT_DEPLOY_LOG_LEVEL=DEBUG``.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_DEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Release feed
    release_feed_url: str = Field(
        "https://api.github.com/repos/Velocidex/velociraptor",
        description="GitHub-style repository API URL serving /releases",
    )
    binary_name: str = Field("velociraptor", description="File name of the installed agent binary")
    service_label: str = Field(
        "com.velocidex.velociraptor",
        description="Stable service label, unchanged across versions",
    )

    # Download
    http_timeout_sec: float = Field(30.0, description="Timeout for release feed requests")
    download_timeout_sec: float = Field(600.0, description="Total timeout across download retries")
    download_max_retries: int = Field(3, ge=1)
    download_backoff_base: float = Field(0.5, ge=0.0)
    max_artifact_size_mb: int = Field(512, ge=1)

    # Readiness
    readiness_poll_interval_sec: float = Field(2.0, gt=0.0)
    readiness_poll_attempts: int = Field(15, ge=1)

    # Prerequisites
    required_disk_space_mb: int = Field(500, ge=0)

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("console")
    metrics_textfile: Optional[str] = Field(None, description="Write Prometheus metrics here after a run")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level == "WARN":
            level = "WARNING"
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got: {v}")
        return v

    @property
    def max_artifact_size_bytes(self) -> int:
        return self.max_artifact_size_mb * 1024 * 1024

    @property
    def required_disk_space_bytes(self) -> int:
        return self.required_disk_space_mb * 1024 * 1024
