from __future__ import annotations

import os
from importlib import metadata
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(REPO_ROOT / ".env", override=False)


def _get_project_version() -> str:
    try:
        return metadata.version("wildfire-incidents")
    except metadata.PackageNotFoundError:
        return "0.1.0"


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    app_name: str = "Wildfire Incidents"
    version: str = Field(default_factory=_get_project_version)
    environment: str = Field(default="dev", validation_alias="APP_ENV")

    # Database settings
    postgres_host: str = Field(default="localhost", validation_alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, validation_alias="POSTGRES_PORT")
    postgres_user: str = Field(default="wildfire", validation_alias="POSTGRES_USER")
    postgres_password: str = Field(default="wildfire", validation_alias="POSTGRES_PASSWORD")
    postgres_db: str = Field(default="wildfire", validation_alias="POSTGRES_DB")

    # Job queue
    redis_host: str = Field(default="localhost", validation_alias="REDIS_HOST")
    redis_port: int = Field(default=6379, validation_alias="REDIS_PORT")
    job_max_retries: int = Field(default=3, validation_alias="JOB_MAX_RETRIES")
    single_flight_ttl_seconds: int = Field(default=900, validation_alias="SINGLE_FLIGHT_TTL_SECONDS")

    # Clustering
    clustering_distance_m: float = Field(default=5000.0, validation_alias="CLUSTERING_DISTANCE_M")

    # Lifecycle
    incident_expiry_hours: int = Field(default=24, validation_alias="INCIDENT_EXPIRY_HOURS")
    incident_retention_days: int = Field(default=90, validation_alias="INCIDENT_RETENTION_DAYS")
    purge_batch_size: int = Field(default=1000, validation_alias="PURGE_BATCH_SIZE")
    purge_max_attempts: int = Field(default=3, validation_alias="PURGE_MAX_ATTEMPTS")

    # Notifications
    notification_min_radius_m: float = Field(default=5000.0, validation_alias="NOTIFICATION_MIN_RADIUS_M")

    @field_validator(
        "clustering_distance_m",
        "incident_expiry_hours",
        "incident_retention_days",
        "purge_batch_size",
        "purge_max_attempts",
        "job_max_retries",
        "single_flight_ttl_seconds",
        mode="after",
    )
    @classmethod
    def _must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def database_url(self) -> str:
        """Construct database URL from individual components."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        return os.getenv("REDIS_URL") or f"redis://{self.redis_host}:{self.redis_port}"


settings = AppSettings()
