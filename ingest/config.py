"""Configuration for FIRMS fetching and detection storage."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, List

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(REPO_ROOT / ".env", override=False)

# VIIRS near-real-time products, one per satellite.
DEFAULT_SOURCES = ("VIIRS_SNPP_NRT", "VIIRS_NOAA20_NRT", "VIIRS_NOAA21_NRT")
MAX_DAY_RANGE = 10


class FIRMSIngestSettings(BaseSettings):
    """Environment-driven configuration for the FIRMS ingestion pipeline."""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    map_key: str = Field(default="", validation_alias="FIRMS_MAP_KEY")
    # Comma-separated in the environment, not JSON.
    sources: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SOURCES),
        validation_alias="FIRMS_SOURCES",
    )
    area: str = Field(default="world", validation_alias="FIRMS_AREA")
    day_range: int = Field(default=1, validation_alias="FIRMS_DAY_RANGE")
    request_timeout_seconds: float = Field(default=90.0, validation_alias="FIRMS_REQUEST_TIMEOUT_SECONDS")
    join_grace_seconds: float = Field(default=5.0, validation_alias="FIRMS_JOIN_GRACE_SECONDS")
    upsert_batch_size: int = Field(default=3000, validation_alias="FIRMS_UPSERT_BATCH_SIZE")

    @field_validator("sources", mode="before")
    @classmethod
    def _split_sources(cls, value: object) -> List[str]:
        if value is None:
            return list(DEFAULT_SOURCES)
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            sources = [str(segment).strip() for segment in value if str(segment).strip()]
            if not sources:
                raise ValueError("FIRMS_SOURCES must name at least one source.")
            return sources
        raise ValueError("FIRMS_SOURCES must be a comma-separated string or list.")

    @field_validator("area", mode="before")
    @classmethod
    def _normalize_area(cls, value: object) -> str:
        """Accept `world` or a `west,south,east,north` bbox."""
        if value is None:
            return "world"
        if not isinstance(value, str):
            raise ValueError("FIRMS_AREA must be a string")
        cleaned = value.strip()
        if cleaned.lower() == "world":
            return "world"
        parts = [float(p.strip()) for p in cleaned.split(",")]
        if len(parts) != 4:
            raise ValueError("FIRMS_AREA must be 'world' or 'west,south,east,north'")
        west, south, east, north = parts
        if west >= east or south >= north:
            raise ValueError("FIRMS_AREA bbox must satisfy west < east and south < north")
        return ",".join(str(p) for p in parts)

    @field_validator("day_range", mode="after")
    @classmethod
    def _validate_day_range(cls, value: int) -> int:
        if not 1 <= value <= MAX_DAY_RANGE:
            raise ValueError(f"FIRMS_DAY_RANGE must be between 1 and {MAX_DAY_RANGE}")
        return value

    @field_validator("request_timeout_seconds", "join_grace_seconds", "upsert_batch_size", mode="after")
    @classmethod
    def _must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def resolved_area(self) -> str:
        return self.area

    @property
    def map_key_configured(self) -> bool:
        # FIRMS MAP_KEYs are 32-character tokens; anything short is a placeholder.
        return len(self.map_key) > 10


settings = FIRMSIngestSettings()
