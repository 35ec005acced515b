"""Common data structures for ingestion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict

CONFIDENCE_CLASSES = ("low", "normal", "high")


def compute_identity_key(
    latitude: float,
    longitude: float,
    acq_date: date,
    acq_time: int,
    source: str,
) -> str:
    """Deterministic per-detection key used as the upsert conflict target.

    Coordinates are rounded to 4 decimals (~11 m), so two distinct fires in the
    same pixel, pass and source share a key. That collision is accepted.
    """
    return (
        f"{round(latitude, 4):.4f}_{round(longitude, 4):.4f}_"
        f"{acq_date.isoformat()}_{acq_time:04d}_{source}"
    )


@dataclass(slots=True)
class DetectionRecord:
    """Normalized detection ready for DB insertion."""

    latitude: float
    longitude: float
    acq_date: date
    acq_time: int
    detected_at: datetime
    source: str
    satellite: str | None
    instrument: str | None
    version: str | None
    confidence: str | None
    daynight: str | None
    frp: float
    bright_ti4: float
    bright_ti5: float
    scan: float
    track: float

    @property
    def identity_key(self) -> str:
        return compute_identity_key(
            self.latitude, self.longitude, self.acq_date, self.acq_time, self.source
        )

    def to_parameters(self) -> Dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "detected_at": self.detected_at,
            "source": self.source,
            "satellite": self.satellite,
            "instrument": self.instrument,
            "version": self.version,
            "confidence": self.confidence,
            "daynight": self.daynight,
            "frp": self.frp,
            "bright_ti4": self.bright_ti4,
            "bright_ti5": self.bright_ti5,
            "scan": self.scan,
            "track": self.track,
        }
