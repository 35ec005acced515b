"""Incident aggregate, stored detections and the store interface they live behind."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence, Tuple

from incidents.core.geo import Bounds

STATUS_ACTIVE = "active"
STATUS_ENDED = "ended"
IncidentStatus = Literal["active", "ended"]

TAG_NEW_INCIDENT = "new_incident"
TAG_EXISTING_INCIDENT = "existing_incident"
ClusteringTag = Literal["new_incident", "existing_incident"]


class IncidentError(Exception):
    """Domain error affecting a single detection or incident."""


class IncidentEndedError(IncidentError):
    """Raised when a detection would attach to an incident that has ended."""


class DetectionAlreadyAssignedError(IncidentError):
    """Raised when a detection was assigned by another writer in the meantime."""


@dataclass(frozen=True, slots=True)
class StoredDetection:
    """A persisted detection as seen by the clustering engine and orchestrator."""

    id: int
    latitude: float
    longitude: float
    detected_at: datetime
    frp: float = 0.0
    incident_id: Optional[int] = None


@dataclass(slots=True)
class Incident:
    """Spatio-temporal cluster of detections with incrementally maintained aggregates.

    Invariants
    - `fire_count`, `total_frp`, `min_frp`, `max_frp` always describe exactly the
      member detections; `avg_frp == total_frp / fire_count`.
    - `last_detected_at` never decreases.
    - Once `status == "ended"`, `ended_at` is set and `absorb` refuses new members.
    """

    id: Optional[int]
    status: str
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float
    fire_count: int
    first_detected_at: datetime
    last_detected_at: datetime
    min_frp: float
    max_frp: float
    total_frp: float
    avg_frp: float
    ended_at: Optional[datetime] = None
    ended_notified_at: Optional[datetime] = None

    @classmethod
    def seed(cls, detection: StoredDetection) -> "Incident":
        frp = detection.frp
        return cls(
            id=None,
            status=STATUS_ACTIVE,
            min_lat=detection.latitude,
            max_lat=detection.latitude,
            min_lon=detection.longitude,
            max_lon=detection.longitude,
            fire_count=1,
            first_detected_at=detection.detected_at,
            last_detected_at=detection.detected_at,
            min_frp=frp,
            max_frp=frp,
            total_frp=frp,
            avg_frp=frp,
        )

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.min_lat, self.max_lat, self.min_lon, self.max_lon)

    @property
    def center(self) -> Tuple[float, float]:
        return self.bounds.center

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def absorb(self, detection: StoredDetection) -> None:
        """Fold one more detection into the aggregates in place."""
        if not self.is_active:
            raise IncidentEndedError(f"Incident {self.id} has ended; detection {detection.id} cannot attach")

        bounds = self.bounds.including(detection.latitude, detection.longitude)
        self.min_lat, self.max_lat = bounds.min_lat, bounds.max_lat
        self.min_lon, self.max_lon = bounds.min_lon, bounds.max_lon

        self.fire_count += 1
        if detection.detected_at > self.last_detected_at:
            self.last_detected_at = detection.detected_at
        if detection.detected_at < self.first_detected_at:
            self.first_detected_at = detection.detected_at

        self.min_frp = min(self.min_frp, detection.frp)
        self.max_frp = max(self.max_frp, detection.frp)
        self.total_frp += detection.frp
        self.avg_frp = self.total_frp / self.fire_count

    def to_summary(self) -> Dict[str, Any]:
        center_lat, center_lon = self.center
        return {
            "incident_id": self.id,
            "status": self.status,
            "center_lat": center_lat,
            "center_lon": center_lon,
            "fire_count": self.fire_count,
            "max_frp": self.max_frp,
            "avg_frp": round(self.avg_frp, 2),
            "first_detected_at": self.first_detected_at.isoformat(),
            "last_detected_at": self.last_detected_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class IncidentStore(Protocol):
    """Persistence used by clustering, lifecycle and notification passes."""

    def list_unassigned_detections(self, *, limit: Optional[int] = None) -> List[StoredDetection]:
        ...

    def find_candidate_incidents(
        self,
        latitude: float,
        longitude: float,
        *,
        distance_m: float,
        active_since: datetime,
    ) -> List[Incident]:
        ...

    def create_incident(self, incident: Incident, detection: StoredDetection) -> Incident:
        ...

    def attach_detection(self, incident: Incident, detection: StoredDetection) -> None:
        ...

    def get_incidents(self, incident_ids: Sequence[int]) -> List[Incident]:
        ...

    def list_incidents_to_end(self, cutoff: datetime) -> List[Incident]:
        ...

    def mark_ended(self, incident_id: int, ended_at: datetime) -> bool:
        ...

    def mark_ended_notified(self, incident_id: int, notified_at: datetime) -> bool:
        ...

    def list_unnotified_ended_incident_ids(self, *, limit: int) -> List[int]:
        ...

    def list_purgeable_incident_ids(self, cutoff: datetime, *, limit: int) -> List[int]:
        ...

    def delete_incidents(self, incident_ids: Sequence[int]) -> Tuple[int, int]:
        ...

    def count_incident_detections(self, incident_id: int) -> int:
        ...

    def count_active_incidents_near(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        exclude_incident_id: Optional[int] = None,
    ) -> int:
        ...

    def summary_counts(self) -> Dict[str, int]:
        ...
