"""Greedy nearest-incident clustering of unassigned detections.

Each unassigned detection (oldest first, then by id) joins the closest active
incident whose bounds, grown by the clustering distance, contain it and which
saw a detection within the expiry window; otherwise it seeds a new incident.
"Closest" is the haversine distance to the incident's bounding-box center; an
exact tie goes to the lowest incident id.

The pass is safe to re-run: detections that already carry an incident id are
never selected again. Only one pass may run at a time; the job layer enforces
that with a single-flight lock.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from incidents.core.geo import haversine_m
from incidents.fires.models import (
    TAG_EXISTING_INCIDENT,
    TAG_NEW_INCIDENT,
    Incident,
    IncidentError,
    IncidentStore,
    StoredDetection,
)
from ingest.logging_utils import log_event

LOGGER = logging.getLogger(__name__)

DEFAULT_CLUSTERING_DISTANCE_M = 5000.0
DEFAULT_EXPIRY_HOURS = 24


@dataclass(frozen=True, slots=True)
class ClusteringOutcome:
    """Per-detection result: which incident it joined and whether that incident is new."""

    detection: StoredDetection
    incident_id: int
    tag: str

    @property
    def is_new_incident(self) -> bool:
        return self.tag == TAG_NEW_INCIDENT

    def to_dict(self) -> Dict[str, Any]:
        """Plain form used as a queued job argument."""
        d = self.detection
        return {
            "detection_id": d.id,
            "latitude": d.latitude,
            "longitude": d.longitude,
            "detected_at": d.detected_at.isoformat(),
            "frp": d.frp,
            "incident_id": self.incident_id,
            "tag": self.tag,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusteringOutcome":
        detection = StoredDetection(
            id=int(data["detection_id"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            detected_at=datetime.fromisoformat(data["detected_at"]),
            frp=float(data.get("frp") or 0.0),
            incident_id=int(data["incident_id"]),
        )
        return cls(detection=detection, incident_id=int(data["incident_id"]), tag=data["tag"])


@dataclass(frozen=True, slots=True)
class ClusteringError:
    detection_id: int
    error: str


@dataclass
class ClusteringResult:
    outcomes: List[ClusteringOutcome] = field(default_factory=list)
    errors: List[ClusteringError] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def processed(self) -> int:
        return len(self.outcomes) + len(self.errors)

    @property
    def incidents_created(self) -> int:
        return sum(1 for o in self.outcomes if o.is_new_incident)

    @property
    def touched_incident_ids(self) -> List[int]:
        return sorted({o.incident_id for o in self.outcomes})

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "detections_processed": self.processed,
            "detections_assigned": len(self.outcomes),
            "incidents_created": self.incidents_created,
            "incidents_touched": len(self.touched_incident_ids),
            "errors": [{"detection_id": e.detection_id, "error": e.error} for e in self.errors],
            "duration_ms": self.duration_ms,
        }


def select_closest_incident(
    candidates: Sequence[Incident],
    latitude: float,
    longitude: float,
) -> Optional[Incident]:
    """Closest candidate by center distance; lowest id wins an exact tie."""
    best: Optional[Incident] = None
    best_key: tuple[float, int] | None = None
    for incident in candidates:
        center_lat, center_lon = incident.center
        key = (haversine_m(latitude, longitude, center_lat, center_lon), int(incident.id or 0))
        if best_key is None or key < best_key:
            best, best_key = incident, key
    return best


def assign_detection(
    store: IncidentStore,
    detection: StoredDetection,
    *,
    clustering_distance_m: float,
    expiry: timedelta,
) -> ClusteringOutcome:
    """Attach one detection to its closest candidate incident or seed a new one."""
    candidates = store.find_candidate_incidents(
        detection.latitude,
        detection.longitude,
        distance_m=clustering_distance_m,
        active_since=detection.detected_at - expiry,
    )
    target = select_closest_incident(candidates, detection.latitude, detection.longitude)

    if target is None:
        created = store.create_incident(Incident.seed(detection), detection)
        return ClusteringOutcome(detection=detection, incident_id=int(created.id), tag=TAG_NEW_INCIDENT)

    target.absorb(detection)
    store.attach_detection(target, detection)
    return ClusteringOutcome(detection=detection, incident_id=int(target.id), tag=TAG_EXISTING_INCIDENT)


def cluster_unassigned_detections(
    store: IncidentStore,
    *,
    clustering_distance_m: float = DEFAULT_CLUSTERING_DISTANCE_M,
    expiry_hours: float = DEFAULT_EXPIRY_HOURS,
    limit: Optional[int] = None,
) -> ClusteringResult:
    """Run one clustering pass over every detection without an incident.

    Domain errors on a single detection are collected in `result.errors`; storage
    errors propagate so the job can be retried.
    """
    if clustering_distance_m <= 0:
        raise ValueError("clustering_distance_m must be positive.")

    started = time.monotonic()
    expiry = timedelta(hours=expiry_hours)
    detections = store.list_unassigned_detections(limit=limit)
    result = ClusteringResult()

    for detection in detections:
        try:
            outcome = assign_detection(
                store,
                detection,
                clustering_distance_m=clustering_distance_m,
                expiry=expiry,
            )
        except IncidentError as exc:
            log_event(
                LOGGER,
                "clustering.detection",
                "Detection could not be clustered",
                level="warning",
                detection_id=detection.id,
                error=str(exc),
            )
            result.errors.append(ClusteringError(detection_id=detection.id, error=str(exc)))
            continue
        result.outcomes.append(outcome)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    log_event(
        LOGGER,
        "clustering.pass",
        "Clustering pass finished",
        **result.to_metadata(),
    )
    return result
