"""Fire incidents: aggregate model, SQL store, clustering and lifecycle."""

from .clustering import ClusteringOutcome, ClusteringResult, cluster_unassigned_detections
from .lifecycle import PurgeResult, SweepResult, end_stale_incidents, purge_ended_incidents, summarize
from .models import (
    STATUS_ACTIVE,
    STATUS_ENDED,
    TAG_EXISTING_INCIDENT,
    TAG_NEW_INCIDENT,
    DetectionAlreadyAssignedError,
    Incident,
    IncidentEndedError,
    IncidentError,
    IncidentStore,
    StoredDetection,
)

__all__ = [
    "STATUS_ACTIVE",
    "STATUS_ENDED",
    "TAG_EXISTING_INCIDENT",
    "TAG_NEW_INCIDENT",
    "ClusteringOutcome",
    "ClusteringResult",
    "DetectionAlreadyAssignedError",
    "Incident",
    "IncidentEndedError",
    "IncidentError",
    "IncidentStore",
    "PurgeResult",
    "StoredDetection",
    "SweepResult",
    "cluster_unassigned_detections",
    "end_stale_incidents",
    "purge_ended_incidents",
    "summarize",
]
