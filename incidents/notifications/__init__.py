"""Notification orchestration (grouping, payloads) and its storage-backed collaborators."""

from .models import (
    KIND_INCIDENT_ENDED,
    KIND_INCIDENT_UPDATE,
    KIND_NEW_INCIDENT,
    DeliveryResult,
    Location,
    LocationStore,
    NotificationDeliveryError,
    NotificationRequest,
    Notifier,
)
from .orchestrator import OrchestrationResult, orchestrate_detection_batch, orchestrate_ended_incidents

__all__ = [
    "KIND_INCIDENT_ENDED",
    "KIND_INCIDENT_UPDATE",
    "KIND_NEW_INCIDENT",
    "DeliveryResult",
    "Location",
    "LocationStore",
    "NotificationDeliveryError",
    "NotificationRequest",
    "Notifier",
    "OrchestrationResult",
    "orchestrate_detection_batch",
    "orchestrate_ended_incidents",
]
