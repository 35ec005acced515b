"""Notification requests and the external collaborators that resolve and deliver them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Protocol, Tuple

from incidents.fires.models import Incident

KIND_NEW_INCIDENT = "new_incident"
KIND_INCIDENT_UPDATE = "incident_update"
KIND_INCIDENT_ENDED = "incident_ended"
NotificationKind = Literal["new_incident", "incident_update", "incident_ended"]

GroupKey = Tuple[int, int, int]  # (user_id, location_id, incident_id)


class NotificationDeliveryError(Exception):
    """Raised by a notifier when a request could not be handed off at all."""


@dataclass(frozen=True, slots=True)
class Location:
    """A user's monitored place. Owned by the account service; read-only here."""

    id: int
    user_id: int
    name: str
    latitude: float
    longitude: float
    radius_m: float


@dataclass(frozen=True)
class NotificationRequest:
    user_id: int
    location_id: int
    incident_id: int
    kind: str
    new_detection_count: int
    incident_detection_count: int
    other_active_incident_count: int
    payload: Dict[str, Any] = field(default_factory=dict)
    # Same value on every retry of one batch; the outbox is unique per (batch_key, group).
    batch_key: str = ""

    @property
    def key(self) -> GroupKey:
        return (self.user_id, self.location_id, self.incident_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "location_id": self.location_id,
            "incident_id": self.incident_id,
            "kind": self.kind,
            "new_detection_count": self.new_detection_count,
            "incident_detection_count": self.incident_detection_count,
            "other_active_incident_count": self.other_active_incident_count,
            "payload": dict(self.payload),
            "batch_key": self.batch_key,
        }


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Per-device outcome reported by the notifier.

    `already_sent` means the same batch already handed this group off, so
    nothing new was queued.
    """

    sent: int = 0
    failed: int = 0
    already_sent: bool = False


class LocationStore(Protocol):
    def find_locations_near(self, latitude: float, longitude: float) -> List[Location]:
        """Locations whose own monitoring radius contains the point."""
        ...

    def find_locations_near_incident(self, incident: Incident, min_radius_m: float) -> List[Location]:
        """Locations within max(half the incident span, `min_radius_m`) of its center."""
        ...


class Notifier(Protocol):
    def send(self, request: NotificationRequest) -> DeliveryResult:
        """Hand off one request. A repeat of the same `(batch_key, key)` reports `already_sent`."""
        ...
