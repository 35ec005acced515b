"""Turn clustering output or ended incidents into one request per (user, location, incident).

Grouping happens before anything is sent: every detection in the batch is
resolved to the locations whose radius contains it, then folded into a group
keyed by `(user_id, location_id, incident_id)`. Each group yields exactly one
`NotificationRequest`, so re-running on the same batch cannot emit two requests
for the same triple within that run.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from incidents.fires.clustering import ClusteringOutcome
from incidents.fires.models import STATUS_ENDED, Incident, IncidentStore
from incidents.notifications.models import (
    KIND_INCIDENT_ENDED,
    KIND_INCIDENT_UPDATE,
    KIND_NEW_INCIDENT,
    GroupKey,
    Location,
    LocationStore,
    NotificationDeliveryError,
    NotificationRequest,
    Notifier,
)
from ingest.logging_utils import log_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MIN_RADIUS_M = 5000.0
DEFAULT_EXPIRY_HOURS = 24
# An incident ends once, so its ended alerts share one batch key for good.
ENDED_BATCH_KEY = "incident_ended"


@dataclass
class _Group:
    location: Location
    incident_id: int
    detection_ids: Set[int] = field(default_factory=set)
    has_new_incident: bool = False


@dataclass
class OrchestrationResult:
    batch_type: str
    requests: List[NotificationRequest] = field(default_factory=list)
    incidents_processed: int = 0
    devices_sent: int = 0
    devices_failed: int = 0
    already_sent: int = 0
    delivered_keys: List[GroupKey] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def users_notified(self) -> int:
        return len({key[0] for key in self.delivered_keys})

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "batch_type": self.batch_type,
            "incidents_processed": self.incidents_processed,
            "notifications_built": len(self.requests),
            "notifications_sent": len(self.delivered_keys),
            "notifications_already_sent": self.already_sent,
            "users_notified": self.users_notified,
            "devices_sent": self.devices_sent,
            "devices_failed": self.devices_failed,
            "errors": dict(self.errors),
            "duration_ms": self.duration_ms,
            "duration_seconds": round(self.duration_ms / 1000, 1),
        }


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _active_context(other_active: int) -> str:
    if other_active <= 0:
        return ""
    return f" (1 of {other_active + 1} active incidents)"


def build_update_payload(
    incident: Incident,
    location: Location,
    *,
    kind: str,
    new_count: int,
    total_count: int,
    other_active: int,
) -> Dict[str, Any]:
    title = f"Fire Alert: {_plural(new_count, 'new fire')} detected"
    if new_count == 1:
        body = f"A new fire has been detected near {location.name}"
    else:
        body = f"{new_count} new fires have been detected near {location.name}"
    body = f"{body} ({total_count} total){_active_context(other_active)}."
    if kind == KIND_NEW_INCIDENT:
        title = f"{title} - new incident"
    return {
        "title": title,
        "body": body,
        "location_name": location.name,
        "incident": incident.to_summary(),
    }


def build_ended_payload(
    incident: Incident,
    location: Location,
    *,
    other_active: int,
    expiry_hours: float = DEFAULT_EXPIRY_HOURS,
) -> Dict[str, Any]:
    hours = int(expiry_hours) if float(expiry_hours).is_integer() else expiry_hours
    body = (
        f"The fire incident near {location.name} has ended. "
        f"No new fires have been detected for {hours} hours."
    )
    if other_active > 0:
        body = f"{body} {_plural(other_active, 'other active incident')} still nearby."
    return {
        "title": "Fire Incident Ended",
        "body": body,
        "location_name": location.name,
        "incident": incident.to_summary(),
    }


def _deliver(notifier: Notifier, request: NotificationRequest, result: OrchestrationResult) -> bool:
    """Send one request; a failure is recorded against its group and never raised."""
    key_repr = "{}:{}:{}".format(*request.key)
    try:
        delivery = notifier.send(request)
    except NotificationDeliveryError as exc:
        log_event(
            LOGGER,
            "notifications.delivery",
            "Notification delivery failed",
            level="error",
            user_id=request.user_id,
            location_id=request.location_id,
            incident_id=request.incident_id,
            error=str(exc),
        )
        result.errors[key_repr] = str(exc)
        return False

    if delivery.already_sent:
        result.already_sent += 1
        result.delivered_keys.append(request.key)
        return True

    result.devices_sent += delivery.sent
    result.devices_failed += delivery.failed
    if delivery.failed:
        LOGGER.warning(
            "Some notification devices failed for user %s: sent=%s failed=%s",
            request.user_id,
            delivery.sent,
            delivery.failed,
        )
    result.delivered_keys.append(request.key)
    return True


def detection_batch_key(tagged: Iterable[ClusteringOutcome]) -> str:
    """Stable key for a clustering batch: a digest of its sorted detection ids.

    A detection is assigned once, so the same ids only ever recur when the same
    batch is retried.
    """
    ids = sorted({int(outcome.detection.id) for outcome in tagged})
    digest = hashlib.sha256(",".join(str(i) for i in ids).encode("ascii")).hexdigest()
    return f"detections:{digest}"


def group_detection_batch(
    tagged: Iterable[ClusteringOutcome],
    location_store: LocationStore,
) -> Dict[GroupKey, _Group]:
    """Resolve each detection to its locations and fold into (user, location, incident) groups."""
    groups: Dict[GroupKey, _Group] = {}
    seen_detections: Set[int] = set()
    for outcome in tagged:
        detection = outcome.detection
        if detection.id in seen_detections:
            continue
        seen_detections.add(detection.id)

        for location in location_store.find_locations_near(detection.latitude, detection.longitude):
            key = (location.user_id, location.id, outcome.incident_id)
            group = groups.get(key)
            if group is None:
                group = groups[key] = _Group(location=location, incident_id=outcome.incident_id)
            group.detection_ids.add(detection.id)
            group.has_new_incident = group.has_new_incident or outcome.is_new_incident
    return groups


def orchestrate_detection_batch(
    tagged: Sequence[ClusteringOutcome],
    *,
    incident_store: IncidentStore,
    location_store: LocationStore,
    notifier: Notifier,
    batch_key: Optional[str] = None,
) -> OrchestrationResult:
    """Notify every affected (user, location, incident) about this clustering batch once.

    Requests carry `batch_key` (default: `detection_batch_key(tagged)`), so a
    retry after a partial failure skips the groups that were already handed off.
    """
    started = time.monotonic()
    result = OrchestrationResult(batch_type="detection_batch")
    batch_key = batch_key or detection_batch_key(tagged)

    groups = group_detection_batch(tagged, location_store)
    incident_ids = sorted({group.incident_id for group in groups.values()})
    incidents = {int(i.id): i for i in incident_store.get_incidents(incident_ids)}
    result.incidents_processed = len(incidents)

    for key in sorted(groups):
        group = groups[key]
        incident = incidents.get(group.incident_id)
        if incident is None:
            result.errors["{}:{}:{}".format(*key)] = f"Incident {group.incident_id} no longer exists"
            continue

        kind = KIND_NEW_INCIDENT if group.has_new_incident else KIND_INCIDENT_UPDATE
        new_count = len(group.detection_ids)
        total_count = incident_store.count_incident_detections(group.incident_id)
        location = group.location
        other_active = incident_store.count_active_incidents_near(
            location.latitude,
            location.longitude,
            location.radius_m,
            exclude_incident_id=group.incident_id,
        )
        request = NotificationRequest(
            user_id=location.user_id,
            location_id=location.id,
            incident_id=group.incident_id,
            kind=kind,
            new_detection_count=new_count,
            incident_detection_count=total_count,
            other_active_incident_count=other_active,
            payload=build_update_payload(
                incident,
                location,
                kind=kind,
                new_count=new_count,
                total_count=total_count,
                other_active=other_active,
            ),
            batch_key=batch_key,
        )
        result.requests.append(request)
        _deliver(notifier, request, result)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    log_event(LOGGER, "notifications.batch", "Detection batch orchestrated", **result.to_metadata())
    return result


def orchestrate_ended_incidents(
    incident_ids: Sequence[int],
    *,
    incident_store: IncidentStore,
    location_store: LocationStore,
    notifier: Notifier,
    min_radius_m: float = DEFAULT_MIN_RADIUS_M,
    expiry_hours: float = DEFAULT_EXPIRY_HOURS,
    now: Optional[datetime] = None,
) -> OrchestrationResult:
    """Send one `incident_ended` request per affected (user, location) of each ended incident.

    An incident is stamped `ended_notified_at` once all of its groups were handed
    to the notifier; that stamp is what allows purge to delete it. Incidents
    already stamped are skipped. Groups handed off by an earlier, partially failed
    run come back `already_sent` and are not queued again.
    """
    started = time.monotonic()
    now = now or datetime.now(timezone.utc)
    result = OrchestrationResult(batch_type=KIND_INCIDENT_ENDED)

    for incident in incident_store.get_incidents(sorted(set(incident_ids))):
        if incident.status != STATUS_ENDED or incident.ended_notified_at is not None:
            continue
        result.incidents_processed += 1

        locations: Dict[GroupKey, Location] = {}
        for location in location_store.find_locations_near_incident(incident, min_radius_m):
            locations.setdefault((location.user_id, location.id, int(incident.id)), location)

        all_delivered = True
        for key in sorted(locations):
            location = locations[key]
            other_active = incident_store.count_active_incidents_near(
                location.latitude,
                location.longitude,
                location.radius_m,
                exclude_incident_id=incident.id,
            )
            request = NotificationRequest(
                user_id=location.user_id,
                location_id=location.id,
                incident_id=int(incident.id),
                kind=KIND_INCIDENT_ENDED,
                new_detection_count=0,
                incident_detection_count=incident.fire_count,
                other_active_incident_count=other_active,
                payload=build_ended_payload(
                    incident,
                    location,
                    other_active=other_active,
                    expiry_hours=expiry_hours,
                ),
                batch_key=ENDED_BATCH_KEY,
            )
            result.requests.append(request)
            all_delivered = _deliver(notifier, request, result) and all_delivered

        if all_delivered:
            incident_store.mark_ended_notified(int(incident.id), now)
        else:
            LOGGER.warning(
                "Ended notification for incident %s incomplete; it stays unpurgeable until retried",
                incident.id,
            )

    result.duration_ms = int((time.monotonic() - started) * 1000)
    log_event(LOGGER, "notifications.ended", "Ended incidents orchestrated", **result.to_metadata())
    return result
