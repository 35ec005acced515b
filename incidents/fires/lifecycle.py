"""Incident lifecycle: end quiet incidents, purge old ended ones.

State machine: `active -> ended`, one-way. Ending sets `ended_at` exactly once.
Purging deletes an ended incident together with its detections, but only after
its "incident ended" notification has been dispatched (`ended_notified_at`).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from incidents.fires.models import IncidentStore
from ingest.logging_utils import log_event

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRY_HOURS = 24
DEFAULT_PURGE_BATCH_SIZE = 1000


@dataclass
class SweepResult:
    checked: int = 0
    ended_incident_ids: List[int] = field(default_factory=list)
    skipped_incident_ids: List[int] = field(default_factory=list)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "incidents_checked": self.checked,
            "incidents_ended": len(self.ended_incident_ids),
            "ended_incident_ids": list(self.ended_incident_ids),
            "incidents_skipped": len(self.skipped_incident_ids),
        }


@dataclass
class PurgeResult:
    cutoff: datetime
    batches: int = 0
    incidents_deleted: int = 0
    detections_deleted: int = 0
    retries: int = 0

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "cutoff": self.cutoff.isoformat(),
            "batches": self.batches,
            "incidents_deleted": self.incidents_deleted,
            "detections_deleted": self.detections_deleted,
            "retries": self.retries,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def end_stale_incidents(
    store: IncidentStore,
    *,
    expiry_hours: float = DEFAULT_EXPIRY_HOURS,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Move every active incident quiet for longer than `expiry_hours` to `ended`."""
    now = now or _utcnow()
    cutoff = now - timedelta(hours=expiry_hours)
    result = SweepResult()

    for incident in store.list_incidents_to_end(cutoff):
        result.checked += 1
        if store.mark_ended(int(incident.id), now):
            result.ended_incident_ids.append(int(incident.id))
        else:
            # Ended or deleted by someone else since it was listed.
            result.skipped_incident_ids.append(int(incident.id))

    log_event(
        LOGGER,
        "lifecycle.sweep",
        "Lifecycle sweep finished",
        cutoff=cutoff.isoformat(),
        **result.to_metadata(),
    )
    return result


def _delete_batch_with_retry(
    store: IncidentStore,
    incident_ids: Sequence[int],
    *,
    max_attempts: int,
    backoff_seconds: float,
    result: PurgeResult,
) -> tuple[int, int]:
    last_error: SQLAlchemyError | None = None
    for attempt in range(max_attempts):
        try:
            return store.delete_incidents(incident_ids)
        except SQLAlchemyError as exc:
            last_error = exc
            LOGGER.warning(
                "Purge batch of %s incidents failed (attempt %s/%s): %s",
                len(incident_ids),
                attempt + 1,
                max_attempts,
                exc,
            )
            if attempt == max_attempts - 1:
                break
            result.retries += 1
            sleep_s = backoff_seconds * (2**attempt)
            time.sleep(sleep_s)
    if last_error is not None:
        raise last_error
    raise RuntimeError("Purge batch was not attempted")


def purge_ended_incidents(
    store: IncidentStore,
    *,
    retention_days: float,
    batch_size: int = DEFAULT_PURGE_BATCH_SIZE,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    now: Optional[datetime] = None,
) -> PurgeResult:
    """Delete ended incidents older than the retention window, in bounded batches.

    Each batch is one transaction. A failing batch is retried with exponential
    backoff; when attempts run out the storage error propagates, leaving earlier
    batches deleted. Re-running only touches what is left.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive.")
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1.")

    now = now or _utcnow()
    result = PurgeResult(cutoff=now - timedelta(days=retention_days))

    while True:
        incident_ids = store.list_purgeable_incident_ids(result.cutoff, limit=batch_size)
        if not incident_ids:
            break

        incidents_deleted, detections_deleted = _delete_batch_with_retry(
            store,
            incident_ids,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            result=result,
        )
        result.batches += 1
        result.incidents_deleted += incidents_deleted
        result.detections_deleted += detections_deleted
        LOGGER.info(
            "Purged batch %s: %s incidents, %s detections",
            result.batches,
            incidents_deleted,
            detections_deleted,
        )
        if incidents_deleted == 0:
            LOGGER.warning("Purge batch deleted nothing; stopping to avoid a tight loop")
            break

    log_event(LOGGER, "lifecycle.purge", "Purge finished", **result.to_metadata())
    return result


def summarize(store: IncidentStore) -> Dict[str, int]:
    """Operational counts: active/ended incidents, pending notifications, unassigned detections."""
    return dict(store.summary_counts())
