"""RQ task functions for the incident pipeline.

Chain: fetch -> cluster -> (sweep, notify batch); sweep -> (notify ended, purge,
cluster when detections are still unassigned).
Clustering, notification and lifecycle tasks each run under a single-flight
lock; a busy lock fails the job with `SingleFlightBusy` and rq's retry policy
reschedules it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from incidents.config import settings
from incidents.fires.clustering import ClusteringOutcome, cluster_unassigned_detections
from incidents.fires.lifecycle import end_stale_incidents, purge_ended_incidents
from incidents.fires.repo import SqlIncidentStore
from incidents.jobs.queue import enqueue, save_job_meta, single_flight
from incidents.notifications.locations import SqlLocationStore
from incidents.notifications.notifier import OutboxNotifier
from incidents.notifications.orchestrator import orchestrate_detection_batch, orchestrate_ended_incidents

logger = logging.getLogger(__name__)


def fetch_fires_task(day_range: Optional[int] = None, sources: Optional[List[str]] = None) -> Dict[str, Any]:
    """Fetch and store FIRMS detections; enqueue clustering when anything new landed."""
    from ingest.firms_ingest import run_firms_ingest

    result = run_firms_ingest(day_range=day_range, sources=sources)
    metadata = result.to_metadata()
    save_job_meta(metadata)
    if result.inserted > 0:
        enqueue(cluster_fires_task, source="fetch")
    else:
        logger.info("No new detections stored; clustering not enqueued")
    return metadata


def cluster_fires_task() -> Dict[str, Any]:
    with single_flight("clustering"):
        result = cluster_unassigned_detections(
            SqlIncidentStore(),
            clustering_distance_m=settings.clustering_distance_m,
            expiry_hours=settings.incident_expiry_hours,
        )
    metadata = result.to_metadata()
    save_job_meta(metadata)

    enqueue(sweep_incidents_task, source="clustering", requeue_clustering=False)
    if result.outcomes:
        enqueue(
            notify_detection_batch_task,
            [outcome.to_dict() for outcome in result.outcomes],
            source="clustering",
        )
    return metadata


def sweep_incidents_task(requeue_clustering: bool = True) -> Dict[str, Any]:
    """End stale incidents and chain ended notifications and purge.

    The scheduled sweep also re-enqueues clustering when detections are still
    unassigned (e.g. a cluster job that exhausted its retries on a busy lock).
    The sweep chained from clustering passes `requeue_clustering=False`.
    """
    store = SqlIncidentStore()
    with single_flight("lifecycle"):
        result = end_stale_incidents(store, expiry_hours=settings.incident_expiry_hours)
        # Include incidents ended earlier whose notification never completed.
        pending = store.list_unnotified_ended_incident_ids(limit=settings.purge_batch_size)
    unassigned = store.summary_counts()["unassigned_detections"] if requeue_clustering else 0
    metadata = result.to_metadata()
    metadata["unassigned_detections"] = unassigned
    save_job_meta(metadata)

    to_notify = sorted(set(result.ended_incident_ids) | set(pending))
    if to_notify:
        enqueue(notify_ended_incidents_task, to_notify, source="lifecycle")
    enqueue(purge_incidents_task, source="lifecycle")
    if unassigned > 0:
        enqueue(cluster_fires_task, source="lifecycle")
    return metadata


def purge_incidents_task() -> Dict[str, Any]:
    with single_flight("lifecycle"):
        result = purge_ended_incidents(
            SqlIncidentStore(),
            retention_days=settings.incident_retention_days,
            batch_size=settings.purge_batch_size,
            max_attempts=settings.purge_max_attempts,
        )
    metadata = result.to_metadata()
    save_job_meta(metadata)
    return metadata


def notify_detection_batch_task(outcomes: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    tagged = [ClusteringOutcome.from_dict(item) for item in outcomes]
    with single_flight("notifications"):
        result = orchestrate_detection_batch(
            tagged,
            incident_store=SqlIncidentStore(),
            location_store=SqlLocationStore(),
            notifier=OutboxNotifier(),
        )
    metadata = result.to_metadata()
    save_job_meta(metadata)
    return metadata


def notify_ended_incidents_task(incident_ids: Sequence[int]) -> Dict[str, Any]:
    with single_flight("notifications"):
        result = orchestrate_ended_incidents(
            list(incident_ids),
            incident_store=SqlIncidentStore(),
            location_store=SqlLocationStore(),
            notifier=OutboxNotifier(),
            min_radius_m=settings.notification_min_radius_m,
            expiry_hours=settings.incident_expiry_hours,
        )
    metadata = result.to_metadata()
    save_job_meta(metadata)
    return metadata
