"""DB queries for fire incidents and their member detections."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text

from incidents.core.geo import degree_offsets
from incidents.db import get_engine
from incidents.fires.models import (
    STATUS_ACTIVE,
    DetectionAlreadyAssignedError,
    Incident,
    IncidentEndedError,
    StoredDetection,
)

_INCIDENT_COLUMNS = """
    id,
    status,
    min_latitude,
    max_latitude,
    min_longitude,
    max_longitude,
    fire_count,
    first_detected_at,
    last_detected_at,
    min_frp,
    max_frp,
    total_frp,
    avg_frp,
    ended_at,
    ended_notified_at
"""

_ASSIGN_DETECTION_SQL = text(
    """
    UPDATE fire_detections
    SET incident_id = :incident_id
    WHERE id = :detection_id
      AND incident_id IS NULL
    """
)


def _row_to_incident(row: Any) -> Incident:
    m = row._mapping
    return Incident(
        id=int(m["id"]),
        status=m["status"],
        min_lat=float(m["min_latitude"]),
        max_lat=float(m["max_latitude"]),
        min_lon=float(m["min_longitude"]),
        max_lon=float(m["max_longitude"]),
        fire_count=int(m["fire_count"]),
        first_detected_at=m["first_detected_at"],
        last_detected_at=m["last_detected_at"],
        min_frp=float(m["min_frp"]),
        max_frp=float(m["max_frp"]),
        total_frp=float(m["total_frp"]),
        avg_frp=float(m["avg_frp"]),
        ended_at=m["ended_at"],
        ended_notified_at=m["ended_notified_at"],
    )


def _aggregate_params(incident: Incident) -> Dict[str, Any]:
    center_lat, center_lon = incident.center
    return {
        "status": incident.status,
        "min_latitude": incident.min_lat,
        "max_latitude": incident.max_lat,
        "min_longitude": incident.min_lon,
        "max_longitude": incident.max_lon,
        "center_latitude": center_lat,
        "center_longitude": center_lon,
        "fire_count": incident.fire_count,
        "first_detected_at": incident.first_detected_at,
        "last_detected_at": incident.last_detected_at,
        "min_frp": incident.min_frp,
        "max_frp": incident.max_frp,
        "total_frp": incident.total_frp,
        "avg_frp": incident.avg_frp,
    }


class SqlIncidentStore:
    """PostGIS-backed incident store.

    Every write is its own short transaction. Assigning a detection is guarded by
    `incident_id IS NULL`, and aggregate updates by `status = 'active'`, so a
    concurrent writer surfaces as an `IncidentError` rather than a silent overwrite.
    """

    def list_unassigned_detections(self, *, limit: Optional[int] = None) -> List[StoredDetection]:
        limit_clause = "LIMIT :limit" if limit is not None else ""
        stmt = text(
            f"""
            SELECT id, latitude, longitude, detected_at, COALESCE(frp, 0) AS frp
            FROM fire_detections
            WHERE incident_id IS NULL
            ORDER BY detected_at ASC, id ASC
            {limit_clause}
            """
        )
        params: Dict[str, Any] = {}
        if limit is not None:
            params["limit"] = int(limit)

        with get_engine().begin() as conn:
            rows = conn.execute(stmt, params).fetchall()

        return [
            StoredDetection(
                id=int(r.id),
                latitude=float(r.latitude),
                longitude=float(r.longitude),
                detected_at=r.detected_at,
                frp=float(r.frp),
            )
            for r in rows
        ]

    def find_candidate_incidents(
        self,
        latitude: float,
        longitude: float,
        *,
        distance_m: float,
        active_since: datetime,
    ) -> List[Incident]:
        """Active incidents whose bounds, grown by `distance_m`, contain the point."""
        d_lat, d_lon = degree_offsets(distance_m, latitude)
        stmt = text(
            f"""
            SELECT {_INCIDENT_COLUMNS}
            FROM fire_incidents
            WHERE status = 'active'
              AND last_detected_at >= :active_since
              AND min_latitude - :d_lat <= :lat
              AND max_latitude + :d_lat >= :lat
              AND min_longitude - :d_lon <= :lon
              AND max_longitude + :d_lon >= :lon
            ORDER BY id ASC
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(
                stmt,
                {
                    "active_since": active_since,
                    "lat": latitude,
                    "lon": longitude,
                    "d_lat": d_lat,
                    "d_lon": d_lon,
                },
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    def create_incident(self, incident: Incident, detection: StoredDetection) -> Incident:
        """Insert a seeded incident and assign its first detection atomically."""
        stmt = text(
            """
            INSERT INTO fire_incidents (
                status,
                min_latitude,
                max_latitude,
                min_longitude,
                max_longitude,
                center_latitude,
                center_longitude,
                fire_count,
                first_detected_at,
                last_detected_at,
                min_frp,
                max_frp,
                total_frp,
                avg_frp
            )
            VALUES (
                :status,
                :min_latitude,
                :max_latitude,
                :min_longitude,
                :max_longitude,
                :center_latitude,
                :center_longitude,
                :fire_count,
                :first_detected_at,
                :last_detected_at,
                :min_frp,
                :max_frp,
                :total_frp,
                :avg_frp
            )
            RETURNING id
            """
        )
        with get_engine().begin() as conn:
            incident_id = int(conn.execute(stmt, _aggregate_params(incident)).scalar_one())
            assigned = conn.execute(
                _ASSIGN_DETECTION_SQL,
                {"incident_id": incident_id, "detection_id": detection.id},
            )
            if assigned.rowcount != 1:
                raise DetectionAlreadyAssignedError(f"Detection {detection.id} is already assigned")
        return replace(incident, id=incident_id)

    def attach_detection(self, incident: Incident, detection: StoredDetection) -> None:
        """Assign `detection` and persist the already-absorbed aggregates of `incident`."""
        stmt = text(
            """
            UPDATE fire_incidents
            SET min_latitude = :min_latitude,
                max_latitude = :max_latitude,
                min_longitude = :min_longitude,
                max_longitude = :max_longitude,
                center_latitude = :center_latitude,
                center_longitude = :center_longitude,
                fire_count = :fire_count,
                first_detected_at = :first_detected_at,
                last_detected_at = :last_detected_at,
                min_frp = :min_frp,
                max_frp = :max_frp,
                total_frp = :total_frp,
                avg_frp = :avg_frp,
                updated_at = now()
            WHERE id = :incident_id
              AND status = :status
            """
        )
        params = _aggregate_params(incident)
        params["incident_id"] = incident.id
        params["status"] = STATUS_ACTIVE

        with get_engine().begin() as conn:
            assigned = conn.execute(
                _ASSIGN_DETECTION_SQL,
                {"incident_id": incident.id, "detection_id": detection.id},
            )
            if assigned.rowcount != 1:
                raise DetectionAlreadyAssignedError(f"Detection {detection.id} is already assigned")
            updated = conn.execute(stmt, params)
            if updated.rowcount != 1:
                raise IncidentEndedError(f"Incident {incident.id} is no longer active")

    def get_incidents(self, incident_ids: Sequence[int]) -> List[Incident]:
        if not incident_ids:
            return []
        stmt = text(
            f"""
            SELECT {_INCIDENT_COLUMNS}
            FROM fire_incidents
            WHERE id = ANY(:incident_ids)
            ORDER BY id ASC
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(stmt, {"incident_ids": list(incident_ids)}).fetchall()
        return [_row_to_incident(r) for r in rows]

    def list_incidents_to_end(self, cutoff: datetime) -> List[Incident]:
        stmt = text(
            f"""
            SELECT {_INCIDENT_COLUMNS}
            FROM fire_incidents
            WHERE status = 'active'
              AND last_detected_at < :cutoff
            ORDER BY id ASC
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(stmt, {"cutoff": cutoff}).fetchall()
        return [_row_to_incident(r) for r in rows]

    def mark_ended(self, incident_id: int, ended_at: datetime) -> bool:
        """Transition one incident to `ended`; returns False if it was not active."""
        stmt = text(
            """
            UPDATE fire_incidents
            SET status = 'ended',
                ended_at = :ended_at,
                updated_at = now()
            WHERE id = :incident_id
              AND status = 'active'
            """
        )
        with get_engine().begin() as conn:
            result = conn.execute(stmt, {"incident_id": incident_id, "ended_at": ended_at})
            return result.rowcount > 0

    def mark_ended_notified(self, incident_id: int, notified_at: datetime) -> bool:
        stmt = text(
            """
            UPDATE fire_incidents
            SET ended_notified_at = :notified_at,
                updated_at = now()
            WHERE id = :incident_id
              AND status = 'ended'
              AND ended_notified_at IS NULL
            """
        )
        with get_engine().begin() as conn:
            result = conn.execute(stmt, {"incident_id": incident_id, "notified_at": notified_at})
            return result.rowcount > 0

    def list_unnotified_ended_incident_ids(self, *, limit: int) -> List[int]:
        stmt = text(
            """
            SELECT id
            FROM fire_incidents
            WHERE status = 'ended'
              AND ended_notified_at IS NULL
            ORDER BY ended_at ASC, id ASC
            LIMIT :limit
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(stmt, {"limit": int(limit)}).fetchall()
        return [int(r.id) for r in rows]

    def list_purgeable_incident_ids(self, cutoff: datetime, *, limit: int) -> List[int]:
        """Ended incidents past retention whose ended notification already ran."""
        stmt = text(
            """
            SELECT id
            FROM fire_incidents
            WHERE status = 'ended'
              AND ended_at < :cutoff
              AND ended_notified_at IS NOT NULL
            ORDER BY ended_at ASC, id ASC
            LIMIT :limit
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(stmt, {"cutoff": cutoff, "limit": int(limit)}).fetchall()
        return [int(r.id) for r in rows]

    def delete_incidents(self, incident_ids: Sequence[int]) -> Tuple[int, int]:
        """Delete ended incidents and their detections in one transaction.

        Returns `(incidents_deleted, detections_deleted)`.
        """
        if not incident_ids:
            return 0, 0
        ids = list(incident_ids)
        with get_engine().begin() as conn:
            detections = conn.execute(
                text(
                    """
                    DELETE FROM fire_detections d
                    USING fire_incidents i
                    WHERE d.incident_id = i.id
                      AND i.id = ANY(:incident_ids)
                      AND i.status = 'ended'
                    """
                ),
                {"incident_ids": ids},
            )
            incidents = conn.execute(
                text(
                    """
                    DELETE FROM fire_incidents
                    WHERE id = ANY(:incident_ids)
                      AND status = 'ended'
                    """
                ),
                {"incident_ids": ids},
            )
            return incidents.rowcount, detections.rowcount

    def count_incident_detections(self, incident_id: int) -> int:
        stmt = text("SELECT count(*) FROM fire_detections WHERE incident_id = :incident_id")
        with get_engine().begin() as conn:
            return int(conn.execute(stmt, {"incident_id": incident_id}).scalar_one())

    def count_active_incidents_near(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        exclude_incident_id: Optional[int] = None,
    ) -> int:
        exclude_predicate = ""
        params: Dict[str, Any] = {"lat": latitude, "lon": longitude, "radius_m": radius_m}
        if exclude_incident_id is not None:
            exclude_predicate = "AND id <> :exclude_incident_id"
            params["exclude_incident_id"] = exclude_incident_id

        stmt = text(
            f"""
            SELECT count(*)
            FROM fire_incidents
            WHERE status = 'active'
              AND ST_DWithin(
                  ST_SetSRID(ST_MakePoint(center_longitude, center_latitude), 4326)::geography,
                  ST_SetSRID(ST_MakePoint(:lon, :lat), 4326)::geography,
                  :radius_m
              )
              {exclude_predicate}
            """
        )
        with get_engine().begin() as conn:
            return int(conn.execute(stmt, params).scalar_one())

    def summary_counts(self) -> Dict[str, int]:
        stmt = text(
            """
            SELECT
                (SELECT count(*) FROM fire_incidents WHERE status = 'active') AS active_incidents,
                (SELECT count(*) FROM fire_incidents WHERE status = 'ended') AS ended_incidents,
                (SELECT count(*) FROM fire_incidents
                  WHERE status = 'ended' AND ended_notified_at IS NULL) AS ended_pending_notification,
                (SELECT count(*) FROM fire_detections) AS detections,
                (SELECT count(*) FROM fire_detections WHERE incident_id IS NULL) AS unassigned_detections
            """
        )
        with get_engine().begin() as conn:
            row = conn.execute(stmt).one()
        return {key: int(value) for key, value in row._mapping.items()}
