"""Database helpers for FIRMS ingestion."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB

from incidents.db import get_engine
from ingest.models import DetectionRecord

DEFAULT_BATCH_SIZE = 3000

_UPSERT_STMT = text(
    """
    INSERT INTO fire_detections (
        identity_key,
        geom,
        latitude,
        longitude,
        detected_at,
        source,
        satellite,
        instrument,
        version,
        confidence,
        daynight,
        frp,
        bright_ti4,
        bright_ti5,
        scan,
        track
    )
    SELECT
        r.identity_key,
        ST_SetSRID(ST_MakePoint(r.longitude, r.latitude), 4326),
        r.latitude,
        r.longitude,
        r.detected_at,
        r.source,
        r.satellite,
        r.instrument,
        r.version,
        r.confidence,
        r.daynight,
        r.frp,
        r.bright_ti4,
        r.bright_ti5,
        r.scan,
        r.track
    FROM jsonb_to_recordset(:rows) AS r(
        identity_key text,
        latitude double precision,
        longitude double precision,
        detected_at timestamptz,
        source text,
        satellite text,
        instrument text,
        version text,
        confidence text,
        daynight text,
        frp double precision,
        bright_ti4 double precision,
        bright_ti5 double precision,
        scan double precision,
        track double precision
    )
    ON CONFLICT (identity_key) DO NOTHING
    RETURNING id
    """
).bindparams(bindparam("rows", type_=JSONB))


def upsert_detections(
    detections: Sequence[DetectionRecord],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Bulk insert detections and return the number of newly inserted rows.

    Existing identity keys are left untouched (first write wins). Each chunk is
    its own transaction; a storage error aborts the remaining chunks and is
    raised to the caller.
    """
    if not detections:
        return 0
    if batch_size < 1:
        raise ValueError("batch_size must be positive.")

    rows = _unique_rows(detections)
    inserted = 0
    for start in range(0, len(rows), batch_size):
        chunk = rows[start : start + batch_size]
        with get_engine().begin() as conn:
            result = conn.execute(_UPSERT_STMT, {"rows": chunk})
            inserted += len(result.fetchall())
    return inserted


def _unique_rows(detections: Sequence[DetectionRecord]) -> List[Dict[str, Any]]:
    seen: set[str] = set()
    rows: List[Dict[str, Any]] = []
    for record in detections:
        params = record.to_parameters()
        if params["identity_key"] in seen:
            continue
        seen.add(params["identity_key"])
        params["detected_at"] = params["detected_at"].isoformat()
        rows.append(params)
    return rows
