"""Radius queries against the externally owned `locations` table."""

from __future__ import annotations

from typing import Any, List

from sqlalchemy import text

from incidents.db import get_engine
from incidents.fires.models import Incident
from incidents.notifications.models import Location

_LOCATION_COLUMNS = "id, user_id, name, latitude, longitude, radius_m"


def _row_to_location(row: Any) -> Location:
    return Location(
        id=int(row.id),
        user_id=int(row.user_id),
        name=row.name,
        latitude=float(row.latitude),
        longitude=float(row.longitude),
        radius_m=float(row.radius_m),
    )


class SqlLocationStore:
    """Geography-based `ST_DWithin` lookups (meters, spheroid-aware)."""

    def find_locations_near(self, latitude: float, longitude: float) -> List[Location]:
        stmt = text(
            f"""
            SELECT {_LOCATION_COLUMNS}
            FROM locations
            WHERE ST_DWithin(
                ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography,
                ST_SetSRID(ST_MakePoint(:lon, :lat), 4326)::geography,
                radius_m
            )
            ORDER BY user_id ASC, id ASC
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(stmt, {"lat": latitude, "lon": longitude}).fetchall()
        return [_row_to_location(r) for r in rows]

    def find_locations_near_incident(self, incident: Incident, min_radius_m: float) -> List[Location]:
        center_lat, center_lon = incident.center
        radius_m = max(incident.bounds.half_span_m(), float(min_radius_m))
        stmt = text(
            f"""
            SELECT {_LOCATION_COLUMNS}
            FROM locations
            WHERE ST_DWithin(
                ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography,
                ST_SetSRID(ST_MakePoint(:lon, :lat), 4326)::geography,
                :radius_m
            )
            ORDER BY user_id ASC, id ASC
            """
        )
        with get_engine().begin() as conn:
            rows = conn.execute(
                stmt,
                {"lat": center_lat, "lon": center_lon, "radius_m": radius_m},
            ).fetchall()
        return [_row_to_location(r) for r in rows]
