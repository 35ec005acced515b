"""Helpers for downloading and parsing NASA FIRMS CSV feeds."""

from __future__ import annotations

import csv
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Dict, List

import httpx

from ingest.logging_utils import log_event
from ingest.models import DetectionRecord

LOGGER = logging.getLogger(__name__)
FIRMS_BASE_URL = "https://firms.modaps.eosdis.nasa.gov/api/area/csv"
USER_AGENT = "wildfire-incidents/0.1 (+firms ingest)"
VALID_LAT_RANGE = (-90.0, 90.0)
VALID_LON_RANGE = (-180.0, 180.0)
REQUIRED_COLUMNS = frozenset({"latitude", "longitude", "acq_date", "acq_time"})
FLOAT_FIELDS = ("frp", "bright_ti4", "bright_ti5", "scan", "track")

_CONFIDENCE_TEXT = {
    "l": "low",
    "low": "low",
    "n": "normal",
    "nominal": "normal",
    "normal": "normal",
    "h": "high",
    "high": "high",
}


class FIRMSClientError(RuntimeError):
    """Raised when the FIRMS API request fails or returns an unusable payload."""


@dataclass
class FirmsParseSummary:
    """Capture FIRMS parsing results for logging and run metadata."""

    total_rows: int = 0
    parsed_rows: int = 0
    malformed_rows: int = 0
    invalid_rows: int = 0
    coerced_fields: int = 0
    empty_payload: bool = False
    confidence_buckets: Counter[str] = field(default_factory=Counter)

    @property
    def dropped_rows(self) -> int:
        return self.malformed_rows + self.invalid_rows


def build_firms_url(map_key: str, source: str, area: str, day_range: int, date: str | None = None) -> str:
    """Construct the FIRMS API URL for a given source and spatial window."""
    base = f"{FIRMS_BASE_URL}/{map_key}/{source}/{area}/{day_range}"
    return f"{base}/{date}" if date else base


def fetch_csv_text(
    map_key: str,
    source: str,
    area: str,
    day_range: int,
    timeout_seconds: float,
) -> str:
    """Download the raw FIRMS CSV body for one source.

    Any transport failure, timeout or non-2xx status is raised as
    `FIRMSClientError` so the caller can treat it as a per-source failure.
    """
    url = build_firms_url(map_key, source, area, day_range)
    log_event(LOGGER, "firms.fetch", "Requesting FIRMS CSV", source=source, day_range=day_range)
    headers = {"User-Agent": USER_AGENT, "Accept": "text/csv"}
    try:
        response = httpx.get(url, headers=headers, timeout=timeout_seconds)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        snippet = exc.response.text[:200] if exc.response is not None else None
        log_event(
            LOGGER,
            "firms.fetch",
            "HTTP error from FIRMS",
            level="error",
            source=source,
            status_code=exc.response.status_code,
            response_snippet=snippet,
        )
        raise FIRMSClientError(f"HTTP {exc.response.status_code} for {source}") from exc
    except httpx.TimeoutException as exc:
        raise FIRMSClientError(f"Timed out after {timeout_seconds}s for {source}") from exc
    except httpx.HTTPError as exc:
        raise FIRMSClientError(f"Network error for {source}: {exc}") from exc

    LOGGER.info(
        "Fetched %s bytes from FIRMS",
        len(response.content),
        extra={"source": source},
    )
    return response.text


def parse_detection_rows(
    payload: str,
    source: str,
) -> tuple[List[DetectionRecord], FirmsParseSummary]:
    """Normalize a FIRMS CSV body into `DetectionRecord`s.

    Rows whose column count does not match the header are dropped as malformed.
    Unparseable intensity fields coerce to 0.0. Rows with unusable coordinates
    or acquisition date/time are dropped as invalid. An empty body or a header
    with no rows is a valid, empty result: FIRMS lags behind the satellite
    passes and "no fires" cannot be told apart from "not yet processed".
    """
    summary = FirmsParseSummary()
    lines = [line for line in payload.splitlines() if line.strip()]
    if len(lines) <= 1:
        summary.empty_payload = True
        log_event(
            LOGGER,
            "firms.parse",
            "Empty response - no fires or data not yet processed",
            source=source,
        )
        return [], summary

    reader = csv.reader(lines)
    header = [column.strip() for column in next(reader)]
    missing = REQUIRED_COLUMNS.difference(header)
    if missing:
        raise FIRMSClientError(
            f"Unexpected CSV header for {source}; missing columns: {', '.join(sorted(missing))}"
        )

    detections: List[DetectionRecord] = []
    for values in reader:
        summary.total_rows += 1
        if len(values) != len(header):
            summary.malformed_rows += 1
            log_event(
                LOGGER,
                "firms.validation",
                "Skipping malformed CSV row",
                level="warning",
                source=source,
                expected_columns=len(header),
                actual_columns=len(values),
            )
            continue

        row = dict(zip(header, (value.strip() for value in values)))
        detection = _build_detection(row, source, summary)
        if detection is None:
            summary.invalid_rows += 1
            continue

        detections.append(detection)
        summary.confidence_buckets[detection.confidence or "unknown"] += 1

    summary.parsed_rows = len(detections)
    if detections:
        _log_frp_distribution(detections, source)
    return detections, summary


def _build_detection(
    row: Dict[str, str],
    source: str,
    summary: FirmsParseSummary,
) -> DetectionRecord | None:
    try:
        lat = float(row["latitude"])
        lon = float(row["longitude"])
    except ValueError:
        log_event(
            LOGGER,
            "firms.validation",
            "Skipping row with non-numeric coordinates",
            level="warning",
            row_ref=_row_ref(row),
        )
        return None

    if not (VALID_LAT_RANGE[0] <= lat <= VALID_LAT_RANGE[1]) or not (
        VALID_LON_RANGE[0] <= lon <= VALID_LON_RANGE[1]
    ):
        log_event(
            LOGGER,
            "firms.validation",
            "Skipping row with out-of-range coordinates",
            level="warning",
            row_ref=_row_ref(row),
        )
        return None

    acq_time = _coerce_int(row.get("acq_time"))
    try:
        acq_date = date.fromisoformat(row["acq_date"])
        detected_at = datetime.combine(
            acq_date,
            time(hour=acq_time // 100, minute=acq_time % 100),
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        log_event(
            LOGGER,
            "firms.validation",
            "Skipping row with invalid acquisition time",
            level="warning",
            error=str(exc),
            row_ref=_row_ref(row),
        )
        return None

    floats: Dict[str, float] = {}
    for name in FLOAT_FIELDS:
        value, coerced = _coerce_float(row.get(name))
        if coerced:
            summary.coerced_fields += 1
        floats[name] = value

    return DetectionRecord(
        latitude=lat,
        longitude=lon,
        acq_date=acq_date,
        acq_time=acq_time,
        detected_at=detected_at,
        source=source,
        satellite=row.get("satellite") or None,
        instrument=row.get("instrument") or None,
        version=row.get("version") or None,
        confidence=normalize_confidence(row.get("confidence")),
        daynight=row.get("daynight") or None,
        frp=max(floats["frp"], 0.0),
        bright_ti4=floats["bright_ti4"],
        bright_ti5=floats["bright_ti5"],
        scan=floats["scan"],
        track=floats["track"],
    )


def normalize_confidence(value: str | None) -> str | None:
    """Map VIIRS letter classes and MODIS 0-100 percentages onto low/normal/high."""
    if not value:
        return None
    text = value.strip().lower()
    if text in _CONFIDENCE_TEXT:
        return _CONFIDENCE_TEXT[text]
    try:
        numeric = float(text)
    except ValueError:
        return None
    if numeric < 30:
        return "low"
    if numeric < 70:
        return "normal"
    return "high"


def _coerce_float(value: str | None) -> tuple[float, bool]:
    """Return (value, coerced); missing or unparseable input becomes 0.0."""
    if value is None or value == "":
        return 0.0, True
    try:
        return float(value), False
    except ValueError:
        return 0.0, True


def _coerce_int(value: str | None) -> int:
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


def _log_frp_distribution(detections: List[DetectionRecord], source: str) -> None:
    frp_values = sorted(d.frp for d in detections)
    log_event(
        LOGGER,
        "firms.parse",
        "FRP distribution (MW)",
        source=source,
        rows=len(frp_values),
        min_frp=frp_values[0],
        median_frp=frp_values[len(frp_values) // 2],
        max_frp=frp_values[-1],
    )


def _row_ref(row: Dict[str, str]) -> Dict[str, str | None]:
    """Small reference payload to avoid logging entire rows."""
    return {
        "acq_date": row.get("acq_date"),
        "acq_time": row.get("acq_time"),
        "satellite": row.get("satellite"),
        "latitude": row.get("latitude"),
        "longitude": row.get("longitude"),
    }
