"""CLI entrypoint and run function for NASA FIRMS ingestion."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ingest import repository
from ingest.config import settings as ingest_settings
from ingest.fetch_coordinator import FetchRunResult, fetch_all_sources
from ingest.logging_utils import log_event

LOGGER = logging.getLogger("firms_ingest")


class IngestRunError(RuntimeError):
    """Raised when no source could be both fetched and stored."""


@dataclass
class IngestRunResult:
    fetch: FetchRunResult
    inserted_by_source: Dict[str, int] = field(default_factory=dict)
    ingest_errors: Dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def inserted(self) -> int:
        return sum(self.inserted_by_source.values())

    def to_metadata(self) -> Dict[str, Any]:
        metadata = self.fetch.to_metadata()
        for entry in metadata["source_results"]:
            source = entry["source"]
            entry["fires_inserted"] = self.inserted_by_source.get(source, 0)
            if source in self.ingest_errors:
                entry["status"] = "error"
                entry["error"] = self.ingest_errors[source]
        metadata.update(
            {
                "total_fires_inserted": self.inserted,
                "duration_ms": self.duration_ms,
                "duration_seconds": round(self.duration_ms / 1000, 1),
            }
        )
        return metadata


def run_firms_ingest(
    day_range: Optional[int] = None,
    sources: Optional[List[str]] = None,
) -> IngestRunResult:
    """Fetch every source concurrently, then upsert each successful source's rows.

    Raises `AllSourcesFailedError` when every fetch failed and `IngestRunError`
    when every fetched source then failed to store. The upsert is idempotent,
    so a job-queue retry of a failed run is safe.
    """
    config = ingest_settings
    effective_day_range = day_range if day_range is not None else config.day_range
    source_list = sources or config.sources
    if not config.map_key_configured:
        LOGGER.warning("FIRMS_MAP_KEY is not configured; requests will be rejected by FIRMS")

    started = time.monotonic()
    fetch = fetch_all_sources(source_list, effective_day_range)
    fetch.raise_for_total_failure()

    run = IngestRunResult(fetch=fetch)
    for source_result in fetch.succeeded:
        source = source_result.source
        try:
            inserted = repository.upsert_detections(
                source_result.detections,
                batch_size=config.upsert_batch_size,
            )
        except SQLAlchemyError as exc:
            LOGGER.exception("Storing detections failed for source=%s", source)
            run.ingest_errors[source] = f"Database error: {exc.__class__.__name__}"
            continue

        run.inserted_by_source[source] = inserted
        log_event(
            LOGGER,
            "firms.ingest",
            "Stored FIRMS detections",
            source=source,
            fetched=source_result.rows_fetched,
            parsed=source_result.rows_parsed,
            dropped=source_result.rows_dropped,
            inserted=inserted,
            duplicates=source_result.rows_parsed - inserted,
        )

    run.duration_ms = int((time.monotonic() - started) * 1000)
    if not run.inserted_by_source:
        raise IngestRunError(f"No FIRMS source could be stored: {run.ingest_errors}")
    return run


def _resolve_sources(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [segment.strip() for segment in value.split(",") if segment.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="NASA FIRMS ingestion pipeline.")
    parser.add_argument(
        "--day-range",
        type=int,
        default=None,
        help="Override FIRMS_DAY_RANGE (number of past days).",
    )
    parser.add_argument(
        "--sources",
        type=str,
        default=None,
        help="Comma-separated FIRMS sources (defaults to env config).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = parse_args(argv)
    try:
        result = run_firms_ingest(args.day_range, _resolve_sources(args.sources))
    except Exception:  # noqa: BLE001 - reported as exit status
        LOGGER.exception("FIRMS ingestion failed")
        raise SystemExit(1)
    log_event(LOGGER, "firms.ingest", "FIRMS ingestion finished", **result.to_metadata())
    raise SystemExit(0)


if __name__ == "__main__":
    main(sys.argv[1:])
