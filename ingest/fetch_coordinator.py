"""Concurrent fetch of every configured FIRMS source with partial-failure tolerance."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence

from ingest.config import settings as ingest_settings
from ingest.firms_client import FirmsParseSummary, fetch_csv_text, parse_detection_rows
from ingest.logging_utils import log_event
from ingest.models import DetectionRecord

LOGGER = logging.getLogger(__name__)

SourceFetcher = Callable[[str, int], tuple[List[DetectionRecord], FirmsParseSummary]]


class AllSourcesFailedError(RuntimeError):
    """Raised when every configured source failed; the run should be retried later."""


@dataclass
class SourceResult:
    """Outcome of fetching a single source."""

    source: str
    status: str
    detections: List[DetectionRecord] = field(default_factory=list)
    rows_fetched: int = 0
    rows_dropped: int = 0
    error: str | None = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def rows_parsed(self) -> int:
        return len(self.detections)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status,
            "rows_fetched": self.rows_fetched,
            "rows_parsed": self.rows_parsed,
            "rows_dropped": self.rows_dropped,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class FetchRunResult:
    """Per-source results for one coordinator run, in configured source order."""

    sources: List[SourceResult]

    @property
    def succeeded(self) -> List[SourceResult]:
        return [result for result in self.sources if result.succeeded]

    @property
    def failed(self) -> List[SourceResult]:
        return [result for result in self.sources if not result.succeeded]

    @property
    def total_failure(self) -> bool:
        return bool(self.sources) and not self.succeeded

    @property
    def total_rows(self) -> int:
        return sum(result.rows_parsed for result in self.sources)

    def raise_for_total_failure(self) -> None:
        if self.total_failure:
            reasons = "; ".join(f"{r.source}: {r.error}" for r in self.failed)
            raise AllSourcesFailedError(f"All FIRMS sources failed: {reasons}")

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "sources_queried": len(self.sources),
            "sources_succeeded": len(self.succeeded),
            "sources_failed": len(self.failed),
            "rows_parsed": self.total_rows,
            "source_results": [result.to_metadata() for result in self.sources],
        }


def fetch_source(source: str, day_range: int) -> tuple[List[DetectionRecord], FirmsParseSummary]:
    """Default fetcher: download one FIRMS source and parse it."""
    payload = fetch_csv_text(
        map_key=ingest_settings.map_key,
        source=source,
        area=ingest_settings.resolved_area,
        day_range=day_range,
        timeout_seconds=ingest_settings.request_timeout_seconds,
    )
    return parse_detection_rows(payload, source)


def fetch_all_sources(
    sources: Sequence[str],
    day_range: int,
    *,
    fetcher: SourceFetcher = fetch_source,
    timeout_seconds: float | None = None,
    join_grace_seconds: float | None = None,
) -> FetchRunResult:
    """Fetch every source concurrently and classify the batch.

    One worker per source. The join waits for the per-source timeout plus a
    small grace period; a source that has not finished by then is reported as
    failed and is not waited for. Nothing is written to storage here.
    """
    if timeout_seconds is None:
        timeout_seconds = ingest_settings.request_timeout_seconds
    if join_grace_seconds is None:
        join_grace_seconds = ingest_settings.join_grace_seconds

    source_list = list(sources)
    if not source_list:
        raise ValueError("At least one FIRMS source must be configured.")

    log_event(
        LOGGER,
        "firms.coordinator",
        "Fetching FIRMS sources",
        sources=source_list,
        day_range=day_range,
    )

    executor = ThreadPoolExecutor(max_workers=len(source_list), thread_name_prefix="firms-fetch")
    try:
        futures: Dict[str, Future] = {
            source: executor.submit(_timed_fetch, fetcher, source, day_range) for source in source_list
        }
        wait(futures.values(), timeout=timeout_seconds + join_grace_seconds)
    finally:
        # Do not block on a hung source; its thread is abandoned.
        executor.shutdown(wait=False, cancel_futures=True)

    results = [_collect(source, futures[source], timeout_seconds) for source in source_list]
    run = FetchRunResult(sources=results)

    if run.total_failure:
        log_event(
            LOGGER,
            "firms.coordinator",
            "All FIRMS sources failed",
            level="error",
            failures={r.source: r.error for r in run.failed},
        )
    elif run.failed:
        log_event(
            LOGGER,
            "firms.coordinator",
            "Some FIRMS sources failed",
            level="warning",
            failures={r.source: r.error for r in run.failed},
        )
    LOGGER.info(
        "FIRMS fetch finished: %s/%s sources succeeded, %s rows parsed",
        len(run.succeeded),
        len(run.sources),
        run.total_rows,
    )
    return run


def _timed_fetch(
    fetcher: SourceFetcher,
    source: str,
    day_range: int,
) -> tuple[List[DetectionRecord], FirmsParseSummary, int]:
    started = time.monotonic()
    detections, summary = fetcher(source, day_range)
    return detections, summary, int((time.monotonic() - started) * 1000)


def _collect(source: str, future: Future, timeout_seconds: float) -> SourceResult:
    if not future.done():
        future.cancel()
        return SourceResult(
            source=source,
            status="error",
            error=f"Timed out after {timeout_seconds}s",
        )

    exc = future.exception()
    if exc is not None:
        log_event(
            LOGGER,
            "firms.coordinator",
            "Source fetch failed",
            level="error",
            source=source,
            error=str(exc),
        )
        return SourceResult(source=source, status="error", error=str(exc))

    detections, summary, duration_ms = future.result()
    return SourceResult(
        source=source,
        status="success",
        detections=detections,
        rows_fetched=summary.total_rows,
        rows_dropped=summary.dropped_rows,
        duration_ms=duration_ms,
    )
