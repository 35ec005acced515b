"""Operator CLI: enqueue pipeline tasks for the rq worker, run them inline, or print stats.

Scheduled from cron, e.g.:

    */10 * * * *  python -m incidents.jobs.cli enqueue fetch
    0 * * * *     python -m incidents.jobs.cli enqueue sweep
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from incidents.jobs import tasks

LOGGER = logging.getLogger("incidents.jobs.cli")

TASKS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "fetch": tasks.fetch_fires_task,
    "cluster": tasks.cluster_fires_task,
    "sweep": tasks.sweep_incidents_task,
    "purge": tasks.purge_incidents_task,
}


def _task_kwargs(args: argparse.Namespace) -> Dict[str, Any]:
    if args.task != "fetch":
        return {}
    kwargs: Dict[str, Any] = {}
    if args.day_range is not None:
        kwargs["day_range"] = args.day_range
    if args.sources:
        kwargs["sources"] = [s.strip() for s in args.sources.split(",") if s.strip()]
    return kwargs


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wildfire incident pipeline jobs.")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("enqueue", "Enqueue a task on the rq queue."),
        ("run", "Run a task inline in this process (no worker needed)."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("task", choices=sorted(TASKS))
        cmd.add_argument("--day-range", type=int, default=None, help="fetch only: FIRMS lookback days.")
        cmd.add_argument("--sources", type=str, default=None, help="fetch only: comma-separated sources.")

    sub.add_parser("stats", help="Print incident and detection counts.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = parse_args(argv)

    if args.command == "stats":
        from incidents.fires.lifecycle import summarize
        from incidents.fires.repo import SqlIncidentStore

        print(json.dumps(summarize(SqlIncidentStore()), indent=2, sort_keys=True))
        return 0

    func = TASKS[args.task]
    kwargs = _task_kwargs(args)
    if args.command == "enqueue":
        from incidents.jobs.queue import enqueue

        job = enqueue(func, source="cli", **kwargs)
        LOGGER.info("Enqueued %s job_id=%s", args.task, job.id)
        return 0

    try:
        metadata = func(**kwargs)
    except Exception:  # noqa: BLE001 - reported as exit status
        LOGGER.exception("Task %s failed", args.task)
        return 1
    print(json.dumps(metadata, indent=2, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
