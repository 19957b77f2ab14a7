"""CLI entrypoint for the publication workers and the scheduled backfill."""

from __future__ import annotations

import argparse
import json
import signal
import threading
from typing import Any, Dict, List, Optional

from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.observability import init_sentry
from src.publishing.scheduler import BackfillSummary, requeue_scheduled_ready
from src.publishing.service import get_publication_queue
from src.publishing.types import PLATFORMS
from src.publishing.worker import start_publication_workers
from src.queue.worker import WorkerHandle
from src.storage.db import get_session_factory, load_models, ping_database, session_scope
from src.storage.redis_client import get_client as get_redis_client
from src.storage.redis_client import ping_redis


logger = get_logger("socialdesk.orchestrator.manager")


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True))


def check_dependencies() -> Dict[str, Any]:
    db_ok, db_error = ping_database()
    redis_ok, redis_error = ping_redis()
    return {
        "status": "ok" if db_ok and redis_ok else "degraded",
        "env": get_settings().env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }


def run_backfill_once(*, limit: Optional[int] = None) -> BackfillSummary:
    settings = get_settings()
    load_models()
    redis_client = get_redis_client()
    queues = {platform: get_publication_queue(platform, redis_client) for platform in PLATFORMS}
    with session_scope(get_session_factory()) as session:
        return requeue_scheduled_ready(session, queues, limit=limit or settings.scheduler_backfill_limit)


def run_workers(*, platforms: Optional[List[str]] = None, stop_event: Optional[threading.Event] = None) -> None:
    """Start the platform workers and block until SIGINT/SIGTERM, then drain in-flight jobs."""

    load_models()
    init_sentry()
    health = check_dependencies()
    if health["status"] != "ok":
        logger.error("worker_dependencies_unavailable", services=health["services"])
        raise SystemExit(1)

    stop = stop_event or threading.Event()

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.info("worker_shutdown_requested", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    handles: List[WorkerHandle] = start_publication_workers(platforms=platforms)
    try:
        stop.wait()
    finally:
        for handle in handles:
            handle.stop(drain=True)
        logger.info("workers_stopped", queues=[handle.queue_name for handle in handles])


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run SocialDesk publication workers.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run publication workers until interrupted.")
    worker_parser.add_argument(
        "--platform",
        action="append",
        choices=list(PLATFORMS),
        default=None,
        help="Platform queue to consume (repeatable). Defaults to all.",
    )

    backfill_parser = subparsers.add_parser("backfill", help="Enqueue scheduled publications that are due.")
    backfill_parser.add_argument("--limit", type=int, default=None, help="Max publications to enqueue.")

    subparsers.add_parser("check", help="Report database and Redis connectivity.")

    args = parser.parse_args(argv)
    if args.command == "worker":
        run_workers(platforms=args.platform)
        return
    if args.command == "check":
        health = check_dependencies()
        _print_json(health)
        if health["status"] != "ok":
            raise SystemExit(1)
        return

    _print_json(run_backfill_once(limit=args.limit).to_dict())


if __name__ == "__main__":
    main()
