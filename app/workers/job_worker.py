from __future__ import annotations

import argparse
import os
import time

from app import create_app
from app.contexts.erp.interfaces.workers.runtime import get_gateway
from app.contexts.jobs.processor import process_job_queue
from app.db import close_db, get_db
from app.observability import bind_request_id, new_background_request_id


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drains the ERP write job queue.")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum jobs per batch.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds to wait between batches.")
    return parser


def _run_once(app, limit: int) -> dict:
    with app.app_context():
        try:
            return process_job_queue(get_db(), get_gateway(app), limit)
        finally:
            close_db()


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    os.environ.setdefault("SYNC_SCHEDULER_ENABLED", "false")
    os.environ.setdefault("DB_AUTO_INIT", "false")
    app = create_app()

    configured_limit = int(app.config.get("JOB_QUEUE_BATCH_SIZE", 25) or 25)
    configured_interval = int(app.config.get("JOB_QUEUE_DRAIN_INTERVAL_SECONDS", 60) or 60)
    limit = max(1, int(args.limit or configured_limit))
    interval_seconds = max(1, int(args.interval or configured_interval))

    while True:
        run_request_id = new_background_request_id("worker")
        with bind_request_id(run_request_id):
            summary = _run_once(app, limit)
        app.logger.info(
            "job_worker_batch_completed",
            extra={
                "request_id": run_request_id,
                "processed": summary.get("processed", 0),
                "succeeded": summary.get("succeeded", 0),
                "requeued": summary.get("requeued", 0),
                "failed": summary.get("failed", 0),
                "deferred": summary.get("deferred", 0),
            },
        )
        if args.once:
            break
        time.sleep(interval_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
