from __future__ import annotations

"""Standalone reconciliation loop over persisted jobs.

Operational tool for batch-queue deployments: with ``--run-once`` it performs
a single sweep and exits. It refuses to run while a server owns the job
database, and it never drives the local backend because local jobs are
children of the process that started them.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import runtime
from webmmb.adapters.backend_factory import initialize_backend
from webmmb.config.logging_config import get_logger
from webmmb.config.settings import get_settings
from webmmb.domain.exceptions import DatabaseInUseError
from webmmb.use_cases.job_service import build_service
from webmmb.workers import ReconcilerWorker

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the job reconciliation loop")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Interval between sweeps (defaults to the configured value)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args(argv)
    if args.interval_seconds is not None and args.interval_seconds <= 0:
        parser.error("--interval-seconds must be greater than 0")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    runtime.initialize_logging(settings, json_logs=args.json_logs)

    if not settings.persistence_path:
        logger.error("reconciler_requires_persistence")
        return 1

    if settings.backend == "local":
        logger.error("reconciler_local_backend_unsupported")
        return 1

    controller = runtime.create_shutdown_controller()
    runtime.install_signal_handlers(controller)

    initialize_backend(settings)
    try:
        service = build_service(settings)
    except DatabaseInUseError as exc:
        logger.error("reconciler_database_in_use", error=str(exc))
        return 1
    interval = args.interval_seconds or settings.sweep_interval_seconds
    worker = ReconcilerWorker(service, interval_seconds=interval)

    try:
        runtime.run_scheduler_loop(
            controller=controller,
            interval_seconds=interval,
            run_once=args.run_once,
            action=worker.run_once,
        )
    finally:
        service.shutdown()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
