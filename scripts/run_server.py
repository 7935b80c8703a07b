from __future__ import annotations

"""Start the HTTP API together with the background reconciler."""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

from scripts import runtime
from webmmb.adapters.backend_factory import initialize_backend
from webmmb.config.logging_config import get_logger
from webmmb.config.settings import get_settings
from webmmb.domain.exceptions import DatabaseInUseError
from webmmb.observability.metrics import ensure_metrics_exporter
from webmmb.presentation.api import create_app
from webmmb.use_cases.job_service import build_service
from webmmb.workers import ReconcilerWorker

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the WebMMB job service")
    parser.add_argument("--host", default=None, help="Bind address override")
    parser.add_argument("--port", type=int, default=None, help="Port override")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    runtime.initialize_logging(settings, json_logs=args.json_logs)

    try:
        settings.validate_paths()
    except ValueError as exc:
        logger.error("configuration_invalid", error=str(exc))
        return 1

    initialize_backend(settings)
    try:
        service = build_service(settings)
    except DatabaseInUseError as exc:
        logger.error("job_database_in_use", error=str(exc))
        return 1
    if settings.metrics_port is not None:
        ensure_metrics_exporter(settings.metrics_port)

    controller = runtime.create_shutdown_controller()
    reconciler = ReconcilerWorker(
        service,
        interval_seconds=settings.sweep_interval_seconds,
        stop_event=controller.event,
    )
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(service),
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            log_config=None,
        )
    )

    def _stop_server() -> None:
        server.should_exit = True

    runtime.install_signal_handlers(controller, on_shutdown=_stop_server)

    reconciler.start()
    logger.info(
        "server_starting",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        backend=settings.backend,
    )
    try:
        server.run()
    finally:
        reconciler.stop()
        service.shutdown()
        logger.info("server_stopped")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
