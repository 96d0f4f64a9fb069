"""Main entry point for disk-manager.

One run scans the cluster for annotated claims, reconciles the snapshot
policy of every backing disk and exits. It is meant to be scheduled (for
example as a Kubernetes CronJob) rather than to loop.

Exit codes:
    0: every disk already had, or now has, its desired policy
    1: configuration, client, scan or per-disk failure
    130: interrupted before every disk was attempted
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from .clients import ClientBuildError, Clients, build_clients
from .config import Config, ConfigurationError
from .errors import ScanError
from .reconciler import Reconciler
from .scanner import StorageScanner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(*, json_format: bool = True, verbose: bool = False) -> None:
    """Configure logging: JSON lines for production, plain text for local runs."""
    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from client libraries
    for noisy in ("google", "kubernetes", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


async def main(
    config_file: Path,
    *,
    local: bool = False,
    kubeconfig: Path | None = None,
    dry_run: bool | None = None,
    max_workers: int | None = None,
) -> int:
    """Load configuration, build clients and run one reconciliation pass.

    Returns:
        Exit code (see module docstring).
    """
    try:
        config = Config.from_file(config_file, dry_run=dry_run, max_workers=max_workers)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting disk-manager",
        extra={
            "project": config.google_project,
            "zone": config.zone,
            "region": config.region,
            "annotation": config.target_annotation,
            "dry_run": config.dry_run,
        },
    )

    try:
        clients = build_clients(config, local=local, kubeconfig=kubeconfig)
    except ClientBuildError as e:
        logger.error("Error building clients", extra={"error": str(e)})
        return EXIT_FAILURE

    return await run_disk_manager(config, clients)


async def run_disk_manager(config: Config, clients: Clients) -> int:
    """Scan for annotated claims and reconcile their disks.

    SIGTERM and SIGINT stop new reconciliations; attach calls already issued
    are allowed to finish.
    """
    scanner = StorageScanner(clients.k8s, config.target_annotation)
    try:
        targets = await asyncio.to_thread(scanner.scan)
    except ScanError as e:
        logger.error("Error retrieving persistent disks", extra={"error": str(e)})
        return EXIT_FAILURE

    if not targets:
        logger.info(
            "No annotated claims found, nothing to do",
            extra={"annotation": config.target_annotation},
        )
        return EXIT_OK

    reconciler = Reconciler(clients.gcp, config)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    handled = (signal.SIGTERM, signal.SIGINT)
    for sig in handled:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await reconciler.run(targets)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)

    if result.failed:
        return EXIT_FAILURE
    if result.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_OK
