"""Main entry point for the delayed group reconciler.

Runs a single reconciliation pass and exits. Scheduling (cron, a
Container Apps job, an Automation schedule) is left to the host.

Exit codes:
    0: Run completed, every group converged
    1: Configuration error or run aborted
    2: Security violation (credential secrets in the environment)
    3: Run completed, but some groups or membership writes failed
"""

from __future__ import annotations

import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from types import FrameType

from .config import Config, ConfigurationError
from .reconciler import Reconciler, RunResult
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_PARTIAL = 3

# LogRecord attributes that are not user-supplied extras
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


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK and HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def exit_code_for(result: RunResult) -> int:
    if result.error is not None:
        return EXIT_FAILED
    if result.has_group_failures:
        return EXIT_PARTIAL
    return EXIT_OK


def install_signal_handlers(reconciler: Reconciler, logger: logging.Logger) -> None:
    """Route SIGTERM/SIGINT to a cooperative shutdown between groups."""

    def signal_handler(signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)


def main(spec_path: Path | None = None, dry_run: bool | None = None) -> int:
    """Run one reconciliation pass.

    Args:
        spec_path: Optional sync spec overriding environment settings.
        dry_run: Force dry-run on or off regardless of configuration.

    Returns:
        Exit code (see module docstring).
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env(spec_path)
        if dry_run is not None and dry_run != config.dry_run:
            config = config.with_overrides(dry_run=dry_run)
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILED

    logger.info(
        "Starting delayed group reconciler",
        extra={
            "source_group_prefix": config.source_group_prefix,
            "delayed_group_suffix": config.delayed_group_suffix,
            "threshold_hours": config.threshold_hours,
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = Reconciler(config, log=logger)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILED

    install_signal_handlers(reconciler, logger)

    result = reconciler.run_once()
    return exit_code_for(result)


def run() -> None:
    """Entry point for the reconciler console script."""
    setup_logging()
    sys.exit(main())


if __name__ == "__main__":
    run()
