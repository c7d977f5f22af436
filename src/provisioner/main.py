"""Main entry point for the AWS resource operator.

Runs one reconciliation pass over the manifests in SPECS_DIR using
configuration from the environment, then exits:
- 0: every resource reconciled
- 1: at least one resource failed, or an unexpected error
- 2: invalid configuration or manifests
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

from .config import Config, ConfigurationError
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_manifests
from .state_store import StateStoreError

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID_INPUT = 2

# LogRecord attributes that are not user supplied extras
_RESERVED_RECORD_FIELDS = frozenset(
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

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    for name in ("boto3", "botocore", "urllib3", "s3transfer"):
        logging.getLogger(name).setLevel(logging.WARNING)


def main() -> int:
    """Run one reconciliation pass.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_INVALID_INPUT

    logger.info(
        "Starting AWS resource operator",
        extra={
            "region": config.region,
            "specs_dir": str(config.specs_dir),
            "state_file": str(config.state_file),
            "dry_run": config.dry_run,
        },
    )

    try:
        manifests = load_manifests(config.specs_dir)
    except SpecLoadError as e:
        # Manifest loading/validation failed - user configuration error
        logger.error(
            "Manifest loading failed",
            extra={"error": str(e), "specs_dir": str(config.specs_dir)},
        )
        return EXIT_INVALID_INPUT

    try:
        reconciler = Reconciler(config)
        result = reconciler.apply(manifests)
    except StateStoreError as e:
        logger.error("State file error", extra={"error": str(e)})
        return EXIT_FAILURE
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Operator failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    if not result.success:
        return EXIT_FAILURE

    logger.info("Operator finished", extra={"duration_seconds": result.duration_seconds})
    return EXIT_OK


def run() -> None:
    """Entry point for the operator container."""
    sys.exit(main())


if __name__ == "__main__":
    run()
