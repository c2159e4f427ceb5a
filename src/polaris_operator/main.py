"""Main entry point for the Polaris membership operator.

The operator reads desired-state manifests from SPECS_DIR and keeps the
membership of RSC policy groupings (SLA domains, tag rule scopes, cloud
account features) in line with them until it receives SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .backends import BackendRegistry
from .client import PolarisClient
from .config import Config, ConfigurationError
from .credentials import CredentialError, ServiceAccount, ServiceAccountCredential
from .reconciler import Reconciler

# LogRecord attributes that are not structured context
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

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the azure-core pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconciler(config: Config) -> tuple[Reconciler, PolarisClient]:
    """Wire credential, client and backends into a reconciler.

    Raises:
        CredentialError: If no service account is configured.
    """
    account = ServiceAccount.from_env()
    credential = ServiceAccountCredential(account)
    client = PolarisClient(
        account.api_url,
        credential,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    reconciler = Reconciler(BackendRegistry.for_client(client), config=config)
    return reconciler, client


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Polaris membership operator",
        extra={
            "specs_dir": str(config.specs_dir),
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler, client = build_reconciler(config)
    except CredentialError as e:
        logger.critical("Service account unavailable", extra={"error": str(e)})
        return 2
    except Exception as e:
        # Unexpected initialization error
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        client.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
