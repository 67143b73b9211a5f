"""Process lifecycle for the Key Vault sidecar.

Wires the collaborators together, installs signal handlers and maps the
outcome of the reconciliation loop to a process exit code:
- 0: stopped by SIGTERM/SIGINT
- 1: fatal sync error, credential setup failure, or unexpected exception
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime

from .config import Config
from .credentials import (
    AZURE_PUBLIC_CLOUD,
    AuthConfigError,
    AzureAuthConfig,
    build_credential,
)
from .errors import SyncError
from .reconciler import Reconciler
from .tokens import TokenProvider

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_RECORD_ATTRS = frozenset(
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
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    on_signal: Callable[[signal.Signals], None],
) -> None:
    """Route SIGTERM and SIGINT to ``on_signal`` on the event loop."""
    for sig in HANDLED_SIGNALS:
        loop.add_signal_handler(sig, on_signal, sig)


def remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in HANDLED_SIGNALS:
        loop.remove_signal_handler(sig)


def build_reconciler(config: Config, auth_config: AzureAuthConfig | None) -> Reconciler:
    """Create the reconciler and its Azure-backed collaborators.

    Raises:
        AuthConfigError: If the credential cannot be built.
    """
    credential = build_credential(auth_config)
    cloud = auth_config.environment if auth_config is not None else AZURE_PUBLIC_CLOUD
    return Reconciler(config, TokenProvider(credential, cloud))


async def run_reconciler(reconciler: Reconciler, shutdown_timeout_seconds: float) -> int:
    """Run the reconciler until it stops or a termination signal arrives.

    After a signal, the in-flight cycle gets ``shutdown_timeout_seconds``
    to reach a checkpoint before its task is cancelled. A write already
    handed to the executor still completes, since the executor is drained
    before the loop closes.

    Returns:
        Exit code (0 for signal-triggered stop, 1 for failure).
    """
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()
        stop_requested.set()

    install_signal_handlers(loop, signal_handler)
    run_task = asyncio.create_task(reconciler.run())
    stop_task = asyncio.create_task(stop_requested.wait())

    try:
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        if not run_task.done():
            done, _ = await asyncio.wait({run_task}, timeout=shutdown_timeout_seconds)
            if not done:
                logger.warning(
                    "Shutdown timeout exceeded, cancelling in-flight cycle",
                    extra={"timeout_seconds": shutdown_timeout_seconds},
                )
                run_task.cancel()
                await asyncio.wait({run_task})
    finally:
        stop_task.cancel()
        remove_signal_handlers(loop)

    if run_task.cancelled():
        logger.info("Sidecar stopped")
        return 0

    try:
        run_task.result()
    except SyncError as e:
        logger.error(
            "Fatal sync error",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Sidecar stopped")
    return 0


async def main(config: Config, auth_config: AzureAuthConfig | None = None) -> int:
    """Run the sidecar.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    try:
        reconciler = build_reconciler(config, auth_config)
    except AuthConfigError as e:
        logger.error("Credential setup failed", extra={"error": str(e)})
        return 1

    return await run_reconciler(reconciler, config.shutdown_timeout_seconds)
