"""Process setup shared by the command line entry points.

Configures structured JSON logging and runs client operations under a
RequestContext that is cancelled on SIGINT/SIGTERM, so an interrupted
reconcile stops at its next suspension point instead of mid-request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from .client import Client
from .config import Config
from .context import RequestContext
from .power import PowerOrchestrator
from .reconciler import ReconcileResult, ServerChange, ServerRelationReconciler

T = TypeVar("T")

# Overall deadline of one command line invocation
DEFAULT_OPERATION_TIMEOUT_SECONDS = 3600.0

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
    """Format logs as JSON, including fields passed via `extra`."""

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


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Request lines are logged by vdcops.transport already
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_with_context(
    config: Config,
    operation: Callable[[Client, RequestContext], Awaitable[T]],
    timeout: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
) -> T:
    """Run `operation` with a fresh client and a signal-cancellable context."""
    logger = logging.getLogger(__name__)
    ctx = RequestContext.with_timeout(timeout)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling", extra={"signal": sig.name})
        ctx.cancel()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            continue
        installed.append(sig)

    try:
        async with Client(config) as client:
            return await operation(client, ctx)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def reconcile_server(
    config: Config, server_id: str, change: ServerChange
) -> ReconcileResult:
    """Apply `change` to a server in a single reconcile pass."""

    async def operation(client: Client, ctx: RequestContext) -> ReconcileResult:
        reconciler = ServerRelationReconciler(
            client, server_id, change, power=PowerOrchestrator(client)
        )
        return await reconciler.apply(ctx)

    return await run_with_context(config, operation)
