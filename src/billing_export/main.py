"""Process entry point for the billing export engine.

Wires configuration, the plan, the Azure-backed Cloud Resource API and the
state store into a PlanExecutor and maps the run summary to an exit code.
SIGINT/SIGTERM cancel the run context, which unblocks every in-flight wait.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .cloud_api import AzureCloudApi
from .config import Config, ConfigurationError
from .context import RunContext
from .executor import PlanExecutor, RunSummary
from .spec_loader import SpecLoadError, load_plan
from .state_store import JsonLinesStateStore
from .teardown import Teardown, TeardownSummary


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

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
                if key not in (
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
                ):
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_signal_handlers(ctx: RunContext) -> None:
    """Cancel the run on SIGINT/SIGTERM."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        ctx.cancel(f"Received {sig.name}")

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not on the main thread or unsupported platform; the run deadline still applies
            logger.debug("Signal handlers unavailable", extra={"signal": sig.name})


async def run_plan(config: Config) -> RunSummary:
    """Build the Azure-backed executor for ``config`` and run it once.

    Raises:
        SpecLoadError: If the plan file is invalid.
    """
    plan = load_plan(config.plan_file)
    api = AzureCloudApi(config, plan)
    store = JsonLinesStateStore(config.state_file)
    ctx = RunContext(config.run_timeout_seconds)
    install_signal_handlers(ctx)

    executor = PlanExecutor(config, plan, api, store, ctx)
    return await executor.run()


async def run_teardown(config: Config, delete_storage: bool = False) -> TeardownSummary:
    """Build the Azure-backed teardown for ``config`` and run it once.

    Raises:
        SpecLoadError: If the plan file is invalid.
        ExportOperatorError: If the host cannot be authorized or targets listed.
    """
    plan = load_plan(config.plan_file)
    api = AzureCloudApi(config, plan)
    store = JsonLinesStateStore(config.state_file)
    ctx = RunContext(config.run_timeout_seconds)
    install_signal_handlers(ctx)

    teardown = Teardown(config, plan, api, store, ctx, delete_storage=delete_storage)
    return await teardown.run()


async def main() -> int:
    """Run once from environment configuration.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 2

    logger.info(
        "Starting billing export run",
        extra={
            "host_subscription_id": config.host_subscription_id,
            "location": config.location,
            "storage_account": config.storage_account_name,
            "dry_run": config.dry_run,
        },
    )

    try:
        summary = await run_plan(config)
    except SpecLoadError as e:
        logger.error("Plan loading failed", extra={"error": str(e)})
        return 2

    return summary.exit_code


def run() -> None:
    """Entry point for running from the environment alone."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
