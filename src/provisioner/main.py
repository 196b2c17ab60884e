"""Run entry points for provisioning and teardown.

A run is built in a fixed order, and nothing touches the provider until
every step before the sequencer has passed:

1. Config from the environment
2. Optional stack spec file
3. Ambient credentials and the caller's account (STS)
4. Source repository coordinates (environment or git remote)
5. RunContext, then the Sequencer

Exit codes:
    0  run finished (degraded add-ons included)
    1  fatal run error (probe, convergence, substitution, sequencing)
    2  configuration or credential error, nothing was touched
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime

from .aws import provider_factory as aws_provider_factory
from .config import Config, ConfigurationError
from .context import RunContext, discover_repo_coordinates
from .credentials import AccountMismatchError, CredentialError, create_session, resolve_account_id
from .provider import ProviderFactory
from .sequencer import Sequencer
from .spec_loader import SpecLoadError, load_stack_spec
from .summary import RunSummary, log_summary

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2

OPERATIONS = ("provision", "teardown")

# LogRecord attributes that are not structured extras
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


def setup_logging(verbose: bool = False) -> None:
    """Configure structured logging with JSON output."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler.formatter, JsonFormatter):
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from the AWS SDK
    for name in ("boto3", "botocore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def main(
    operation: str = "provision",
    config: Config | None = None,
    *,
    provider_factory: ProviderFactory | None = None,
    report: Callable[[RunSummary], None] | None = None,
) -> int:
    """Run one provision or teardown.

    Returns:
        Exit code (see module docstring).
    """
    logger = logging.getLogger(__name__)

    if operation not in OPERATIONS:
        logger.error("Unknown operation", extra={"operation": operation})
        return EXIT_CONFIG_ERROR

    try:
        config = config or Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    try:
        stack = load_stack_spec(config.stack_spec_file)
    except SpecLoadError as e:
        logger.error("Stack spec loading failed", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    loop = asyncio.get_running_loop()
    try:
        session = create_session(config.region)
        account_id = await loop.run_in_executor(
            None, resolve_account_id, session, config.expected_account_id
        )
    except AccountMismatchError as e:
        # SECURITY: wrong account - refuse before any probe
        logger.critical("Account guard blocked the run", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR
    except CredentialError as e:
        logger.error("Credential error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    try:
        if config.github_org and config.github_repo:
            org, repo = config.github_org, config.github_repo
        else:
            org, repo = await loop.run_in_executor(None, discover_repo_coordinates)
    except ConfigurationError as e:
        logger.error("Repository coordinates unavailable", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    context = RunContext.from_config(config, account_id, org, repo)
    logger.info(
        f"Starting {operation}",
        extra={
            "stack_name": context.stack_name,
            "region": context.region,
            "account_id": context.account_id,
            "repository": f"{org}/{repo}",
        },
    )

    sequencer = Sequencer(
        context,
        stack,
        provider_factory or aws_provider_factory(config),
        templates_dir=config.templates_dir,
        pipeline_files=config.pipeline_files,
        kubeconfig_path=config.kubeconfig_path,
        addon_workers=config.addon_workers,
    )

    try:
        if operation == "provision":
            summary = await sequencer.provision()
        else:
            summary = await sequencer.teardown()
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Run failed unexpectedly", extra={"error": str(e)})
        return EXIT_RUN_FAILED

    log_summary(summary)
    if report is not None:
        report(summary)
    return EXIT_OK if summary.succeeded else EXIT_RUN_FAILED


def run() -> None:
    """Entry point for ``python -m provisioner.main``."""
    setup_logging()
    operation = sys.argv[1] if len(sys.argv) > 1 else "provision"
    sys.exit(asyncio.run(main(operation)))


if __name__ == "__main__":
    run()
