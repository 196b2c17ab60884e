"""Stack provisioner CLI.

Usage:
    provisioner provision            # Create or converge the stack
    provisioner teardown             # Remove the stack in reverse order
    provisioner provision -v         # Debug logging
    provisioner provision --stack-spec stack.yaml

Everything else is read from the environment (see Config.from_env).
"""

from __future__ import annotations

import asyncio
import dataclasses
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .main import EXIT_CONFIG_ERROR, main, setup_logging
from .summary import RunSummary, format_summary

VERSION = "0.1.0"


def _echo_summary(summary: RunSummary) -> None:
    click.echo(format_summary(summary), err=True)


def execute(operation: str, stack_spec: Path | None, verbose: bool) -> None:
    """Load config with CLI overrides, run the operation and exit."""
    setup_logging(verbose)

    try:
        config = Config.from_env()
        if stack_spec is not None:
            config = dataclasses.replace(config, stack_spec_file=stack_spec)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    sys.exit(asyncio.run(main(operation, config, report=_echo_summary)))


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="provisioner")
def cli() -> None:
    """Idempotent stack provisioner.

    \b
    Required environment:
        STACK_NAME   Prefix for every resource name
        AWS_REGION   Target region
    """
    pass


stack_spec_option = click.option(
    "--stack-spec",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML stack spec (overrides STACK_SPEC_FILE)",
)
verbose_option = click.option("--verbose", "-v", is_flag=True, help="Debug logging")


@cli.command()
@stack_spec_option
@verbose_option
def provision(stack_spec: Path | None, verbose: bool) -> None:
    """Create missing resources and repair unhealthy add-ons.

    Safe to re-run: resources that already exist are left as they are.
    """
    execute("provision", stack_spec, verbose)


@cli.command()
@stack_spec_option
@verbose_option
def teardown(stack_spec: Path | None, verbose: bool) -> None:
    """Delete the stack in reverse dependency order.

    The shared OIDC identity provider is kept.
    """
    execute("teardown", stack_spec, verbose)


if __name__ == "__main__":
    cli()
