"""vdcops command line interface.

Usage:
    vdcops reconcile SERVER_ID --current cur.yaml --desired new.yaml [--dry-run]
    vdcops power status SERVER_ID
    vdcops power start|stop|shutdown SERVER_ID
    vdcops firewall compose rules.yaml --family v4

Credentials and client options are read from the environment (see
Config.from_env).

Exit codes: 0 success, 1 operation failed, 2 configuration error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import NoReturn, TypeVar

import click

from . import __version__
from .client import Client
from .config import Config, ConfigurationError
from .context import RequestContext
from .errors import ValidationError, VdcError
from .firewall import add_default_inbound_rules
from .main import reconcile_server, run_with_context, setup_logging
from .models import AddressFamily, validate_uuid
from .power import PowerOrchestrator
from .reconciler import ServerChange, build_plan
from .spec_loader import SpecLoadError, load_firewall_rules, load_server_config

T = TypeVar("T")

EXIT_OPERATION_ERROR = 1
EXIT_CONFIG_ERROR = 2

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_existing_file = click.Path(exists=True, dir_okay=False, path_type=Path)


def load_config() -> Config:
    """Client configuration for commands that talk to the platform."""
    return Config.from_env()


def fail(message: str, code: int) -> NoReturn:
    """Print `message` to stderr and exit with `code`."""
    click.secho(message, fg="red", err=True)
    raise SystemExit(code)


def _checked_server_id(server_id: str) -> str:
    try:
        return validate_uuid(server_id, "server_id")
    except ValidationError as e:
        fail(str(e), EXIT_CONFIG_ERROR)


def _run(operation: Callable[[Client, RequestContext], Awaitable[T]]) -> T:
    """Run a client operation, mapping failures to exit codes."""
    try:
        config = load_config()
    except ConfigurationError as e:
        fail(str(e), EXIT_CONFIG_ERROR)
    try:
        return asyncio.run(run_with_context(config, operation))
    except VdcError as e:
        fail(str(e), EXIT_OPERATION_ERROR)


@click.group()
@click.version_option(version=__version__, prog_name="vdcops")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Level of the JSON log written to stderr",
)
def cli(log_level: str) -> None:
    """vdcops - virtual datacenter server operations."""
    setup_logging(getattr(logging, log_level.upper()))


# =============================================================================
# Reconcile
# =============================================================================


@cli.command()
@click.argument("server_id")
@click.option(
    "--current",
    "current_path",
    type=_existing_file,
    required=True,
    help="YAML file with the current server configuration",
)
@click.option(
    "--desired",
    "desired_path",
    type=_existing_file,
    required=True,
    help="YAML file with the desired server configuration",
)
@click.option("--dry-run", is_flag=True, help="Print the plan without applying it")
def reconcile(server_id: str, current_path: Path, desired_path: Path, dry_run: bool) -> None:
    """Apply the desired configuration to a server."""
    server_id = _checked_server_id(server_id)
    try:
        change = ServerChange(
            old=load_server_config(current_path), new=load_server_config(desired_path)
        )
    except SpecLoadError as e:
        fail(str(e), EXIT_CONFIG_ERROR)

    if dry_run:
        update = change.server_update()
        if update:
            click.echo(f"update server {server_id}: {', '.join(sorted(update))}")
        for op in build_plan(change):
            click.echo(op.describe())
        if change.shutdown_required():
            click.echo("shutdown required: yes")
        elif change.shutdown_required(legacy=True):
            click.echo("shutdown required: only for legacy servers")
        else:
            click.echo("shutdown required: no")
        return

    try:
        config = load_config()
    except ConfigurationError as e:
        fail(str(e), EXIT_CONFIG_ERROR)

    result = asyncio.run(reconcile_server(config, server_id, change))
    for op in result.operations:
        click.echo(op.describe())
    if result.error is not None:
        fail(str(result.error), EXIT_OPERATION_ERROR)
    click.secho(
        f"Reconciled server {result.server_id}: {len(result.operations)} operation(s), "
        f"shutdown performed: {'yes' if result.shutdown_performed else 'no'}",
        fg="green",
    )


# =============================================================================
# Power
# =============================================================================


@cli.group()
def power() -> None:
    """Server power state."""
    pass


@power.command("status")
@click.argument("server_id")
def power_status(server_id: str) -> None:
    """Show whether a server is running."""
    server_id = _checked_server_id(server_id)
    state = _run(lambda client, ctx: PowerOrchestrator(client).status(ctx, server_id))
    click.echo(
        json.dumps(
            {
                "server_id": server_id,
                "running": state.running,
                "supports_hot_update": state.supports_hot_update,
            }
        )
    )


def _transition(server_id: str, name: str) -> None:
    server_id = _checked_server_id(server_id)

    async def operation(client: Client, ctx: RequestContext) -> bool:
        orchestrator = PowerOrchestrator(client)
        return bool(await getattr(orchestrator, name)(ctx, server_id))

    changed = _run(operation)
    if changed:
        click.secho(f"{name}: server {server_id} done", fg="green")
    else:
        click.echo(f"{name}: server {server_id} already in requested state")


@power.command("start")
@click.argument("server_id")
def power_start(server_id: str) -> None:
    """Power a server on."""
    _transition(server_id, "start")


@power.command("stop")
@click.argument("server_id")
def power_stop(server_id: str) -> None:
    """Power a server off immediately."""
    _transition(server_id, "stop")


@power.command("shutdown")
@click.argument("server_id")
def power_shutdown(server_id: str) -> None:
    """Shut a server down gracefully, powering it off if that fails."""
    _transition(server_id, "shutdown")


# =============================================================================
# Firewall
# =============================================================================


@cli.group()
def firewall() -> None:
    """Firewall rule helpers."""
    pass


@firewall.command("compose")
@click.argument("rules_path", metavar="FILE", type=_existing_file)
@click.option(
    "--family",
    type=click.Choice([f.value for f in AddressFamily]),
    default=AddressFamily.V4.value,
    show_default=True,
    help="Address family of the inbound rules",
)
def firewall_compose(rules_path: Path, family: str) -> None:
    """Print inbound rules with the default rule block appended, as JSON."""
    try:
        rules = load_firewall_rules(rules_path)
    except SpecLoadError as e:
        fail(str(e), EXIT_CONFIG_ERROR)
    composed = add_default_inbound_rules(rules, AddressFamily(family))
    click.echo(json.dumps([rule.to_wire() for rule in composed], indent=2))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
