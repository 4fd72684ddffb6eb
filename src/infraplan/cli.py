"""Command-line interface for planning and applying resource manifests."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import InfraPlanError
from .manifest import Manifest
from .models import (
    ApplyResult,
    EngineOptions,
    Plan,
    ReplacePolicy,
    ResourceId,
    StateRecord,
    validate_identifier,
)
from .provider import ProviderProtocol, load_provider
from .provisioner import Provisioner
from .repository import DynamoDBStateStore
from .state import FileStateStore
from .state_protocol import StateStoreProtocol

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

SYMBOLS = {"create": "+", "update": "~", "replace": "-/+", "delete": "-"}
DEFAULT_STATE_DIR = ".infraplan/state"


@click.group()
@click.version_option(package_name="infraplan")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Plan and apply infrastructure declared in YAML manifests."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _state_options(f: F) -> F:
    """Options selecting the state backend, shared by every command."""
    options = [
        click.option(
            "--state-dir",
            envvar="INFRAPLAN_STATE_DIR",
            default=DEFAULT_STATE_DIR,
            show_default=True,
            help="Directory for local state files.",
        ),
        click.option(
            "--table",
            envvar="INFRAPLAN_TABLE",
            help="DynamoDB table for state (overrides --state-dir).",
        ),
        click.option("--region", help="AWS region (default: use boto3 defaults)."),
        click.option("--endpoint-url", help="AWS endpoint URL (e.g., LocalStack)."),
    ]
    for option in reversed(options):
        f = option(f)
    return f


_file_option = click.option(
    "--file",
    "-f",
    "file_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML manifest file.",
)

_provider_option = click.option(
    "--provider",
    default="local",
    show_default=True,
    help="Provider: 'local' or a 'module:factory' import path.",
)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, reporting library errors as a CLI failure."""
    try:
        return asyncio.run(coro)
    except (InfraPlanError, ClientError, BotoCoreError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _load_manifest(file_path: str) -> Manifest:
    try:
        return Manifest.load(file_path)
    except InfraPlanError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _make_store(
    workspace: str,
    state_dir: str,
    table: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> StateStoreProtocol:
    if table:
        return DynamoDBStateStore(
            table, workspace=workspace, region=region, endpoint_url=endpoint_url
        )
    return FileStateStore(Path(state_dir) / workspace)


def _make_provider(spec: str, manifest: Manifest) -> ProviderProtocol:
    try:
        if spec == "local":
            return load_provider(spec, replace_on=manifest.replace_on)
        return load_provider(spec)
    except (ImportError, AttributeError, ValueError) as e:
        click.echo(f"Error: cannot load provider {spec!r}: {e}", err=True)
        sys.exit(1)


def _parse_resource_id(value: str) -> ResourceId:
    try:
        return ResourceId.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _echo_plan(plan: Plan) -> None:
    if plan.is_empty:
        click.echo("No changes. Infrastructure is up-to-date.")
        return

    click.echo(f"Plan: {len(plan)} step(s)\n")
    for step in plan:
        symbol = SYMBOLS.get(step.action.value, "?")
        changed = f" ({', '.join(step.changed)})" if step.changed and not step.deposed else ""
        click.echo(f"  {symbol} {step.describe()}{changed}")


def _echo_result(result: ApplyResult) -> None:
    if result.dry_run:
        click.echo(f"\nDry run: {len(result.planned)} step(s) planned, nothing applied.")
        return

    click.echo(
        f"\nApplied: {len(result.created)} created, "
        f"{len(result.updated)} updated, "
        f"{len(result.replaced)} replaced, "
        f"{len(result.deleted)} deleted."
    )
    if result.cancelled:
        click.echo("Run was cancelled.", err=True)
    if result.failed:
        click.echo(f"\nErrors ({len(result.failed)}):", err=True)
        for failure in result.failed:
            click.echo(
                f"  - {failure.key}: {failure.error} (attempts: {failure.attempts})", err=True
            )
    if result.skipped:
        click.echo(f"\nSkipped ({len(result.skipped)}):", err=True)
        for key in result.skipped:
            click.echo(f"  - {key}", err=True)


# ---------------------------------------------------------------------------
# plan / apply / graph
# ---------------------------------------------------------------------------


@cli.command("plan")
@_file_option
@_state_options
@_provider_option
@click.option(
    "--replace-policy",
    type=click.Choice([p.value for p in ReplacePolicy]),
    default=ReplacePolicy.CREATE_BEFORE_DESTROY.value,
    show_default=True,
    help="Ordering of the two halves of a replacement.",
)
@click.option("--json", "as_json", is_flag=True, help="Output the plan as JSON.")
def plan_cmd(
    file_path: str,
    state_dir: str,
    table: str | None,
    region: str | None,
    endpoint_url: str | None,
    provider: str,
    replace_policy: str,
    as_json: bool,
) -> None:
    """Preview changes without applying (like terraform plan)."""
    manifest = _load_manifest(file_path)
    options = EngineOptions(replace_policy=ReplacePolicy(replace_policy))

    impl = _make_provider(provider, manifest)

    async def _plan() -> Plan:
        store = _make_store(manifest.workspace, state_dir, table, region, endpoint_url)
        async with Provisioner(impl, store, options) as p:
            return await p.plan(manifest.resources)

    plan = _run(_plan())
    if as_json:
        click.echo(json.dumps(plan.as_dict(), indent=2))
    else:
        _echo_plan(plan)


@cli.command("apply")
@_file_option
@_state_options
@_provider_option
@click.option(
    "--replace-policy",
    type=click.Choice([p.value for p in ReplacePolicy]),
    default=ReplacePolicy.CREATE_BEFORE_DESTROY.value,
    show_default=True,
    help="Ordering of the two halves of a replacement.",
)
@click.option("--dry-run", is_flag=True, help="Show what would be applied.")
@click.option(
    "--concurrency",
    type=click.IntRange(1, 256),
    default=4,
    show_default=True,
    help="Maximum provider calls in flight.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(1, 20),
    default=3,
    show_default=True,
    help="Attempts per step on transient errors.",
)
@click.option("--json", "as_json", is_flag=True, help="Output the run report as JSON.")
def apply_cmd(
    file_path: str,
    state_dir: str,
    table: str | None,
    region: str | None,
    endpoint_url: str | None,
    provider: str,
    replace_policy: str,
    dry_run: bool,
    concurrency: int,
    max_attempts: int,
    as_json: bool,
) -> None:
    """Apply a manifest (like terraform apply)."""
    manifest = _load_manifest(file_path)
    options = EngineOptions(
        concurrency=concurrency,
        max_attempts=max_attempts,
        dry_run=dry_run,
        replace_policy=ReplacePolicy(replace_policy),
    )

    impl = _make_provider(provider, manifest)

    async def _apply() -> tuple[Plan, ApplyResult]:
        store = _make_store(manifest.workspace, state_dir, table, region, endpoint_url)
        async with Provisioner(impl, store, options) as p:
            plan = await p.plan(manifest.resources)
            loop = asyncio.get_running_loop()
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signal.SIGINT, p.cancel)
            try:
                return plan, await p.execute(plan)
            finally:
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(signal.SIGINT)

    plan, result = _run(_apply())
    if as_json:
        click.echo(json.dumps(result.as_dict(), indent=2))
    else:
        _echo_plan(plan)
        if not plan.is_empty:
            _echo_result(result)

    if not result.ok:
        sys.exit(1)


@cli.command("graph")
@_file_option
def graph_cmd(file_path: str) -> None:
    """Validate a manifest and print resources in dependency order."""
    from .graph import build_graph
    from .validator import validate_graph

    manifest = _load_manifest(file_path)
    try:
        graph = build_graph(manifest.resources)
        order = validate_graph(graph)
    except InfraPlanError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for rid in order:
        deps = graph.dependencies(rid)
        suffix = f" <- {', '.join(str(d) for d in deps)}" if deps else ""
        click.echo(f"{rid}{suffix}")


# ---------------------------------------------------------------------------
# state
# ---------------------------------------------------------------------------


@cli.group()
def state() -> None:
    """Inspect and edit recorded state."""


def _check_workspace(ctx: click.Context, param: click.Parameter, value: str) -> str:
    try:
        return validate_identifier(value, "workspace")
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


_workspace_option = click.option(
    "--workspace",
    "-w",
    default="default",
    show_default=True,
    callback=_check_workspace,
    help="State workspace.",
)


@state.command("list")
@_state_options
@_workspace_option
def state_list(
    state_dir: str,
    table: str | None,
    region: str | None,
    endpoint_url: str | None,
    workspace: str,
) -> None:
    """List recorded resources."""

    async def _list() -> None:
        store = _make_store(workspace, state_dir, table, region, endpoint_url)
        try:
            records = await store.load()
        finally:
            await store.close()

        if not records:
            click.echo("No resources recorded.")
            return
        for rid, record in records.items():
            marker = " (deposed object pending delete)" if record.deposed else ""
            click.echo(f"{rid}  serial={record.serial}  {record.updated_at or '-'}{marker}")

    _run(_list())


@state.command("show")
@click.argument("resource")
@_state_options
@_workspace_option
def state_show(
    resource: str,
    state_dir: str,
    table: str | None,
    region: str | None,
    endpoint_url: str | None,
    workspace: str,
) -> None:
    """Show the record of one resource as JSON."""
    rid = _parse_resource_id(resource)

    async def _show() -> StateRecord | None:
        store = _make_store(workspace, state_dir, table, region, endpoint_url)
        try:
            return (await store.load()).get(rid)
        finally:
            await store.close()

    record = _run(_show())
    if record is None:
        click.echo(f"Error: no state recorded for {rid}", err=True)
        sys.exit(1)
    click.echo(json.dumps(record.to_dict(), indent=2, sort_keys=True))


@state.command("rm")
@click.argument("resource")
@_state_options
@_workspace_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def state_rm(
    resource: str,
    state_dir: str,
    table: str | None,
    region: str | None,
    endpoint_url: str | None,
    workspace: str,
    yes: bool,
) -> None:
    """Forget a resource without deleting it."""
    rid = _parse_resource_id(resource)
    if not yes:
        click.confirm(f"Remove {rid} from state? The object itself is kept.", abort=True)

    async def _rm() -> None:
        store = _make_store(workspace, state_dir, table, region, endpoint_url)
        try:
            await store.delete(rid)
        finally:
            await store.close()
        click.echo(f"Removed {rid} from state.")

    _run(_rm())


@state.command("init-table")
@click.option("--table", envvar="INFRAPLAN_TABLE", required=True, help="DynamoDB table name.")
@click.option("--region", help="AWS region (default: use boto3 defaults).")
@click.option("--endpoint-url", help="AWS endpoint URL (e.g., LocalStack).")
def state_init_table(table: str, region: str | None, endpoint_url: str | None) -> None:
    """Create the DynamoDB state table if it doesn't exist."""

    async def _init() -> None:
        store = DynamoDBStateStore(table, region=region, endpoint_url=endpoint_url)
        try:
            await store.create_table()
        finally:
            await store.close()
        click.echo(f"✓ Table '{table}' is ready")

    _run(_init())


if __name__ == "__main__":
    cli()
