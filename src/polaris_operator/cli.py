"""Polaris operator CLI (polaris-operator-cli).

One-shot commands against the same manifests the operator reconciles.

Usage:
    polaris-operator-cli validate            # Validate manifests, no API calls
    polaris-operator-cli plan                # Show the ordered plan per grouping
    polaris-operator-cli apply --timeout 600 # Reconcile every grouping once
    polaris-operator-cli show TAG_RULE_SCOPE <tag-rule-id>
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import (
    DEFAULT_MAX_MEMBERS_PER_GROUPING,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
)
from .models import Grouping, GroupingKind
from .reconciler import Reconciler, ReconcileResult
from .spec_loader import DesiredGrouping, SpecLoadError, load_manifests

DEFAULT_SPECS_DIR = "/specs"

ReconcilerFactory = Callable[[float], Reconciler]


def _default_factory(
    poll_interval: float, request_timeout: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
) -> Reconciler:
    from .backends import BackendRegistry
    from .client import PolarisClient
    from .credentials import CredentialError, ServiceAccount, ServiceAccountCredential

    try:
        account = ServiceAccount.from_env()
    except CredentialError as e:
        raise click.ClickException(str(e)) from e
    client = PolarisClient(
        account.api_url,
        ServiceAccountCredential(account),
        request_timeout_seconds=request_timeout,
    )
    return Reconciler(BackendRegistry.for_client(client), poll_interval_seconds=poll_interval)


def _load(specs_dir: Path) -> list[DesiredGrouping]:
    try:
        return load_manifests(specs_dir, DEFAULT_MAX_MEMBERS_PER_GROUPING)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def _reconciler(ctx: click.Context) -> Reconciler:
    factory: ReconcilerFactory | None = ctx.obj.get("factory")
    if factory is None:
        return _default_factory(ctx.obj["poll_interval"], ctx.obj["request_timeout"])
    return factory(ctx.obj["poll_interval"])


def _result_to_dict(result: ReconcileResult) -> dict[str, Any]:
    data: dict[str, Any] = {
        "grouping": result.grouping_key,
        "changed": result.changed,
        "success": result.success,
    }
    if result.diff is not None:
        data["diff"] = result.diff.to_dict()
    if result.plan is not None:
        data["plan"] = result.plan.to_list()
    if result.polls:
        data["polls"] = result.polls
    if result.error is not None:
        data["error"] = f"{type(result.error).__name__}: {result.error}"
    return data


@click.group()
@click.version_option(version="0.1.0", prog_name="polaris-operator-cli")
@click.option(
    "--specs-dir",
    "-d",
    envvar="SPECS_DIR",
    default=DEFAULT_SPECS_DIR,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory with manifests",
)
@click.option(
    "--poll-interval",
    envvar="POLL_INTERVAL",
    default=DEFAULT_POLL_INTERVAL_SECONDS,
    type=float,
    help="Seconds between convergence polls",
)
@click.option(
    "--request-timeout",
    envvar="REQUEST_TIMEOUT",
    default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
    type=click.IntRange(min=1),
    help="Seconds allowed for a single API request",
)
@click.pass_context
def cli(
    ctx: click.Context, specs_dir: Path, poll_interval: float, request_timeout: int
) -> None:
    """Polaris operator CLI.

    Plans and applies membership changes for SLA domains, tag rules and
    cloud account features declared in the manifests directory.
    """
    ctx.ensure_object(dict)
    ctx.obj["specs_dir"] = specs_dir
    ctx.obj["poll_interval"] = poll_interval
    ctx.obj["request_timeout"] = request_timeout


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate manifests without contacting RSC."""
    desired = _load(ctx.obj["specs_dir"])
    for item in desired:
        click.echo(f"{item.grouping.key}: {len(item.desired)} members ({item.source.name})")
    click.secho(f"✓ {len(desired)} manifests valid", fg="green")


@cli.command()
@click.pass_context
def plan(ctx: click.Context) -> None:
    """Show the diff and ordered plan for every grouping. No mutations."""
    desired = _load(ctx.obj["specs_dir"])
    reconciler = _reconciler(ctx)
    results = asyncio.run(reconciler.reconcile_all(desired, dry_run=True))
    click.echo(json.dumps([_result_to_dict(r) for r in results], indent=2))
    if any(not r.success for r in results):
        raise click.ClickException("Planning failed for one or more groupings")


@cli.command()
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait for each grouping to converge (default: no limit)",
)
@click.pass_context
def apply(ctx: click.Context, timeout_seconds: float | None) -> None:
    """Reconcile every grouping once and wait for convergence."""
    desired = _load(ctx.obj["specs_dir"])
    reconciler = _reconciler(ctx)
    results = asyncio.run(reconciler.reconcile_all(desired, timeout_seconds=timeout_seconds))
    click.echo(json.dumps([_result_to_dict(r) for r in results], indent=2))
    failed = [r.grouping_key for r in results if not r.success]
    if failed:
        raise click.ClickException(f"Reconciliation failed for: {', '.join(failed)}")


@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in GroupingKind]))
@click.argument("grouping_id")
@click.option("--cloud", type=click.Choice(["AWS", "AZURE", "GCP"]), default="AWS")
@click.option("--object", "object_ids", multiple=True, help="Object to check (SLA domains)")
@click.pass_context
def show(
    ctx: click.Context,
    kind: str,
    grouping_id: str,
    cloud: str,
    object_ids: tuple[str, ...],
) -> None:
    """Show the observed membership of a grouping."""
    grouping_kind = GroupingKind(kind)
    if grouping_kind == GroupingKind.ACCOUNT_FEATURE_SET:
        grouping = Grouping.create(grouping_kind, grouping_id, cloud=cloud)
    else:
        grouping = Grouping.create(grouping_kind, grouping_id)

    reconciler = _reconciler(ctx)
    observed = asyncio.run(reconciler.observe(grouping, frozenset(object_ids)))
    for member in sorted(observed):
        click.echo(member)


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
