"""
converge — CLI entrypoint.

Usage:
    converge --help
    converge plan
    converge apply --var region=europe-west1
    converge state list
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from converge import __version__
from converge.core.observability.logging_config import setup_logging

_ACTION_MARKERS = {
    "create": ("+", "green"),
    "update": ("~", "yellow"),
    "replace": ("±", "magenta"),
    "destroy": ("-", "red"),
}

_OUTCOME_MARKERS = {
    "succeeded": ("✓", "green"),
    "failed": ("✗", "red"),
    "blocked": ("⊘", "yellow"),
    "not_started": ("·", "white"),
}


@click.group()
@click.version_option(version=__version__, prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to converge.yml (default: auto-detect).",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to the state file (default: settings.state_path).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    state_path: str | None,
) -> None:
    """converge — declarative infrastructure reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["state_path"] = Path(state_path) if state_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None

    setup_logging(level=level)


def _var_options(fn):
    fn = click.option(
        "--var",
        "overrides",
        multiple=True,
        metavar="NAME=VALUE",
        help="Set a variable (repeatable, last wins).",
    )(fn)
    fn = click.option(
        "--var-file",
        "var_files",
        multiple=True,
        type=click.Path(exists=False, path_type=Path),
        help="Load variables from a YAML/JSON file (repeatable).",
    )(fn)
    return fn


def _fail(message: str) -> None:
    click.secho(f"❌ {message}", fg="red", err=True)
    sys.exit(1)


# ── validate ────────────────────────────────────────────────────────


@cli.command()
@_var_options
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def validate(
    ctx: click.Context,
    overrides: tuple[str, ...],
    var_files: tuple[Path, ...],
    as_json: bool,
) -> None:
    """Check configuration, variables and the dependency graph."""
    from converge.core.use_cases.run import validate_config

    result = validate_config(ctx.obj.get("config_path"), var_files=var_files, overrides=overrides)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        _fail(result.error)

    click.secho("✓ Configuration is valid", fg="green", bold=True)
    if not ctx.obj.get("quiet"):
        click.echo(f"   Resources: {result.details['resources']}")
        click.echo(f"   Evaluation order: {', '.join(result.details['order']) or '(none)'}")


# ── plan ────────────────────────────────────────────────────────────


def _echo_plan(plan, verbose: bool) -> None:
    for action in plan.changes:
        marker, colour = _ACTION_MARKERS.get(action.action.value, ("?", "white"))
        click.secho(f"   {marker} {action.label}", fg=colour, nl=False)
        note = f"  ({action.note})" if action.note else ""
        click.echo(f"  [{action.action.value}]{note}")
        for reason in action.reasons if verbose else []:
            click.echo(f"       │ {reason}")
        for change in action.changes:
            data = change.to_dict()
            forces = "  # forces replacement" if change.requires_replacement else ""
            click.echo(f"       {data['attribute']}: {json.dumps(data['before'])} → {json.dumps(data['after'])}{forces}")

    for pending in plan.pending:
        click.secho(f"   … {pending.declaration}", fg="cyan", nl=False)
        click.echo(f"  [expansion pending apply: {pending.reason}]")

    s = plan.summary()
    click.echo()
    if not plan.has_changes and not plan.pending:
        click.secho("   No changes. Infrastructure matches the configuration.", fg="green", bold=True)
        return
    click.secho(
        f"   Plan: {s['create']} to create, {s['update']} to update, "
        f"{s['replace']} to replace, {s['destroy']} to destroy.",
        bold=True,
    )


@cli.command()
@_var_options
@click.option("--destroy", is_flag=True, help="Plan the destruction of everything in state.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    overrides: tuple[str, ...],
    var_files: tuple[Path, ...],
    destroy: bool,
    as_json: bool,
) -> None:
    """Show what apply would change. Never touches state."""
    from converge.core.use_cases.run import plan_changes

    result = plan_changes(
        ctx.obj.get("config_path"),
        var_files=var_files,
        overrides=overrides,
        destroy=destroy,
        state_path=ctx.obj.get("state_path"),
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        _fail(result.error)

    assert result.plan is not None
    click.secho(f"\n📋 {'Destroy plan' if destroy else 'Plan'}", fg="cyan", bold=True)
    _echo_plan(result.plan, ctx.obj.get("verbose", False))
    click.echo()


# ── apply / destroy ─────────────────────────────────────────────────


def _run_apply(ctx: click.Context, *, destroy: bool, overrides, var_files, parallelism, as_json) -> None:
    from converge.core.use_cases.run import apply_changes

    result = apply_changes(
        ctx.obj.get("config_path"),
        var_files=var_files,
        overrides=overrides,
        destroy=destroy,
        parallelism=parallelism,
        state_path=ctx.obj.get("state_path"),
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        _fail(result.error)

    assert result.plan is not None and result.apply is not None
    report = result.apply
    click.secho(f"\n⚡ {'Destroy' if destroy else 'Apply'} {report.operation_id}", fg="cyan", bold=True)
    if not report.outcomes:
        click.secho("   Nothing to do.", fg="green")
        click.echo()
        return

    for outcome in report.outcomes.values():
        marker, colour = _OUTCOME_MARKERS[outcome.outcome.value]
        click.secho(f"   {marker} {outcome.address}", fg=colour, nl=False)
        click.echo(f"  [{outcome.action.value}]")
        if outcome.error and outcome.outcome.value == "failed":
            for line in outcome.error.split("\n")[:5]:
                click.echo(f"     │ {line}")

    click.echo()
    status_color = {"ok": "green", "partial": "yellow", "failed": "red"}.get(report.status, "white")
    click.secho(
        f"   Result: {report.succeeded}/{len(report.outcomes)} succeeded",
        fg=status_color,
        bold=True,
    )
    if report.error:
        click.secho(f"   Stopped: {report.error}", fg="red")
    click.echo()

    if not result.ok:
        sys.exit(1)


@cli.command()
@_var_options
@click.option("--parallelism", "-p", type=click.IntRange(min=1), default=None, help="Max concurrent operations.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def apply(
    ctx: click.Context,
    overrides: tuple[str, ...],
    var_files: tuple[Path, ...],
    parallelism: int | None,
    as_json: bool,
) -> None:
    """Plan and apply the configuration.

    Examples:

        converge apply

        converge apply --var region=europe-west1 --parallelism 4
    """
    _run_apply(
        ctx, destroy=False, overrides=overrides, var_files=var_files, parallelism=parallelism, as_json=as_json
    )


@cli.command()
@_var_options
@click.option("--parallelism", "-p", type=click.IntRange(min=1), default=None, help="Max concurrent operations.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def destroy(
    ctx: click.Context,
    overrides: tuple[str, ...],
    var_files: tuple[Path, ...],
    parallelism: int | None,
    as_json: bool,
) -> None:
    """Destroy everything recorded in state."""
    _run_apply(
        ctx, destroy=True, overrides=overrides, var_files=var_files, parallelism=parallelism, as_json=as_json
    )


# ── refresh ─────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def refresh(ctx: click.Context, as_json: bool) -> None:
    """Re-read every recorded object from its provider."""
    from converge.core.use_cases.run import refresh_state

    result = refresh_state(ctx.obj.get("config_path"), state_path=ctx.obj.get("state_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        _fail(result.error)

    assert result.state is not None
    click.secho(f"✓ Refreshed {len(result.state.records)} record(s)", fg="green", bold=True)
    for address in result.details.get("changed", []):
        click.secho(f"   ~ {address} drifted", fg="yellow")
    for address in result.details.get("removed", []):
        click.secho(f"   - {address} no longer exists", fg="red")


# ── state ───────────────────────────────────────────────────────────


@cli.group()
def state() -> None:
    """Inspect the state document."""


@state.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_list(ctx: click.Context, as_json: bool) -> None:
    """List every recorded instance address."""
    from converge.core.use_cases.run import read_state

    result = read_state(ctx.obj.get("config_path"), state_path=ctx.obj.get("state_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        _fail(result.error)

    assert result.state is not None
    for address in result.state.addresses():
        click.echo(address)


@state.command("show")
@click.argument("address")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_show(ctx: click.Context, address: str, as_json: bool) -> None:
    """Show one state record."""
    from converge.core.use_cases.run import read_state

    result = read_state(ctx.obj.get("config_path"), state_path=ctx.obj.get("state_path"), address=address)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        _fail(result.error)

    record = result.record
    assert record is not None
    click.secho(f"\n{record.address}", fg="cyan", bold=True)
    click.echo(f"   type:        {record.resource_type}")
    click.echo(f"   provider:    {record.provider}")
    click.echo(f"   external id: {record.external_id}")
    click.echo(f"   revision:    {record.revision}")
    if record.dependencies:
        click.echo(f"   depends on:  {', '.join(record.dependencies)}")
    for name, value in sorted(record.attributes.items()):
        click.echo(f"   {name} = {json.dumps(value)}")
    for deposed in record.deposed:
        click.secho(f"   deposed: {deposed.external_id}", fg="yellow")
    click.echo()


if __name__ == "__main__":
    cli()
