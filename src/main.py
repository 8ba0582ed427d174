"""
Kaspa All-in-One orchestrator — CLI entrypoint.

Usage:
    python -m src.main --help
    python -m src.main profiles resolve core kasia-app
    python -m src.main config validate -p kaspa-node
    python -m src.main deploy -p kaspa-node
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from src.core.observability.logging_config import setup_logging_from_env

from src import __version__


@click.group()
@click.version_option(version=__version__, prog_name="kaspa-aio")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to kaspa-aio.yml (default: auto-detect).",
)
@click.option(
    "--root",
    type=click.Path(file_okay=False),
    default=None,
    help="Installation directory (default: where kaspa-aio.yml is, else CWD).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    root: str | None,
) -> None:
    """Kaspa All-in-One — install and operate a Kaspa node stack."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["root"] = Path(root) if root else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging_from_env(debug=debug, verbose=verbose, quiet=quiet)


# ── Status ──────────────────────────────────────────────────────


@cli.command()
@click.option("--profile", "-p", "profiles", multiple=True, help="Profile id (default: current selection).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, profiles: tuple[str, ...], as_json: bool) -> None:
    """Show installation phase and service status."""
    from src.core.use_cases.status import get_status
    from src.ui.cli.common import get_app, selected_profiles

    app = get_app(ctx)
    result = get_status(app, selected_profiles(app, profiles))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    quiet = ctx.obj.get("quiet", False)
    summary = result.summary
    if not quiet:
        click.secho(f"\n📋 {app.settings.project_name}", fg="cyan", bold=True)
        click.echo(f"   {app.project_root}")
        click.echo()

    click.secho(f"   Phase: {summary['phase']}", fg="white", bold=True)
    click.echo(f"   Profiles: {', '.join(result.profiles) or 'none'}")

    if result.error:
        click.secho(f"   ⚠️  {result.error}", fg="yellow")
    for name, svc in result.services.items():
        if svc["running"]:
            click.secho(f"     ✓ {name}", fg="green", nl=False)
        else:
            click.secho(f"     ✗ {name}", fg="red", nl=False)
        click.echo(f"  ({svc['container']}: {svc['state']})")

    for op in summary["sync_operations"]:
        click.echo(f"   Sync {op['id']}: {op['status']} {op['progress']:.1f}%")

    if result.latest_backup:
        click.echo(f"   Latest backup: {result.latest_backup['backup_id']} ({result.latest_backup['age']})")
    click.echo()


# ── Config ──────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Configuration commands."""


@config.command("validate")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="File to validate (default: .env).")
@click.option("--profile", "-p", "profiles", multiple=True, help="Profile id (default: current selection).")
@click.option("--set", "assignments", multiple=True, help="Override KEY=VALUE (repeatable).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_validate(
    ctx: click.Context,
    env_file: str | None,
    profiles: tuple[str, ...],
    assignments: tuple[str, ...],
    as_json: bool,
) -> None:
    """Validate a configuration for a profile selection.

    With --set, the overrides are checked as a change against the
    current file (network changes, for instance).
    """
    from src.core.config.env_file import read_env_file
    from src.core.validation.config_validator import summarize, validate_configuration
    from src.ui.cli.common import echo_issues, get_app, parse_assignments, selected_profiles

    app = get_app(ctx)
    path = Path(env_file) if env_file else app.env_path
    current = read_env_file(path)
    overrides = parse_assignments(assignments)
    proposed = {**current, **overrides}

    result = validate_configuration(
        proposed,
        selected_profiles(app, profiles),
        current if overrides and current else None,
        project_root=app.project_root,
    )

    if as_json:
        click.echo(json.dumps({**result.to_dict(), "summary": summarize(result)}, indent=2))
        sys.exit(0 if result.can_proceed else 1)

    if result.valid:
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Profiles: {', '.join(result.profiles)}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        echo_issues([e.to_dict() for e in result.errors], color="red", icon="✗")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        echo_issues([w.to_dict() for w in result.warnings], color="yellow", icon="•")

    if not result.can_proceed:
        click.echo()
        sys.exit(1)

    click.echo()


# ── Deploy ──────────────────────────────────────────────────────


def _print_progress(payload: dict[str, Any]) -> None:
    counter = f"[{payload['current']}/{payload['total']}] " if payload.get("total") else ""
    click.echo(f"   {payload['stage']:<9} {counter}{payload['message']}")


@cli.command()
@click.option("--profile", "-p", "profiles", multiple=True, help="Profile id (repeatable).")
@click.option("--template", "-t", default=None, help="Start from a configuration template.")
@click.option("--set", "assignments", multiple=True, help="Configuration KEY=VALUE (repeatable).")
@click.option("--dev", "developer_mode", is_flag=True, help="Enable developer mode.")
@click.option("--confirm", "confirmed", is_flag=True, help="Accept warnings that need confirmation.")
@click.option("--no-deploy", is_flag=True, help="Validate and write the configuration only.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(
    ctx: click.Context,
    profiles: tuple[str, ...],
    template: str | None,
    assignments: tuple[str, ...],
    developer_mode: bool,
    confirmed: bool,
    no_deploy: bool,
    as_json: bool,
) -> None:
    """Validate, back up, write .env and deploy a profile selection.

    Examples:

        kaspa-aio deploy -p kaspa-node

        kaspa-aio deploy -t full-stack --set KASPA_NETWORK=mainnet

        kaspa-aio deploy -p kaspa-node -p kaspa-stratum --set MINING_ADDRESS=kaspa:...
    """
    from src.core.catalog.profiles import apply_developer_mode, apply_template
    from src.core.config.env_file import read_env_file
    from src.core.use_cases.apply_change import apply_change
    from src.ui.cli.common import (
        echo_issues,
        echo_remediation,
        get_app,
        parse_assignments,
        selected_profiles,
    )

    app = get_app(ctx)
    config: dict[str, Any] = dict(read_env_file(app.env_path))
    chosen = list(profiles)

    if template:
        applied = apply_template(template)
        if applied is None:
            click.secho(f"❌ Unknown template: {template}", fg="red")
            sys.exit(1)
        config.update(applied["config"])
        chosen = chosen or applied["profiles"]
    config.update(parse_assignments(assignments))
    config = apply_developer_mode(config, developer_mode)
    chosen = chosen or selected_profiles(app, ())

    if not chosen:
        click.secho("❌ No profiles selected (use --profile or --template)", fg="red")
        sys.exit(1)

    show_progress = not as_json and not ctx.obj.get("quiet")
    result = apply_change(
        app,
        config,
        chosen,
        confirmed=confirmed,
        deploy=not no_deploy,
        on_progress=_print_progress if show_progress else None,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.success else 1)

    validation = result.validation
    if validation.get("errors"):
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        echo_issues(validation["errors"], color="red", icon="✗")
    if validation.get("warnings"):
        click.secho("⚠️  Warnings:", fg="yellow")
        echo_issues(validation["warnings"], color="yellow", icon="•")

    if not result.success:
        click.secho(f"\n❌ {result.error} (stage: {result.stage})", fg="red", bold=True)
        deployment = result.deployment or {}
        if deployment.get("failed_services"):
            click.echo(f"   Failed services: {', '.join(deployment['failed_services'])}")
        echo_remediation(deployment.get("remediation"))
        if result.backup_id:
            click.echo(f"\n   Previous configuration: kaspa-aio backup restore {result.backup_id}")
        sys.exit(1)

    click.secho(f"\n✅ Applied ({result.stage})", fg="green", bold=True)
    click.echo(f"   Backup: {result.backup_id}  Version: {result.version_id}")
    if result.sync_task:
        click.echo("   Node is syncing; follow it with: kaspa-aio tasks sync-node")


# ── Day-2 operations ────────────────────────────────────────────


@cli.command()
@click.argument("service")
@click.option("--tail", "-n", default=100, show_default=True, help="Lines to show.")
@click.pass_context
def logs(ctx: click.Context, service: str, tail: int) -> None:
    """Show recent log lines of a service."""
    from src.ui.cli.common import get_app

    result = get_app(ctx).deployer.logs(service, tail)
    if not result["ok"]:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)
    click.echo(result["logs"], nl=False)


@cli.command()
@click.option("--profile", "-p", "profiles", multiple=True, help="Profile id (default: current selection).")
@click.option("--remove", is_flag=True, help="Also remove the containers.")
@click.pass_context
def stop(ctx: click.Context, profiles: tuple[str, ...], remove: bool) -> None:
    """Stop the services of a selection."""
    from src.ui.cli.common import get_app, selected_profiles

    app = get_app(ctx)
    chosen = selected_profiles(app, profiles)
    result = app.deployer.remove(chosen) if remove else app.deployer.stop(chosen)
    if not result["ok"]:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)
    services = result.get("stopped") or result.get("removed") or []
    click.secho(f"✅ {'Removed' if remove else 'Stopped'}: {', '.join(services)}", fg="green")


# ── Sub-groups ──────────────────────────────────────────────────

from src.ui.cli.backup import backup, checkpoint
from src.ui.cli.profiles import profiles
from src.ui.cli.state import state, tasks

cli.add_command(profiles)
cli.add_command(backup)
cli.add_command(checkpoint)
cli.add_command(state)
cli.add_command(tasks)


if __name__ == "__main__":
    cli()
