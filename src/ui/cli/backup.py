"""
CLI commands for Backup & Restore and installation checkpoints.

Thin wrappers over ``src.core.persistence.version_store.VersionStore``.
"""

from __future__ import annotations

import json
import sys

import click

from src.ui.cli.common import get_app


@click.group()
def backup() -> None:
    """Backup & Restore — snapshot, list, compare, and restore configuration."""


@backup.command()
@click.option("--reason", "-r", default="Manual backup", help="Why the backup is taken.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def create(ctx: click.Context, reason: str, as_json: bool) -> None:
    """Snapshot .env, docker-compose.yml and the installation state."""
    versions = get_app(ctx).versions
    backup_id = versions.snapshot(reason)
    record = versions.get(backup_id)

    if as_json:
        click.echo(json.dumps(record.model_dump(mode="json") if record else {"backup_id": backup_id}, indent=2))
        return

    click.secho(f"✅ Backup created: {backup_id}", fg="green", bold=True)
    if record:
        click.echo(f"   Files: {', '.join(f.file for f in record.files) or 'none'}")
        click.echo(f"   Size: {record.total_size:,} bytes")


@backup.command("list")
@click.option("--limit", "-n", default=20, show_default=True, help="Maximum backups to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_backups_cmd(ctx: click.Context, limit: int, as_json: bool) -> None:
    """List backups, newest first."""
    result = get_app(ctx).versions.list(limit)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    backups = result["backups"]
    if not backups:
        click.secho("No backups found", fg="yellow")
        return

    click.secho(f"📦 Backups ({result['showing']} of {result['total']}):", fg="cyan", bold=True)
    for b in backups:
        click.echo(f"   {b['backup_id']}  {b['age']:<12} {b['total_size_mb']} MB  {b['reason']}")
    click.echo()


@backup.command()
@click.argument("backup_id")
@click.option("--no-backup-first", is_flag=True, help="Skip the pre-restore snapshot.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def restore(ctx: click.Context, backup_id: str, no_backup_first: bool, yes: bool, as_json: bool) -> None:
    """Overwrite the live configuration with a backup."""
    if not yes and not as_json:
        click.confirm(f"Restore backup {backup_id} over the current configuration?", abort=True)

    result = get_app(ctx).versions.restore(backup_id, backup_first=not no_backup_first)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        if not result["success"]:
            sys.exit(1)
        return

    if not result["success"]:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    click.secho(f"✅ {result['message']}", fg="green", bold=True)
    click.echo(f"   Restored: {', '.join(result['restored_files']) or 'nothing'}")
    if result.get("skipped_files"):
        click.echo(f"   Kept (installation complete): {', '.join(result['skipped_files'])}")
    if result.get("pre_restore_backup"):
        click.echo(f"   Undo with: kaspa-aio backup restore {result['pre_restore_backup']}")
    click.secho("   ⚠️  Restart services for the change to take effect", fg="yellow")


@backup.command()
@click.argument("backup_a")
@click.argument("backup_b")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def compare(ctx: click.Context, backup_a: str, backup_b: str, as_json: bool) -> None:
    """Show configuration keys added, removed or changed between two backups."""
    result = get_app(ctx).versions.compare(backup_a, backup_b)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        if not result["success"]:
            sys.exit(1)
        return

    if not result["success"]:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    diff = result["differences"]
    if not any(diff.values()):
        click.secho("No differences", fg="green")
        return
    for item in diff["added"]:
        click.secho(f"   + {item['key']}={item['value']}", fg="green")
    for item in diff["removed"]:
        click.secho(f"   - {item['key']}={item['value']}", fg="red")
    for item in diff["changed"]:
        click.secho(f"   ~ {item['key']}: {item['old_value']} → {item['new_value']}", fg="yellow")


@backup.command()
@click.option("--keep", "-k", type=int, default=None, help="Backups to keep (default: max_backups).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def cleanup(ctx: click.Context, keep: int | None, as_json: bool) -> None:
    """Delete the oldest backups beyond the retention limit."""
    result = get_app(ctx).versions.cleanup_oldest(keep)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    click.secho(f"🧹 Deleted {result['deleted']} backup(s), {result['remaining']} remaining", fg="cyan")


# ── Checkpoints ─────────────────────────────────────────────────


@click.group()
def checkpoint() -> None:
    """Checkpoints — short-lived installation progress snapshots."""


@checkpoint.command("create")
@click.argument("stage")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def checkpoint_create(ctx: click.Context, stage: str, as_json: bool) -> None:
    """Record the current installation summary under STAGE."""
    app = get_app(ctx)
    cp = app.versions.create_checkpoint(stage, app.state.summary())

    if as_json:
        click.echo(json.dumps(cp.model_dump(mode="json"), indent=2))
        return

    click.secho(f"✅ Checkpoint {cp.checkpoint_id} ({stage})", fg="green", bold=True)


@checkpoint.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def checkpoint_list(ctx: click.Context, as_json: bool) -> None:
    """List checkpoints, newest first."""
    checkpoints = get_app(ctx).versions.list_checkpoints()

    if as_json:
        click.echo(json.dumps({"checkpoints": checkpoints}, indent=2))
        return

    if not checkpoints:
        click.secho("No checkpoints", fg="yellow")
        return
    for cp in checkpoints:
        click.echo(f"   {cp['checkpoint_id']}  {cp['age']:<12} {cp['stage']}")
