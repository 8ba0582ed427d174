"""
CLI commands for installation state and background tasks.

Thin wrappers over ``WizardStateStore`` and ``BackgroundTaskMonitor``.
"""

from __future__ import annotations

import json
import sys
from concurrent.futures import wait

import click

from src.core.errors import remediation
from src.core.use_cases.apply_change import follow_node_sync
from src.ui.cli.common import echo_remediation, get_app


@click.group()
def state() -> None:
    """Installation state — inspect or reset progress."""


@state.command("show")
@click.option("--history", "show_history", is_flag=True, help="Include recent state snapshots.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_show(ctx: click.Context, show_history: bool, as_json: bool) -> None:
    """Show the installation state summary."""
    store = get_app(ctx).state
    summary = store.summary()
    resume = store.can_resume()
    if show_history:
        summary["history"] = store.history()

    if as_json:
        click.echo(json.dumps({**summary, "resume": resume, "corrupt": store.last_load_corrupt}, indent=2))
        return

    if store.last_load_corrupt:
        click.secho("⚠️  State file was corrupt; showing a fresh state", fg="yellow")
        echo_remediation(remediation("STATE_FILE_CORRUPT"))

    click.secho(f"\n🧭 {summary['installation_id']}", fg="cyan", bold=True)
    click.echo(f"   Phase: {summary['phase']}  (step {summary['current_step']})")
    click.echo(f"   Profiles: {', '.join(summary['profiles']) or 'none'}")
    for name, status in summary["services"].items():
        color = {"running": "green", "failed": "red"}.get(status, "white")
        click.secho(f"     • {name}: {status}", fg=color)
    for op in summary["sync_operations"]:
        click.echo(f"   Sync {op['id']}: {op['status']} {op['progress']:.1f}%")
    if resume["can_resume"]:
        click.echo(f"   Resumable from: {resume['resume_point']}")
    else:
        click.echo(f"   Not resumable: {resume['reason']}")

    for snap in summary.get("history", []):
        click.echo(f"   ⏱  {snap['last_activity']}  {snap['phase']}")
    click.echo()


@state.command("reset")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def state_reset(ctx: click.Context, yes: bool) -> None:
    """Discard installation progress and start over."""
    if not yes:
        click.confirm("Discard the current installation state?", abort=True)
    fresh = get_app(ctx).state.reset()
    click.secho(f"✅ State reset ({fresh.installation_id})", fg="green")


# ── Background tasks ────────────────────────────────────────────


@click.group()
def tasks() -> None:
    """Background tasks — follow long-running sync operations."""


@tasks.command("sync-node")
@click.option("--service", "-s", default="kaspa-node", show_default=True, help="Node service to follow.")
@click.option("--no-switch", is_flag=True, help="Do not switch services to the local node when synced.")
@click.option("--interval", type=float, default=None, help="Seconds between checks.")
@click.pass_context
def sync_node(ctx: click.Context, service: str, no_switch: bool, interval: float | None) -> None:
    """Follow a node's sync until it completes (Ctrl+C to cancel).

    Resumes the sync task a deploy left running, if there is one; an
    installation waiting on it is marked complete when it finishes.
    """
    app = get_app(ctx)
    monitor = app.monitor
    task_id = follow_node_sync(app, service, auto_switch=not no_switch, interval=interval)
    future = monitor.completion(task_id)
    poll = interval or app.settings.poll_interval_s

    click.secho(f"⏳ Following {service} sync ({task_id})", fg="cyan")
    try:
        while True:
            done, _ = wait([future], timeout=poll)
            if done:
                break
            info = monitor.get(task_id) or {}
            meta = info.get("metadata", {})
            line = f"   {info.get('progress', 0):5.1f}%"
            if "current_block" in meta:
                line += f"  {meta['current_block']:,}/{meta['target_block']:,} blocks"
                line += f"  ETA {meta.get('formatted_time_remaining', 'unknown')}"
            elif "waiting" in meta:
                line += f"  {meta['waiting']}"
            click.echo(line)
    except KeyboardInterrupt:
        monitor.cancel_task(task_id)
        click.secho("\n⊘ Cancelled", fg="yellow")
        sys.exit(130)

    if future.cancelled():
        click.secho("⊘ Cancelled", fg="yellow")
        sys.exit(1)
    error = future.exception()
    if error is not None:
        click.secho(f"❌ {error}", fg="red")
        sys.exit(1)
    result = future.result()
    click.secho(f"✅ {service} synced in {result['duration']}", fg="green", bold=True)
    if not no_switch:
        click.echo("   Services now use the local node")
