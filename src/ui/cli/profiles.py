"""
CLI commands for the profile catalog.

Thin wrappers over ``src.core.catalog.profiles``.
"""

from __future__ import annotations

import json
import sys

import click

from src.ui.cli.common import echo_issues, get_app


@click.group()
def profiles() -> None:
    """Profiles — browse the catalog and check a selection."""


@profiles.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def list_profiles(as_json: bool) -> None:
    """List available profiles and templates."""
    from src.core.catalog.profiles import LEGACY_PROFILE_IDS, PROFILES, TEMPLATES

    if as_json:
        click.echo(json.dumps({
            "profiles": [
                {
                    "id": p.id,
                    "name": p.name,
                    "description": p.description,
                    "category": p.category,
                    "services": list(p.services),
                }
                for p in PROFILES.values()
            ],
            "legacy": {k: list(v) for k, v in LEGACY_PROFILE_IDS.items()},
            "templates": {k: t["profiles"] for k, t in TEMPLATES.items()},
        }, indent=2))
        return

    click.secho("\n📦 Profiles", fg="cyan", bold=True)
    for p in PROFILES.values():
        click.secho(f"   {p.id:<24}", fg="white", bold=True, nl=False)
        click.echo(f"{p.name} — {p.description}")
        click.echo(f"   {'':<24}services: {', '.join(p.services)}")

    click.secho("\n🧩 Templates", fg="cyan", bold=True)
    for tid, t in TEMPLATES.items():
        click.echo(f"   {tid:<24}{', '.join(t['profiles'])}")
    click.echo()


@profiles.command("resolve")
@click.argument("ids", nargs=-1)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def resolve_cmd(ids: tuple[str, ...], as_json: bool) -> None:
    """Normalize and check a profile selection.

    Examples:

        kaspa-aio profiles resolve core kasia-app

        kaspa-aio profiles resolve kaspa-node kaspa-archive-node
    """
    from src.core.catalog.profiles import resolve

    result = resolve(list(ids)).to_dict()

    if as_json:
        click.echo(json.dumps(result, indent=2))
        sys.exit(0 if result["ok"] else 1)

    if result["ok"]:
        click.secho(f"✅ {', '.join(result['profiles'])}", fg="green", bold=True)
    else:
        click.secho("❌ Profile selection is invalid:", fg="red", bold=True)
        echo_issues(result["errors"], color="red", icon="✗")
    if result["warnings"]:
        echo_issues(result["warnings"], color="yellow", icon="⚠")
    if not result["ok"]:
        sys.exit(1)


@profiles.command("diagnose")
@click.option("--profile", "-p", "ids", multiple=True, help="Profile id (default: current selection).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def diagnose_cmd(ctx: click.Context, ids: tuple[str, ...], as_json: bool) -> None:
    """Check that the compose file declares every service the selection needs."""
    from src.core.catalog.profiles import diagnose
    from src.ui.cli.common import selected_profiles

    app = get_app(ctx)
    descriptor = app.compose.descriptor()
    result = diagnose(
        selected_profiles(app, ids),
        descriptor.declared() if descriptor else None,
    )

    if as_json:
        click.echo(json.dumps(result, indent=2))
        sys.exit(0 if result["ok"] else 1)

    if result["ok"]:
        click.secho("✅ Compose file matches the profile selection", fg="green", bold=True)
        return
    click.secho("❌ Problems found:", fg="red", bold=True)
    for fix in result["quick_fixes"]:
        click.echo(f"   • {fix['issue']}")
        click.echo(f"     → {fix['action']}")
    sys.exit(1)
