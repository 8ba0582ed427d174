"""
Shared helpers for CLI command modules.

Every command gets its components from one ``AppContext``, built on
first use and cached on the click context object.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import click

from src.core.config.loader import ConfigError, find_settings_file, load_settings
from src.core.context import AppContext


def resolve_project_root(ctx: click.Context) -> Path:
    """--root, else the directory holding kaspa-aio.yml, else CWD."""
    root: Path | None = ctx.obj.get("root")
    if root is not None:
        return root.resolve()
    config_path: Path | None = ctx.obj.get("config_path")
    if config_path is None:
        config_path = find_settings_file()
    return config_path.parent.resolve() if config_path else Path.cwd()


def get_app(ctx: click.Context) -> AppContext:
    """Build (once) the AppContext for this invocation."""
    obj = ctx.find_root().obj
    app = obj.get("app")
    if app is not None:
        return app

    root = resolve_project_root(ctx)
    config_path = obj.get("config_path") or find_settings_file(root)
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    app = AppContext.create(root, settings, **obj.get("context_overrides", {}))
    obj["app"] = app
    ctx.call_on_close(app.close)
    return app


def selected_profiles(app: AppContext, profiles: tuple[str, ...]) -> list[str]:
    """Explicit ``--profile`` values, else the selection stored in state."""
    if profiles:
        return list(profiles)
    return list(app.state.load().profiles.selected)


def parse_assignments(values: tuple[str, ...]) -> dict[str, Any]:
    """``KEY=VALUE`` pairs from repeated ``--set`` options."""
    out: dict[str, Any] = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--set")
        key, value = item.split("=", 1)
        out[key.strip()] = value.strip()
    return out


def echo_issues(issues: list[dict[str, Any]], *, color: str, icon: str) -> None:
    for issue in issues:
        field = issue.get("field", "")
        click.secho(f"   {icon} ", fg=color, nl=False)
        click.echo(f"{field}: {issue['message']}" if field else issue["message"])
        if issue.get("suggestion"):
            click.echo(f"     → {issue['suggestion']}")


def echo_remediation(remediation: dict[str, Any] | None) -> None:
    if not remediation:
        return
    click.secho(f"\n   {remediation['title']}", fg="yellow", bold=True)
    click.echo(f"   {remediation['message']}")
    for i, step in enumerate(remediation.get("steps", []), start=1):
        click.echo(f"     {i}. {step}")
