"""
Flat ``KEY=value`` configuration files (``.env``).

``#`` comment lines and blank lines are ignored; values may be wrapped
in single or double quotes.  Rendering writes booleans as
``true``/``false`` so the compose tool sees the same spelling the
validator accepts.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.core.persistence.atomic import write_text_atomic

_LINE_RE = re.compile(r"^([^=]+)=(.*)$")


def parse_env(content: str) -> dict[str, str]:
    """Parse ``.env`` text into a flat dict (last assignment wins)."""
    config: dict[str, str] = {}
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        m = _LINE_RE.match(stripped)
        if not m:
            continue
        key = m.group(1).strip()
        value = m.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        config[key] = value
    return config


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    text = str(value)
    if (" " in text or "#" in text) and '"' not in text:
        return f'"{text}"'
    return text


def render_env(config: dict[str, Any], profiles: list[str] | tuple[str, ...] = ()) -> str:
    """Render a configuration as ``.env`` text with a short header."""
    lines = [
        "# Kaspa All-in-One Configuration",
        f"# Generated: {datetime.now(UTC).isoformat()}",
        f"# Profiles: {', '.join(profiles)}",
        "",
    ]
    lines.extend(f"{key}={_format_value(value)}" for key, value in config.items())
    return "\n".join(lines) + "\n"


def read_env_file(path: Path) -> dict[str, str]:
    """Read a ``.env`` file; a missing file is an empty configuration."""
    if not path.is_file():
        return {}
    return parse_env(path.read_text(encoding="utf-8"))


def write_env_file(path: Path, config: dict[str, Any], profiles: list[str] | tuple[str, ...] = ()) -> None:
    """Write a configuration atomically."""
    write_text_atomic(path, render_env(config, profiles), prefix=".env_")


def update_env_file(path: Path, changes: dict[str, Any]) -> dict[str, str]:
    """Set keys in an existing ``.env`` file, keeping the other lines intact."""
    lines = path.read_text(encoding="utf-8").splitlines() if path.is_file() else []
    pending = dict(changes)
    out: list[str] = []
    for line in lines:
        m = _LINE_RE.match(line.strip())
        if m and not line.strip().startswith("#") and m.group(1).strip() in pending:
            key = m.group(1).strip()
            out.append(f"{key}={_format_value(pending.pop(key))}")
        else:
            out.append(line)
    out.extend(f"{key}={_format_value(value)}" for key, value in pending.items())
    write_text_atomic(path, "\n".join(out) + "\n", prefix=".env_")
    return parse_env("\n".join(out))
