"""
Settings loader — reads kaspa-aio.yml into OrchestratorSettings.

The settings file is optional: without one every default applies.
When present it must be a YAML mapping that validates against the
Pydantic schema; anything else raises ConfigError.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from src.core.models.settings import OrchestratorSettings

logger = logging.getLogger(__name__)

# Default settings filename
SETTINGS_FILE = "kaspa-aio.yml"


class ConfigError(Exception):
    """Raised when orchestrator settings are invalid or unreadable."""


def find_settings_file(start_dir: Path | None = None) -> Path | None:
    """Search for kaspa-aio.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to kaspa-aio.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / SETTINGS_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_settings(path: Path | None = None) -> OrchestratorSettings:
    """Load and validate orchestrator settings.

    Args:
        path: Explicit path to kaspa-aio.yml.  None means defaults.

    Returns:
        Validated OrchestratorSettings.

    Raises:
        ConfigError: If the file is unreadable or invalid.
    """
    if path is None:
        logger.debug("No %s — using default settings", SETTINGS_FILE)
        return OrchestratorSettings()

    if not path.is_file():
        raise ConfigError(f"Settings file not found: {path}")

    logger.debug("Loading settings from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return OrchestratorSettings()

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        return OrchestratorSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}:\n{e}") from e
