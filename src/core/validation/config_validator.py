"""
Configuration validator — field rules plus cross-field constraints.

Pipeline:
    1. resolve profiles (legacy ids, conflicts, dependencies)
    2. strip deprecated keys
    3. compute visible fields and apply defaults
    4. per-field rules (conditional-required, required, rule chain)
    5. cross-field checks: port conflicts, network change,
       mixed indexer sources, stratum mining address

The only side effect is a filesystem probe for existing installation
data when the network changes.  Everything else is a pure function of
the inputs, so validating the same input twice yields the same result.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from src.core.catalog import profiles as catalog
from src.core.catalog.fields import (
    FIELDS_BY_KEY,
    PORT_FIELDS,
    ConfigField,
    Rule,
    migrate_deprecated,
    visible_fields,
)
from src.core.models.validation import ValidationIssue, ValidationResult
from src.core.validation.address import validate_address
from src.core.validation.password import check_password_strength

logger = logging.getLogger(__name__)

_PATH_FORBIDDEN = re.compile(r'[<>"|?*]')
_TRUE = {"true", "1", "yes", "on"}
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

# Files whose presence means a previous installation left data behind.
INSTALLATION_MARKERS = (".env", "docker-compose.yml")


# ── Value helpers ───────────────────────────────────────────────


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, bool):
        return _as_bool(actual) == expected
    return str(actual) == str(expected)


# ── Rules ───────────────────────────────────────────────────────


def _check_rule(f: ConfigField, rule: Rule, value: Any, network: str | None) -> list[ValidationIssue]:
    """Run one rule; return zero or more issues."""
    text = str(value).strip()

    def issue(issue_type: str, message: str) -> list[ValidationIssue]:
        return [ValidationIssue(field=f.key, message=message, type=issue_type)]

    if rule.kind == "range":
        number = _as_int(value)
        if number is None:
            return issue("range", f"{f.label} must be a number")
        if (rule.min is not None and number < rule.min) or (rule.max is not None and number > rule.max):
            return issue("range", rule.message or f"{f.label} must be between {rule.min} and {rule.max}")
        return []

    if rule.kind == "enum":
        if text not in rule.values:
            return issue("enum", rule.message or f"{f.label} must be one of: {', '.join(rule.values)}")
        return []

    if rule.kind == "pattern":
        if not re.search(rule.pattern, text):
            return issue("pattern", rule.message or f"{f.label} has an invalid format")
        return []

    if rule.kind == "min_length":
        if len(text) < (rule.min or 0):
            return issue("min_length", rule.message or f"{f.label} must be at least {rule.min} characters")
        return []

    if rule.kind == "path":
        if _PATH_FORBIDDEN.search(text):
            return issue("path", rule.message or f"{f.label} contains invalid characters")
        return []

    if rule.kind == "url":
        parsed = urlparse(text)
        if rule.protocols and parsed.scheme not in rule.protocols:
            return issue(
                "url_protocol",
                f"{f.label} must use one of: {', '.join(rule.protocols)}",
            )
        if not parsed.netloc:
            return issue("url_format", f"{f.label} must be a valid URL")
        return []

    if rule.kind == "kaspa_address":
        result = validate_address(text, network if rule.network_aware else None)
        if not result["valid"]:
            return issue(result["type"], f"{f.label}: {result['error']}")
        return []

    if rule.kind == "password":
        return [
            ValidationIssue(field=f.key, message=f"{f.label}: {problem}", type="password_strength")
            for problem in check_password_strength(text)
        ]

    logger.debug("Unknown rule kind %r on %s", rule.kind, f.key)
    return []


def validate_field(
    f: ConfigField,
    value: Any,
    values: dict[str, Any],
    network: str | None = None,
) -> list[ValidationIssue]:
    """Validate one field value in the context of the whole configuration.

    A failing required check stops further checks for the field;
    otherwise every rule runs and all failures are returned.
    """
    if f.conditional_required:
        other, expected, message = f.conditional_required
        if _matches(values.get(other), expected) and _is_empty(value):
            return [ValidationIssue(field=f.key, message=message, type="required")]

    if _is_empty(value):
        if f.required:
            return [ValidationIssue(field=f.key, message=f"{f.label} is required", type="required")]
        return []

    issues: list[ValidationIssue] = []
    for rule in f.rules:
        issues.extend(_check_rule(f, rule, value, network))
    return issues


# ── Cross-field checks ──────────────────────────────────────────


def check_port_conflicts(values: dict[str, Any], visible: set[str]) -> list[ValidationIssue]:
    """Report every later port field that collides with an earlier one."""
    errors: list[ValidationIssue] = []
    seen: dict[int, str] = {}
    for key in PORT_FIELDS:
        if key in FIELDS_BY_KEY and key not in visible:
            continue
        port = _as_int(values.get(key))
        if port is None:
            continue
        if port in seen:
            first = seen[port]
            errors.append(ValidationIssue(
                field=key,
                message=f"Port {port} is already used by {first}",
                type="port_conflict",
                conflicts_with=first,
                suggestion=f"Choose a different port for {key}",
                details={"port": port, "fields": [first, key]},
            ))
        else:
            seen[port] = key
    return errors


def has_existing_installation(project_root: Path | None) -> bool:
    if project_root is None:
        return False
    return any((project_root / name).exists() for name in INSTALLATION_MARKERS)


def check_network_change(
    values: dict[str, Any],
    previous: dict[str, Any] | None,
    project_root: Path | None,
) -> list[ValidationIssue]:
    """Warn when KASPA_NETWORK changes; block if prior data exists on disk."""
    if not previous:
        return []
    old = str(previous.get("KASPA_NETWORK") or "mainnet")
    new = str(values.get("KASPA_NETWORK") or "mainnet")
    if old == new:
        return []

    critical = has_existing_installation(project_root)
    return [ValidationIssue(
        field="KASPA_NETWORK",
        message=(
            f"Changing network from {old} to {new} requires a fresh installation. "
            "Mainnet and testnet data are incompatible."
        ),
        type="network_change",
        severity="critical" if critical else "high",
        prevent_change=critical,
        suggestion="Back up and remove the existing installation before switching networks"
        if critical
        else "Node data will be re-synchronized for the new network",
        details={"from": old, "to": new},
    )]


def _is_local_url(url: str) -> bool:
    host = urlparse(url).hostname or ""
    # Container names on the compose network have no dots
    return host in _LOCAL_HOSTS or (bool(host) and "." not in host)


def check_mixed_sources(values: dict[str, Any], visible: set[str]) -> list[ValidationIssue]:
    """Ask for confirmation when local and public indexer endpoints are mixed."""
    if "INDEXER_CONNECTION_MODE" not in visible:
        return []

    sources: set[str] = set()
    for key in ("KASIA_INDEXER_URL", "K_INDEXER_URL", "SIMPLY_KASPA_INDEXER_URL"):
        url = values.get(key)
        if not _is_empty(url):
            sources.add("local" if _is_local_url(str(url)) else "public")

    if values.get("INDEXER_CONNECTION_MODE") == "mixed":
        for key in ("KASIA_INDEXER_CONNECTION", "KSOCIAL_INDEXER_CONNECTION", "KASPA_NODE_CONNECTION"):
            if values.get(key) in ("local", "public"):
                sources.add(values[key])

    if sources != {"local", "public"} or _as_bool(values.get("MIXED_INDEXER_CONFIRMED", False)):
        return []

    return [ValidationIssue(
        field="MIXED_INDEXER_CONFIRMED",
        message="Both local and public indexer endpoints are configured",
        type="mixed_indexer_confirmation",
        severity="warning",
        suggestion="Confirm the mixed configuration (MIXED_INDEXER_CONFIRMED=true) or use one source",
    )]


def check_mining(values: dict[str, Any], profiles: tuple[str, ...]) -> list[ValidationIssue]:
    if "kaspa-stratum" in profiles and _is_empty(values.get("MINING_ADDRESS")):
        return [ValidationIssue(
            field="MINING_ADDRESS",
            message="Kaspa Stratum needs a mining address to pay rewards to",
            type="missing_recommended",
            severity="warning",
            suggestion="Set MINING_ADDRESS to a kaspa: address you control",
        )]
    return []


# ── Entry point ─────────────────────────────────────────────────


def resolve_values(config: dict[str, Any], fields: list[ConfigField]) -> tuple[dict[str, Any], list[ConfigField]]:
    """Apply defaults and filter fields whose ``depends_on`` is not met.

    Returns:
        (values with defaults, fields that are visible after dependencies)
    """
    values = dict(config)
    for f in fields:
        if f.depends_on is None and _is_empty(values.get(f.key)) and not _is_empty(f.default):
            values[f.key] = f.default

    active: list[ConfigField] = []
    for f in fields:
        if f.depends_on is not None:
            other, expected = f.depends_on
            if not _matches(values.get(other), expected):
                continue
            if _is_empty(values.get(f.key)) and not _is_empty(f.default):
                values[f.key] = f.default
        active.append(f)
    return values, active


def validate_configuration(
    config: dict[str, Any] | None,
    selected_profiles: list[str] | tuple[str, ...] | None,
    previous_config: dict[str, Any] | None = None,
    *,
    project_root: Path | None = None,
) -> ValidationResult:
    """Validate a proposed configuration for a profile selection.

    Args:
        config: Proposed key/value configuration.
        selected_profiles: Profile ids (current or legacy).
        previous_config: Configuration currently deployed, if any.
        project_root: Installation directory probed for existing data.

    Returns:
        Immutable ValidationResult.  Never raises for bad input.
    """
    if config is None:
        return ValidationResult(errors=(ValidationIssue(
            field="config", message="Configuration is required", type="required",
        ),))

    resolution = catalog.resolve(selected_profiles)
    errors = list(resolution.errors)
    warnings = list(resolution.warnings)
    if not resolution.normalized_ids:
        return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))
    profiles = resolution.normalized_ids

    migrated, notes = migrate_deprecated(config)
    for note in notes:
        warnings.append(ValidationIssue(
            field=note["field"],
            message=note["message"],
            type="deprecation",
            severity="warning",
            suggestion="The value was removed from the configuration",
        ))

    values, active = resolve_values(migrated, visible_fields(profiles))
    visible = {f.key for f in active}
    network = str(values.get("KASPA_NETWORK") or "mainnet")

    for f in active:
        errors.extend(validate_field(f, values.get(f.key), values, network))

    errors.extend(check_port_conflicts(values, visible))
    warnings.extend(check_network_change(values, previous_config, project_root))
    warnings.extend(check_mixed_sources(values, visible))
    warnings.extend(check_mining(values, profiles))

    logger.debug(
        "Validated config for %s: %d error(s), %d warning(s)",
        ",".join(profiles), len(errors), len(warnings),
    )
    return ValidationResult(
        errors=tuple(errors),
        warnings=tuple(warnings),
        migrated_config=values,
        profiles=profiles,
    )


def summarize(result: ValidationResult) -> dict[str, Any]:
    """Counts plus issues grouped by type, for display."""
    grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for issue in (*result.errors, *result.warnings):
        grouped[issue.type].append(issue.to_dict())
    return {
        "valid": result.valid,
        "can_proceed": result.can_proceed,
        "error_count": len(result.errors),
        "warning_count": len(result.warnings),
        "by_type": dict(grouped),
        "fields_with_errors": sorted({e.field for e in result.errors if e.field}),
    }


def visible_field_keys(selected_profiles) -> list[str]:
    """Keys of backend fields a selection sees (before ``depends_on``)."""
    return [f.key for f in visible_fields(selected_profiles)]
