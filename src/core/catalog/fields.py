"""
Configuration field catalog — keys, defaults, rules and visibility.

Each field declares the profiles that see it (current ids; legacy ids
are normalized before lookup).  A field with no profiles is visible to
every selection unless it is deprecated.  Deprecated fields are never
visible; their values are stripped during migration.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.core.catalog.profiles import LEGACY_PROFILE_IDS, migrate_profile_ids


@dataclass(frozen=True)
class Rule:
    """One validation rule in a field's chain."""

    kind: str  # range, pattern, enum, min_length, path, url, kaspa_address, password
    message: str = ""
    min: int | None = None
    max: int | None = None
    values: tuple[str, ...] = ()
    pattern: str = ""
    protocols: tuple[str, ...] = ()
    network_aware: bool = False


@dataclass(frozen=True)
class ConfigField:
    key: str
    label: str
    default: Any = ""
    required: bool = False
    rules: tuple[Rule, ...] = ()
    profiles: tuple[str, ...] = ()
    frontend_only: bool = False
    deprecated: bool = False
    deprecated_message: str = ""
    # (field, value, message) — required only when ``field`` has ``value``
    conditional_required: tuple[str, Any, str] | None = None
    # (field, value) — visible only when ``field`` has ``value``
    depends_on: tuple[str, Any] | None = None


# ── Shared rules ────────────────────────────────────────────────

PORT_RULE = Rule("range", "Port must be between 1024 and 65535", min=1024, max=65535)
PATH_RULE = Rule("path", "Path contains invalid characters")
HTTP_URL = Rule("pattern", "Must be an http(s) URL", pattern=r"^https?://.+")
WS_URL = Rule("pattern", "Must be a ws(s) URL", pattern=r"^wss?://.+")
CONNECTION_RULE = Rule("enum", values=("auto", "local", "public"))
DB_PASSWORD_RULES = (
    Rule("password"),
)

NODES = ("kaspa-node", "kaspa-archive-node")
NODES_AND_MINING = ("kaspa-node", "kaspa-archive-node", "kaspa-stratum")
APPS = ("kasia-app", "k-social-app")

_WALLET_REMOVED = "Wallet secrets are no longer stored by the installer; manage them in your wallet"


# ── Catalog ─────────────────────────────────────────────────────

FIELDS: tuple[ConfigField, ...] = (
    # Node
    ConfigField("KASPA_NODE_RPC_PORT", "Kaspa Node RPC Port", 16110, True, (PORT_RULE,), NODES),
    ConfigField("KASPA_NODE_P2P_PORT", "Kaspa Node P2P Port", 16111, True, (PORT_RULE,), NODES),
    ConfigField(
        "KASPA_NETWORK", "Network", "mainnet", True,
        (Rule("enum", "Network must be mainnet or testnet", values=("mainnet", "testnet")),),
        NODES,
    ),
    ConfigField("KASPA_DATA_DIR", "Data Directory", "/data/kaspa", False, (PATH_RULE,), ("kaspa-node",)),
    ConfigField(
        "KASPA_ARCHIVE_DATA_DIR", "Archive Data Directory", "/data/kaspa-archive", False,
        (PATH_RULE,), ("kaspa-archive-node",),
    ),
    ConfigField("EXTERNAL_IP", "External IP Address", "", False, (
        Rule("pattern", "Must be a valid IPv4 address", pattern=r"^(\d{1,3}\.){3}\d{1,3}$"),
    ), NODES_AND_MINING),
    ConfigField("PUBLIC_NODE", "Public Node", False, False, (), NODES),
    # Wallet & mining
    ConfigField("WALLET_CONNECTIVITY_ENABLED", "Enable Wallet Connectivity", False, False, (), NODES_AND_MINING),
    ConfigField(
        "KASPA_NODE_WRPC_BORSH_PORT", "wRPC Borsh Port", 17110, False, (PORT_RULE,), NODES,
        depends_on=("WALLET_CONNECTIVITY_ENABLED", True),
    ),
    ConfigField(
        "KASPA_NODE_WRPC_JSON_PORT", "wRPC JSON Port", 18110, False, (PORT_RULE,), NODES,
        depends_on=("WALLET_CONNECTIVITY_ENABLED", True),
    ),
    ConfigField(
        "WALLET_SETUP_MODE", "Address Setup Method", "generate", False,
        (Rule("enum", values=("generate", "import", "manual")),), NODES_AND_MINING,
        frontend_only=True,
    ),
    ConfigField(
        "MINING_ADDRESS", "Mining Address", "", False,
        (Rule("kaspa_address", network_aware=True),), NODES_AND_MINING,
        conditional_required=(
            "WALLET_CONNECTIVITY_ENABLED", True,
            "Mining address is required when wallet connectivity is enabled",
        ),
    ),
    ConfigField("STRATUM_PORT", "Stratum Port", 5555, False, (PORT_RULE,), ("kaspa-stratum",)),
    # Applications
    ConfigField(
        "INDEXER_CONNECTION_MODE", "Indexer Connection Mode", "auto", True,
        (Rule("enum", values=("auto", "local", "public", "mixed")),), APPS,
    ),
    ConfigField("REMOTE_KASIA_INDEXER_URL", "Kasia Indexer URL", "https://indexer.kasia.fyi/", False, (HTTP_URL,), APPS),
    ConfigField(
        "KASIA_INDEXER_CONNECTION", "Kasia Indexer Connection", "auto", False, (CONNECTION_RULE,), APPS,
        depends_on=("INDEXER_CONNECTION_MODE", "mixed"),
    ),
    ConfigField(
        "REMOTE_KSOCIAL_INDEXER_URL", "K-Social Indexer URL", "https://indexer0.kaspatalk.net/", False,
        (HTTP_URL,), APPS,
    ),
    ConfigField(
        "KSOCIAL_INDEXER_CONNECTION", "K-Social Indexer Connection", "auto", False, (CONNECTION_RULE,), APPS,
        depends_on=("INDEXER_CONNECTION_MODE", "mixed"),
    ),
    ConfigField(
        "REMOTE_KASPA_NODE_WBORSH_URL", "Kaspa Node WebSocket URL", "wss://wrpc.kasia.fyi", False,
        (WS_URL,), APPS,
    ),
    ConfigField(
        "KASPA_NODE_CONNECTION", "Kaspa Node Connection", "auto", False, (CONNECTION_RULE,), APPS,
        depends_on=("INDEXER_CONNECTION_MODE", "mixed"),
    ),
    ConfigField("KASIA_INDEXER_URL", "Kasia Indexer URL (custom)", "", False, (
        Rule("url", protocols=("http", "https")),
    ), APPS),
    ConfigField("K_INDEXER_URL", "K-Indexer URL", "", False, (Rule("url", protocols=("http", "https")),), APPS),
    ConfigField(
        "SIMPLY_KASPA_INDEXER_URL", "Simply Kaspa Indexer URL", "", False,
        (Rule("url", protocols=("http", "https")),), APPS,
    ),
    ConfigField("MIXED_INDEXER_CONFIRMED", "Mixed Indexer Configuration Confirmed", False, False, (), APPS),
    ConfigField("KASIA_APP_PORT", "Kasia App Port", 3001, False, (PORT_RULE,), ("kasia-app",)),
    ConfigField("KSOCIAL_APP_PORT", "K-Social App Port", 3003, False, (PORT_RULE,), ("k-social-app",)),
    ConfigField("EXPLORER_PORT", "Explorer Port", 3004, False, (PORT_RULE,), ("kaspa-explorer-bundle",)),
    # Indexers & databases
    ConfigField(
        "K_SOCIAL_DB_PASSWORD", "K-Social Database Password", "", True, DB_PASSWORD_RULES,
        ("k-indexer-bundle",),
    ),
    ConfigField(
        "SIMPLY_KASPA_DB_PASSWORD", "Simply Kaspa Database Password", "", True, DB_PASSWORD_RULES,
        ("kaspa-explorer-bundle",),
    ),
    ConfigField("K_SOCIAL_DB_PORT", "K-Social Database Port", 5433, False, (PORT_RULE,), ("k-indexer-bundle",)),
    ConfigField(
        "SIMPLY_KASPA_DB_PORT", "Simply Kaspa Database Port", 5434, False, (PORT_RULE,),
        ("kaspa-explorer-bundle",),
    ),
    ConfigField(
        "USE_PUBLIC_KASPA_NETWORK", "Use Public Kaspa Network", False, False, (),
        ("kasia-indexer", "k-indexer-bundle", "kaspa-explorer-bundle"),
    ),
    # Common
    ConfigField("CUSTOM_ENV_VARS", "Custom Environment Variables"),
    ConfigField("CONFIGURATION_TEMPLATE", "Configuration Template", "custom", False, (
        Rule("enum", values=("custom", "home-node", "public-node", "developer", "mining-rig", "full-stack")),
    )),
    # Removed wallet secrets
    *(
        ConfigField(key, label, deprecated=True, deprecated_message=_WALLET_REMOVED)
        for key, label in (
            ("WALLET_SEED_PHRASE", "Wallet Seed Phrase (Removed)"),
            ("WALLET_PASSWORD", "Wallet Password (Removed)"),
            ("WALLET_FILE", "Wallet File (Removed)"),
            ("WALLET_PRIVATE_KEY", "Wallet Private Key (Removed)"),
            ("WALLET_PATH", "Wallet Path (Removed)"),
        )
    ),
)

FIELDS_BY_KEY: dict[str, ConfigField] = {f.key: f for f in FIELDS}

DEPRECATED_FIELDS = tuple(f for f in FIELDS if f.deprecated)

# Port-bearing keys in conflict-scan order.  TIMESCALEDB_PORT and
# DASHBOARD_PORT are not catalog fields but are checked when supplied.
PORT_FIELDS: tuple[str, ...] = (
    "KASPA_NODE_RPC_PORT",
    "KASPA_NODE_P2P_PORT",
    "KASPA_NODE_WRPC_BORSH_PORT",
    "KASPA_NODE_WRPC_JSON_PORT",
    "K_SOCIAL_DB_PORT",
    "SIMPLY_KASPA_DB_PORT",
    "TIMESCALEDB_PORT",
    "DASHBOARD_PORT",
    "KASIA_APP_PORT",
    "KSOCIAL_APP_PORT",
    "EXPLORER_PORT",
    "STRATUM_PORT",
)


# ── Visibility ──────────────────────────────────────────────────


def normalize_profiles(profile_ids) -> set[str]:
    """Current ids for the selection plus the legacy ids that map to them."""
    current = set(migrate_profile_ids(profile_ids))
    legacy = {old for old, new in LEGACY_PROFILE_IDS.items() if current.intersection(new)}
    return current | legacy


def is_visible(f: ConfigField, profiles: set[str]) -> bool:
    if f.deprecated:
        return False
    return not f.profiles or bool(profiles.intersection(f.profiles))


def visible_fields(profile_ids, *, backend_only: bool = True) -> list[ConfigField]:
    """Fields a selection sees, in catalog order.

    Args:
        profile_ids: Selected profiles (current or legacy ids).
        backend_only: Skip fields only the UI uses.
    """
    profiles = normalize_profiles(profile_ids)
    out = []
    for f in FIELDS:
        if not is_visible(f, profiles):
            continue
        if backend_only and f.frontend_only:
            continue
        out.append(f)
    return out


def migrate_deprecated(config: dict[str, Any]) -> tuple[dict[str, Any], list[dict[str, str]]]:
    """Strip removed keys from a configuration.

    Returns:
        (migrated copy, list of ``{field, message, action}`` notes)
    """
    migrated = dict(config)
    notes: list[dict[str, str]] = []
    for f in DEPRECATED_FIELDS:
        if f.key in migrated:
            value = migrated.pop(f.key)
            if value not in (None, ""):
                notes.append({
                    "field": f.key,
                    "message": f"{f.label}: {f.deprecated_message}",
                    "action": "removed",
                })
    return migrated, notes


def filter_for_backend(config: dict[str, Any], profile_ids) -> dict[str, Any]:
    """Keep only keys that are visible backend fields or not catalog fields at all."""
    keep = {f.key for f in visible_fields(profile_ids)}
    return {
        k: v for k, v in config.items()
        if k in keep or k not in FIELDS_BY_KEY
    }
