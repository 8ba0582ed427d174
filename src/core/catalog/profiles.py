"""
Profile catalog — the fixed registry of deployable profiles.

A profile is a bundle of services the operator opts into.  The catalog
records, per profile, its member services, the images it pulls, the
services it builds locally, its hard dependencies, its soft
prerequisites and its mutual-exclusion conflicts.

``resolve()`` is the single entry point used by the validators and the
deployment pipeline.  It is pure: the same profile set always yields
the same normalized ids and the same issue list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.core.models.validation import ValidationIssue

# ── Catalog ─────────────────────────────────────────────────────

NODE_IMAGE = "kaspanet/rusty-kaspad:latest"
TIMESCALE_IMAGE = "timescale/timescaledb:latest-pg16"


@dataclass(frozen=True)
class Profile:
    """Immutable catalog entry."""

    id: str
    name: str
    description: str
    services: tuple[str, ...]
    category: str = "core"
    startup_order: int = 1
    images: tuple[str, ...] = ()
    build_services: tuple[str, ...] = ()
    requires_all: tuple[str, ...] = ()
    requires_any: tuple[str, ...] = ()
    requires_message: str = ""
    recommends: tuple[str, ...] = ()
    recommends_message: str = ""
    can_use_remote: bool = False
    conflicts: tuple[str, ...] = ()


_LOCAL_NODES = ("kaspa-node", "kaspa-archive-node")

PROFILES: dict[str, Profile] = {
    p.id: p
    for p in (
        Profile(
            id="kaspa-node",
            name="Kaspa Node",
            description="Standard Kaspa full node (pruned)",
            services=("kaspa-node",),
            images=(NODE_IMAGE,),
            conflicts=("kaspa-archive-node",),
        ),
        Profile(
            id="kasia-app",
            name="Kasia App",
            description="Kasia messaging application",
            services=("kasia-app",),
            category="apps",
            startup_order=3,
            build_services=("kasia-app",),
        ),
        Profile(
            id="k-social-app",
            name="K-Social App",
            description="K-Social platform",
            services=("k-social",),
            category="apps",
            startup_order=3,
            build_services=("k-social",),
        ),
        Profile(
            id="kaspa-explorer-bundle",
            name="Kaspa Explorer",
            description="Block explorer with its own indexer and database",
            services=("kaspa-explorer", "simply-kaspa-indexer", "timescaledb-explorer"),
            category="apps",
            startup_order=2,
            images=(TIMESCALE_IMAGE,),
            build_services=("kaspa-explorer",),
            recommends=_LOCAL_NODES,
            recommends_message="Kaspa Explorer works best with a local Kaspa node",
            can_use_remote=True,
        ),
        Profile(
            id="kasia-indexer",
            name="Kasia Indexer",
            description="Kasia blockchain indexer",
            services=("kasia-indexer",),
            category="indexers",
            startup_order=2,
            images=("kkluster/kasia-indexer:main",),
            recommends=_LOCAL_NODES,
            recommends_message="Kasia Indexer works best with a local Kaspa node",
            can_use_remote=True,
        ),
        Profile(
            id="k-indexer-bundle",
            name="K-Indexer",
            description="K-Social indexer with TimescaleDB",
            services=("k-indexer", "timescaledb-kindexer"),
            category="indexers",
            startup_order=2,
            images=(TIMESCALE_IMAGE,),
            build_services=("k-indexer",),
            recommends=_LOCAL_NODES,
            recommends_message="K-Indexer works best with a local Kaspa node",
            can_use_remote=True,
        ),
        Profile(
            id="kaspa-archive-node",
            name="Kaspa Archive Node",
            description="Non-pruning Kaspa node keeping full history",
            services=("kaspa-archive-node",),
            images=(NODE_IMAGE,),
            conflicts=("kaspa-node",),
        ),
        Profile(
            id="kaspa-stratum",
            name="Kaspa Stratum",
            description="Stratum bridge for solo mining",
            services=("kaspa-stratum",),
            category="mining",
            startup_order=3,
            build_services=("kaspa-stratum",),
            requires_any=_LOCAL_NODES,
            requires_message="Kaspa Stratum requires a local Kaspa node (standard or archive)",
        ),
    )
}

# Legacy id → replacement id(s).  1-to-1 or 1-to-many.
LEGACY_PROFILE_IDS: dict[str, tuple[str, ...]] = {
    "core": ("kaspa-node",),
    "kaspa-user-applications": ("kasia-app", "k-social-app"),
    "indexer-services": ("kasia-indexer", "k-indexer-bundle"),
    "archive-node": ("kaspa-archive-node",),
    "mining": ("kaspa-stratum",),
}

# Apps that fall back to public endpoints when their indexer is not local.
_REMOTE_FALLBACKS: dict[str, tuple[str, str]] = {
    "kasia-app": ("kasia-indexer", "Kasia App will use the public Kasia indexer"),
    "k-social-app": ("k-indexer-bundle", "K-Social App will use the public K-Social indexer"),
}

_ORDER = {pid: i for i, pid in enumerate(PROFILES)}


def _conflict_pairs() -> frozenset[frozenset[str]]:
    """Symmetric closure of the declared conflicts."""
    pairs = set()
    for profile in PROFILES.values():
        for other in profile.conflicts:
            pairs.add(frozenset((profile.id, other)))
    return frozenset(pairs)


CONFLICT_PAIRS = _conflict_pairs()


# ── Resolution ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Resolution:
    """Outcome of ``resolve()``."""

    normalized_ids: tuple[str, ...]
    errors: tuple[ValidationIssue, ...]
    warnings: tuple[ValidationIssue, ...]

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "profiles": list(self.normalized_ids),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def is_legacy(profile_id: str) -> bool:
    return profile_id in LEGACY_PROFILE_IDS


def migrate_profile_ids(profile_ids: list[str] | tuple[str, ...]) -> list[str]:
    """Map legacy ids to current ones, dropping duplicates and unknown ids."""
    out: list[str] = []
    for pid in profile_ids:
        for new_id in LEGACY_PROFILE_IDS.get(pid, (pid,)):
            if new_id in PROFILES and new_id not in out:
                out.append(new_id)
    return sorted(out, key=_ORDER.__getitem__)


def resolve(profile_ids: list[str] | tuple[str, ...] | None) -> Resolution:
    """Normalize a profile selection and check its structural constraints.

    Checks, in order: empty selection, unknown ids, legacy ids (migrated
    with one warning each), conflicts (each pair reported once),
    hard dependencies, soft prerequisites and remote fallbacks.
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    ids = list(profile_ids or [])
    if not ids:
        errors.append(ValidationIssue(
            field="profiles",
            message="At least one profile must be selected",
            type="no_profiles",
        ))
        return Resolution((), tuple(errors), ())

    selected: set[str] = set()
    seen_legacy: set[str] = set()
    for pid in ids:
        if pid in LEGACY_PROFILE_IDS:
            replacements = LEGACY_PROFILE_IDS[pid]
            if pid not in seen_legacy:
                seen_legacy.add(pid)
                warnings.append(ValidationIssue(
                    field="profiles",
                    message=f"Profile ID '{pid}' is deprecated",
                    type="legacy_profile_id",
                    severity="warning",
                    suggestion=f"Use '{', '.join(replacements)}' instead",
                    details={"legacy_id": pid, "replacement": list(replacements)},
                ))
            selected.update(replacements)
        elif pid in PROFILES:
            selected.add(pid)
        else:
            errors.append(ValidationIssue(
                field="profiles",
                message=f"Invalid profile: '{pid}'. Valid profiles: {', '.join(PROFILES)}",
                type="invalid_profile",
                details={"profile": pid, "valid_profiles": list(PROFILES)},
            ))

    normalized = tuple(sorted(selected, key=_ORDER.__getitem__))

    # Conflicts — iterate ordered pairs so each is reported once
    for i, a in enumerate(normalized):
        for b in normalized[i + 1:]:
            if frozenset((a, b)) in CONFLICT_PAIRS:
                errors.append(ValidationIssue(
                    field="profiles",
                    message=f"{PROFILES[a].name} and {PROFILES[b].name} cannot be selected together",
                    type="profile_conflict",
                    conflicts_with=b,
                    suggestion=f"Remove either '{a}' or '{b}'",
                    details={"profiles": [a, b]},
                ))

    for pid in normalized:
        profile = PROFILES[pid]

        missing = [dep for dep in profile.requires_all if dep not in selected]
        if missing:
            errors.append(ValidationIssue(
                field="profiles",
                message=profile.requires_message
                or f"{profile.name} requires: {', '.join(missing)}",
                type="missing_dependency",
                suggestion=f"Add {', '.join(missing)}",
                details={"profile": pid, "missing": missing},
            ))

        if profile.requires_any and not selected.intersection(profile.requires_any):
            errors.append(ValidationIssue(
                field="profiles",
                message=profile.requires_message
                or f"{profile.name} requires one of: {', '.join(profile.requires_any)}",
                type="missing_dependency",
                suggestion=f"Add one of: {', '.join(profile.requires_any)}",
                details={"profile": pid, "any_of": list(profile.requires_any)},
            ))

        if profile.recommends and not selected.intersection(profile.recommends):
            warnings.append(ValidationIssue(
                field="profiles",
                message=profile.recommends_message
                or f"{profile.name} works best with one of: {', '.join(profile.recommends)}",
                type="missing_prerequisite",
                severity="info" if profile.can_use_remote else "warning",
                suggestion="A public node will be used unless you add a local one"
                if profile.can_use_remote
                else f"Add one of: {', '.join(profile.recommends)}",
                details={"profile": pid, "recommends": list(profile.recommends)},
            ))

        fallback = _REMOTE_FALLBACKS.get(pid)
        if fallback and fallback[0] not in selected:
            warnings.append(ValidationIssue(
                field="profiles",
                message=fallback[1],
                type="remote_dependency_info",
                severity="info",
                details={"profile": pid, "local_alternative": fallback[0]},
            ))

    return Resolution(normalized, tuple(errors), tuple(warnings))


# ── Lookups ─────────────────────────────────────────────────────


def get_profile(profile_id: str) -> Profile | None:
    return PROFILES.get(profile_id)


def _dedupe(items) -> list[str]:
    out: list[str] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


def services_for(profile_ids) -> list[str]:
    """Member services of the (migrated) selection, in catalog order."""
    return _dedupe(s for pid in migrate_profile_ids(profile_ids) for s in PROFILES[pid].services)


def images_for(profile_ids) -> list[str]:
    """Pre-built images to pull, deduplicated across profiles."""
    return _dedupe(i for pid in migrate_profile_ids(profile_ids) for i in PROFILES[pid].images)


def build_services_for(profile_ids) -> list[str]:
    """Services whose image is built locally."""
    return _dedupe(s for pid in migrate_profile_ids(profile_ids) for s in PROFILES[pid].build_services)


def startup_order(profile_ids) -> list[list[str]]:
    """Services grouped into startup waves (lower order first)."""
    waves: dict[int, list[str]] = {}
    for pid in migrate_profile_ids(profile_ids):
        profile = PROFILES[pid]
        bucket = waves.setdefault(profile.startup_order, [])
        bucket.extend(s for s in profile.services if s not in bucket)
    return [waves[k] for k in sorted(waves)]


def profiles_for_service(service: str) -> list[str]:
    return [pid for pid, p in PROFILES.items() if service in p.services]


# ── Templates & developer mode ──────────────────────────────────

TEMPLATES: dict[str, dict[str, Any]] = {
    "home-node": {
        "name": "Home Node",
        "description": "Basic Kaspa node for personal use",
        "profiles": ["kaspa-node"],
        "config": {"PUBLIC_NODE": False, "CONFIGURATION_TEMPLATE": "home-node"},
    },
    "public-node": {
        "name": "Public Node",
        "description": "Public-facing Kaspa node with indexer services",
        "profiles": ["kaspa-node", "kasia-indexer", "k-indexer-bundle"],
        "config": {"PUBLIC_NODE": True, "CONFIGURATION_TEMPLATE": "public-node"},
    },
    "full-stack": {
        "name": "Full Stack",
        "description": "Node, indexers and user applications",
        "profiles": ["kaspa-node", "kasia-app", "k-social-app", "kasia-indexer", "k-indexer-bundle"],
        "config": {"PUBLIC_NODE": True, "CONFIGURATION_TEMPLATE": "full-stack"},
    },
    "mining-rig": {
        "name": "Mining Rig",
        "description": "Local node with a stratum bridge for solo mining",
        "profiles": ["kaspa-node", "kaspa-stratum"],
        "config": {"WALLET_CONNECTIVITY_ENABLED": True, "CONFIGURATION_TEMPLATE": "mining-rig"},
    },
    "developer": {
        "name": "Developer",
        "description": "Local node with inspection tools and debug logging",
        "profiles": ["kaspa-node"],
        "config": {"CONFIGURATION_TEMPLATE": "developer"},
        "developer_mode": True,
    },
}


def apply_template(template_id: str) -> dict[str, Any] | None:
    """Return ``{profiles, config}`` for a template, or None if unknown."""
    template = TEMPLATES.get(template_id)
    if template is None:
        return None
    config = dict(template["config"])
    if template.get("developer_mode"):
        config = apply_developer_mode(config, True)
    return {"template": template_id, "profiles": list(template["profiles"]), "config": config}


def apply_developer_mode(config: dict[str, Any], enabled: bool = False) -> dict[str, Any]:
    """Add debug logging and inspection tools to a configuration."""
    if not enabled:
        return config
    return {
        **config,
        "LOG_LEVEL": "debug",
        "ENABLE_PORTAINER": True,
        "ENABLE_PGADMIN": True,
        "ENABLE_LOG_ACCESS": True,
    }


# ── Diagnostics ─────────────────────────────────────────────────


def diagnose(profile_ids, declared_services: set[str] | None) -> dict[str, Any]:
    """Check the selection against the services a compose descriptor declares.

    Returns ``{ok, resolution, missing_services, quick_fixes}``.
    ``declared_services=None`` means no descriptor was found.
    """
    resolution = resolve(profile_ids)
    quick_fixes: list[dict[str, str]] = []

    for issue in resolution.errors:
        if issue.type == "profile_conflict":
            quick_fixes.append({"issue": issue.message, "action": issue.suggestion})
        elif issue.type == "missing_dependency":
            quick_fixes.append({"issue": issue.message, "action": issue.suggestion})
        elif issue.type == "invalid_profile":
            quick_fixes.append({
                "issue": issue.message,
                "action": "Choose from: " + ", ".join(PROFILES),
            })

    missing: list[str] = []
    if declared_services is None:
        quick_fixes.append({
            "issue": "No compose descriptor found",
            "action": "Generate docker-compose.yml for the selected profiles",
        })
    else:
        missing = [s for s in services_for(resolution.normalized_ids) if s not in declared_services]
        for svc in missing:
            quick_fixes.append({
                "issue": f"Service '{svc}' is not declared in the compose descriptor",
                "action": f"Add '{svc}' to docker-compose.yml or regenerate it",
            })

    return {
        "ok": resolution.ok and declared_services is not None and not missing,
        "resolution": resolution.to_dict(),
        "missing_services": missing,
        "quick_fixes": quick_fixes,
    }
