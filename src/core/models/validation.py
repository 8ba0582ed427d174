"""
Validation results — immutable issue lists produced by the validators.

Validators never raise.  They collect every problem into a
``ValidationResult`` so callers can render all of them at once.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["error", "critical", "high", "warning", "info"]


class ValidationIssue(BaseModel):
    """A single error or warning."""

    model_config = ConfigDict(frozen=True)

    field: str = ""
    message: str
    type: str
    severity: Severity = "error"
    suggestion: str = ""
    conflicts_with: str = ""
    prevent_change: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        # Drop empty optionals to keep payloads readable
        return {k: v for k, v in data.items() if v not in ("", {}, False) or k == "message"}


class ValidationResult(BaseModel):
    """Outcome of a validation pass.  ``valid`` iff there are no errors."""

    model_config = ConfigDict(frozen=True)

    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    migrated_config: dict[str, Any] = Field(default_factory=dict)
    profiles: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def blocking_warnings(self) -> list[ValidationIssue]:
        return [w for w in self.warnings if w.prevent_change]

    @property
    def can_proceed(self) -> bool:
        """No errors and no warning flagged ``prevent_change``."""
        return self.valid and not self.blocking_warnings

    def errors_of(self, issue_type: str) -> list[ValidationIssue]:
        return [e for e in self.errors if e.type == issue_type]

    def warnings_of(self, issue_type: str) -> list[ValidationIssue]:
        return [w for w in self.warnings if w.type == issue_type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "can_proceed": self.can_proceed,
            "profiles": list(self.profiles),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "migrated_config": dict(self.migrated_config),
        }
