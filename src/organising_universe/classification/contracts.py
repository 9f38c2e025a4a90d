"""Organising universe project, audit and result contracts."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from .taxonomy import (
    Classification,
    RuleApplied,
    Tier,
    ensure_classification,
    ensure_rule_applied,
    optional_tier,
)


REASON_UPDATED = "UPDATED"
REASON_NO_CHANGE = "NO_CHANGE"
REASON_MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
REASON_NO_TIER = "NO_TIER"

REASON_TEXT: dict[str, str] = {
    REASON_NO_CHANGE: "no change needed",
    REASON_MANUAL_OVERRIDE: "manual override in place",
    REASON_NO_TIER: "no tier",
}


@dataclass(frozen=True)
class AutomationFlags:
    """Ownership flags for the classification field.

    A project is owned by automation (``is_auto``), pinned by a human
    (``is_manual``) or neither (freshly created, or after an admin reset).
    The two flags are never both set.
    """

    is_manual: bool = False
    is_auto: bool = False
    last_auto_update: str | None = None
    change_reason: str | None = None

    def __post_init__(self) -> None:
        if self.is_manual and self.is_auto:
            raise ValueError("classification cannot be both manual and auto-assigned")

    def auto_applied(self, *, at_utc: str, reason: str, override_pin: bool = False) -> "AutomationFlags":
        if self.is_manual and not override_pin:
            raise ValueError("automatic write attempted on a manually pinned classification")
        return AutomationFlags(is_manual=False, is_auto=True, last_auto_update=at_utc, change_reason=reason)

    def pinned(self, *, reason: str) -> "AutomationFlags":
        return AutomationFlags(
            is_manual=True,
            is_auto=False,
            last_auto_update=self.last_auto_update,
            change_reason=reason,
        )

    def unpinned(self, *, reason: str) -> "AutomationFlags":
        return replace(self, is_manual=False, change_reason=reason)

    def frozen_by_rollback(self, *, reason: str) -> "AutomationFlags":
        return self.pinned(reason=reason)

    @staticmethod
    def cleared() -> "AutomationFlags":
        return AutomationFlags()


@dataclass(frozen=True)
class Project:
    project_id: str
    tier: Tier | None
    classification: Classification
    flags: AutomationFlags
    created_at_utc: str | None = None
    updated_at_utc: str | None = None

    @property
    def classification_is_manual(self) -> bool:
        return self.flags.is_manual

    @property
    def classification_is_auto(self) -> bool:
        return self.flags.is_auto

    @property
    def last_auto_update(self) -> str | None:
        return self.flags.last_auto_update

    @property
    def change_reason(self) -> str | None:
        return self.flags.change_reason

    @classmethod
    def from_row(cls, row: Any) -> "Project":
        return cls(
            project_id=str(row[0]),
            tier=optional_tier(row[1]),
            classification=ensure_classification(row[2]),
            flags=AutomationFlags(
                is_manual=bool(row[3]),
                is_auto=bool(row[4]),
                last_auto_update=None if row[5] in (None, "") else str(row[5]),
                change_reason=None if row[6] in (None, "") else str(row[6]),
            ),
            created_at_utc=None if row[7] in (None, "") else str(row[7]),
            updated_at_utc=None if row[8] in (None, "") else str(row[8]),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "tier": self.tier.value if self.tier is not None else None,
            "classification": self.classification.value,
            "classification_is_manual": self.flags.is_manual,
            "classification_is_auto": self.flags.is_auto,
            "last_auto_update": self.flags.last_auto_update,
            "change_reason": self.flags.change_reason,
            "created_at_utc": self.created_at_utc,
            "updated_at_utc": self.updated_at_utc,
        }


@dataclass(frozen=True)
class ClassificationChangeRecord:
    change_id: str
    project_id: str
    change_seq: int
    old_value: Classification | None
    new_value: Classification
    reason: str
    rule_applied: RuleApplied
    applied_by: str | None
    applied_at_utc: str
    was_manual_override: bool

    @classmethod
    def from_row(cls, row: Any) -> "ClassificationChangeRecord":
        return cls(
            change_id=str(row[0]),
            project_id=str(row[1]),
            change_seq=int(row[2]),
            old_value=None if row[3] in (None, "") else ensure_classification(row[3]),
            new_value=ensure_classification(row[4]),
            reason=str(row[5] or ""),
            rule_applied=ensure_rule_applied(row[6]),
            applied_by=None if row[7] in (None, "") else str(row[7]),
            applied_at_utc=str(row[8]),
            was_manual_override=bool(row[9]),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "change_id": self.change_id,
            "project_id": self.project_id,
            "change_seq": self.change_seq,
            "old_value": self.old_value.value if self.old_value is not None else None,
            "new_value": self.new_value.value,
            "reason": self.reason,
            "rule_applied": self.rule_applied.value,
            "applied_by": self.applied_by,
            "applied_at_utc": self.applied_at_utc,
            "was_manual_override": self.was_manual_override,
        }


@dataclass(frozen=True)
class SnapshotRow:
    project_id: str
    classification: Classification
    snapshot_id: str
    captured_at_utc: str


@dataclass(frozen=True)
class ReconcileResult:
    project_id: str
    updated: bool
    reason_code: str
    reason: str
    old_value: Classification | None = None
    new_value: Classification | None = None
    change: ClassificationChangeRecord | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "updated": self.updated,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "old": self.old_value.value if self.old_value is not None else None,
            "new": self.new_value.value if self.new_value is not None else None,
        }


def skipped_result(
    project_id: str,
    reason_code: str,
    *,
    current: Classification | None = None,
) -> ReconcileResult:
    return ReconcileResult(
        project_id=project_id,
        updated=False,
        reason_code=reason_code,
        reason=REASON_TEXT[reason_code],
        old_value=current,
        new_value=current,
    )


def unit_error(project_id: str, code: str, detail: str) -> dict[str, str]:
    return {"project_id": project_id, "reason_code": code, "detail": detail}


BATCH_COMPLETED = "COMPLETED"
BATCH_PARTIAL_FAILURE = "PARTIAL_FAILURE"
BATCH_CANCELLED = "CANCELLED"


def batch_status(*, error_count: int, cancelled: bool) -> str:
    if cancelled:
        return BATCH_CANCELLED
    if error_count:
        return BATCH_PARTIAL_FAILURE
    return BATCH_COMPLETED
