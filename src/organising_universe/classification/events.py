"""Typed domain events that can move a project's classification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from .taxonomy import (
    Classification,
    ClassificationTaxonomyError,
    Tier,
    ensure_classification,
    optional_tier,
)


CONTRACTOR_CHANGE_KINDS: frozenset[str] = frozenset({"created", "updated", "deleted"})
PATCH_CHANGE_KINDS: frozenset[str] = frozenset({"opened", "closed"})


class ClassificationEventError(ValueError):
    """Raised when a domain event envelope cannot be parsed."""


@dataclass(frozen=True)
class ContractorAssignmentChanged:
    project_id: str
    contractor_role: str
    change_kind: str
    employer_id: str | None = None

    event_type = "contractor_assignment_changed"

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "contractor_role": self.contractor_role,
            "change_kind": self.change_kind,
            "employer_id": self.employer_id,
        }


@dataclass(frozen=True)
class PatchAssignmentChanged:
    """A patch assignment opened or closed for a job site.

    ``project_id`` is optional: publishers that only know the job site leave it
    unset and the router resolves the owning project.
    """

    job_site_id: str
    change_kind: str
    project_id: str | None = None
    patch_id: str | None = None

    event_type = "patch_assignment_changed"

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "job_site_id": self.job_site_id,
            "change_kind": self.change_kind,
            "project_id": self.project_id,
            "patch_id": self.patch_id,
        }


@dataclass(frozen=True)
class ProjectTierChanged:
    project_id: str
    old_tier: Tier | None
    new_tier: Tier | None

    event_type = "project_tier_changed"

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "old_tier": self.old_tier.value if self.old_tier is not None else None,
            "new_tier": self.new_tier.value if self.new_tier is not None else None,
        }


@dataclass(frozen=True)
class ProjectCreated:
    project_id: str
    tier: Tier | None = None
    classification: Classification | None = None

    event_type = "project_created"

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "tier": self.tier.value if self.tier is not None else None,
            "classification": self.classification.value if self.classification is not None else None,
        }


DomainEvent = Union[ContractorAssignmentChanged, PatchAssignmentChanged, ProjectTierChanged, ProjectCreated]


def event_from_envelope(payload: Mapping[str, Any]) -> DomainEvent:
    if not isinstance(payload, Mapping):
        raise ClassificationEventError("event envelope must be a mapping")
    event_type = _required(payload, "event_type").lower()
    try:
        if event_type == ContractorAssignmentChanged.event_type:
            return ContractorAssignmentChanged(
                project_id=_required(payload, "project_id"),
                contractor_role=_required(payload, "contractor_role").lower(),
                change_kind=_kind(payload, CONTRACTOR_CHANGE_KINDS),
                employer_id=_optional(payload, "employer_id"),
            )
        if event_type == PatchAssignmentChanged.event_type:
            return PatchAssignmentChanged(
                job_site_id=_required(payload, "job_site_id"),
                change_kind=_kind(payload, PATCH_CHANGE_KINDS),
                project_id=_optional(payload, "project_id"),
                patch_id=_optional(payload, "patch_id"),
            )
        if event_type == ProjectTierChanged.event_type:
            return ProjectTierChanged(
                project_id=_required(payload, "project_id"),
                old_tier=optional_tier(payload.get("old_tier")),
                new_tier=optional_tier(payload.get("new_tier")),
            )
        if event_type == ProjectCreated.event_type:
            raw_classification = payload.get("classification")
            return ProjectCreated(
                project_id=_required(payload, "project_id"),
                tier=optional_tier(payload.get("tier")),
                classification=(
                    None if raw_classification in (None, "") else ensure_classification(raw_classification)
                ),
            )
    except ClassificationTaxonomyError as exc:
        raise ClassificationEventError(str(exc)) from exc
    raise ClassificationEventError(f"unsupported event_type: {event_type!r}")


def _required(payload: Mapping[str, Any], key: str) -> str:
    value = str(payload.get(key) or "").strip()
    if not value:
        raise ClassificationEventError(f"{key} is required")
    return value


def _optional(payload: Mapping[str, Any], key: str) -> str | None:
    value = str(payload.get(key) or "").strip()
    return value or None


def _kind(payload: Mapping[str, Any], allowed: frozenset[str]) -> str:
    kind = _required(payload, "change_kind").lower()
    if kind not in allowed:
        raise ClassificationEventError(f"change_kind not allowed: {kind!r}; allowed={sorted(allowed)!r}")
    return kind
