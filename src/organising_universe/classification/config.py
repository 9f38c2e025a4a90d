"""Organising universe classification policy loader."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from .taxonomy import Classification, ClassificationTaxonomyError, ensure_classification


DEFAULT_CHANGE_REASON_TEMPLATE = "Auto-assigned {old} -> {new} ({basis})"
DEFAULT_PRIMARY_CONTRACTOR_ROLES: tuple[str, ...] = ("builder", "head_contractor")


@dataclass(frozen=True)
class AuditWritePolicy:
    max_attempts: int
    backoff_seconds: float


@dataclass(frozen=True)
class ClassificationPolicy:
    version: str
    policy_id: str
    revision: str
    default_classification: Classification
    primary_contractor_roles: tuple[str, ...]
    change_reason_template: str
    audit_write: AuditWritePolicy
    router_max_workers: int
    content_digest: str

    def is_primary_contractor_role(self, role: str | None) -> bool:
        return str(role or "").strip().lower() in self.primary_contractor_roles

    def format_change_reason(self, *, old: Classification | None, new: Classification, basis: str) -> str:
        return self.change_reason_template.format(
            old=old.value if old is not None else "unset",
            new=new.value,
            basis=basis,
        )


class ClassificationConfigError(ValueError):
    """Raised when classification policy payloads are invalid."""


def default_policy() -> ClassificationPolicy:
    return _build_policy(
        version="0.1.0",
        policy_id="organising_universe.classification.default",
        revision="builtin",
        default_classification=Classification.POTENTIAL,
        primary_contractor_roles=DEFAULT_PRIMARY_CONTRACTOR_ROLES,
        change_reason_template=DEFAULT_CHANGE_REASON_TEMPLATE,
        audit_write=AuditWritePolicy(max_attempts=3, backoff_seconds=0.05),
        router_max_workers=4,
    )


def load_classification_policy(path: Path) -> ClassificationPolicy:
    payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ClassificationConfigError("classification policy must be a mapping")

    version = str(payload.get("version") or "").strip()
    policy_id = str(payload.get("policy_id") or "").strip()
    revision = str(payload.get("revision") or "").strip()
    if not version or not policy_id or not revision:
        raise ClassificationConfigError(
            "classification policy requires version, policy_id, revision"
        )

    section = payload.get("classification")
    if not isinstance(section, dict):
        raise ClassificationConfigError("classification must be a mapping")

    try:
        default_classification = ensure_classification(
            section.get("default_classification") or Classification.POTENTIAL.value
        )
    except ClassificationTaxonomyError as exc:
        raise ClassificationConfigError(str(exc)) from exc

    roles_raw = section.get("primary_contractor_roles", list(DEFAULT_PRIMARY_CONTRACTOR_ROLES))
    primary_contractor_roles = tuple(
        sorted({item.lower() for item in _to_non_empty_list(roles_raw, "primary_contractor_roles")})
    )

    template = str(section.get("change_reason_template") or DEFAULT_CHANGE_REASON_TEMPLATE)
    _check_template(template)

    audit_section = section.get("audit_write") or {}
    if not isinstance(audit_section, dict):
        raise ClassificationConfigError("audit_write must be a mapping")
    max_attempts = _positive_int(audit_section.get("max_attempts", 3), "audit_write.max_attempts")
    backoff_seconds = _non_negative_float(audit_section.get("backoff_seconds", 0.05), "audit_write.backoff_seconds")

    router_section = section.get("router") or {}
    if not isinstance(router_section, dict):
        raise ClassificationConfigError("router must be a mapping")
    router_max_workers = _positive_int(router_section.get("max_workers", 4), "router.max_workers")

    return _build_policy(
        version=version,
        policy_id=policy_id,
        revision=revision,
        default_classification=default_classification,
        primary_contractor_roles=primary_contractor_roles,
        change_reason_template=template,
        audit_write=AuditWritePolicy(max_attempts=max_attempts, backoff_seconds=backoff_seconds),
        router_max_workers=router_max_workers,
    )


def _build_policy(
    *,
    version: str,
    policy_id: str,
    revision: str,
    default_classification: Classification,
    primary_contractor_roles: tuple[str, ...],
    change_reason_template: str,
    audit_write: AuditWritePolicy,
    router_max_workers: int,
) -> ClassificationPolicy:
    digest_payload = {
        "version": version,
        "policy_id": policy_id,
        "revision": revision,
        "default_classification": default_classification.value,
        "primary_contractor_roles": list(primary_contractor_roles),
        "change_reason_template": change_reason_template,
        "audit_write": {
            "max_attempts": audit_write.max_attempts,
            "backoff_seconds": audit_write.backoff_seconds,
        },
        "router": {"max_workers": router_max_workers},
    }
    canonical = json.dumps(
        digest_payload,
        sort_keys=True,
        ensure_ascii=True,
        separators=(",", ":"),
    )
    return ClassificationPolicy(
        version=version,
        policy_id=policy_id,
        revision=revision,
        default_classification=default_classification,
        primary_contractor_roles=primary_contractor_roles,
        change_reason_template=change_reason_template,
        audit_write=audit_write,
        router_max_workers=router_max_workers,
        content_digest=hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
    )


def _check_template(template: str) -> None:
    try:
        template.format(old="potential", new="active", basis="rule=tier_1")
    except (KeyError, IndexError, ValueError, AttributeError) as exc:
        raise ClassificationConfigError(
            "change_reason_template may only use {old}, {new} and {basis}"
        ) from exc


def _to_non_empty_list(value: Any, field_name: str) -> list[str]:
    if not isinstance(value, list) or not value:
        raise ClassificationConfigError(f"{field_name} must be a non-empty list")
    normalized: list[str] = []
    for index, item in enumerate(value):
        text = str(item or "").strip()
        if not text:
            raise ClassificationConfigError(f"{field_name}[{index}] must be non-empty")
        normalized.append(text)
    return normalized


def _positive_int(value: Any, field_name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ClassificationConfigError(f"{field_name} must be an integer") from exc
    if number < 1:
        raise ClassificationConfigError(f"{field_name} must be >= 1")
    return number


def _non_negative_float(value: Any, field_name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ClassificationConfigError(f"{field_name} must be a number") from exc
    if number < 0:
        raise ClassificationConfigError(f"{field_name} must be >= 0")
    return number
