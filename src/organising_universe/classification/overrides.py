"""Manual override API: pin, unpin and bulk pin through the reconciler's write path."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import threading
from typing import Any, Iterable

from .contracts import (
    ClassificationChangeRecord,
    ReconcileResult,
    batch_status,
    unit_error,
)
from .errors import (
    ClassificationValidationError,
    PartialBatchFailure,
    error_detail,
    reason_code,
)
from .reconciler import ClassificationReconciler
from .storage import ClassificationUnit, utc_now
from .taxonomy import Classification, ClassificationTaxonomyError, RuleApplied, ensure_classification


logger = logging.getLogger("organising_universe.classification.overrides")

DEFAULT_SET_REASON = "manual override"
DEFAULT_CLEAR_REASON = "manual override removed"


@dataclass(frozen=True)
class ClearManualResult:
    project_id: str
    removal: ClassificationChangeRecord | None
    reconcile: ReconcileResult

    @property
    def changes(self) -> list[ClassificationChangeRecord]:
        records = [self.removal] if self.removal is not None else []
        if self.reconcile.change is not None:
            records.append(self.reconcile.change)
        return records

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "removal": self.removal.as_dict() if self.removal is not None else None,
            "reconcile": self.reconcile.as_dict(),
            "audit_records": len(self.changes),
        }


@dataclass
class ManualBulkReport:
    value: Classification
    results: list[ClassificationChangeRecord] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def status(self) -> str:
        return batch_status(error_count=self.error_count, cancelled=self.cancelled)

    def raise_for_failures(self) -> None:
        if self.errors:
            raise PartialBatchFailure(self)

    def as_dict(self) -> dict[str, Any]:
        return {
            "value": self.value.value,
            "status": self.status,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "results": [item.as_dict() for item in self.results],
            "errors": list(self.errors),
        }


class ManualOverrideService:
    def __init__(self, *, reconciler: ClassificationReconciler) -> None:
        self.reconciler = reconciler

    def set_manual(
        self,
        project_id: str,
        value: Classification | str,
        *,
        actor: str | None,
        reason: str | None = None,
    ) -> ClassificationChangeRecord:
        """Pin ``project_id`` to ``value``. Always audited, even when the value does not move."""
        classification = _validated(value)
        text = str(reason or "").strip() or DEFAULT_SET_REASON
        change = self.reconciler.run_exclusive(
            project_id,
            lambda unit: self._pin_in_unit(unit, project_id, classification, actor=actor, reason=text),
        )
        logger.info(
            "Classification pinned project_id=%s %s -> %s actor=%s",
            project_id,
            change.old_value.value if change.old_value is not None else None,
            change.new_value.value,
            actor,
        )
        if self.reconciler.metrics is not None:
            self.reconciler.metrics.record_manual(project_id=project_id, cleared=False)
        return change

    def clear_manual(
        self,
        project_id: str,
        *,
        actor: str | None,
        reason: str | None = None,
    ) -> ClearManualResult:
        """Unpin and converge to the rule value in the same unit."""
        text = str(reason or "").strip() or DEFAULT_CLEAR_REASON
        result = self.reconciler.run_exclusive(
            project_id,
            lambda unit: self._unpin_in_unit(unit, project_id, actor=actor, reason=text),
        )
        logger.info(
            "Classification unpinned project_id=%s reconcile=%s actor=%s",
            project_id,
            result.reconcile.reason_code,
            actor,
        )
        self.reconciler.record_result(result.reconcile)
        if self.reconciler.metrics is not None:
            self.reconciler.metrics.record_manual(project_id=project_id, cleared=True)
        return result

    def set_manual_bulk(
        self,
        project_ids: Iterable[str],
        value: Classification | str,
        *,
        actor: str | None,
        reason: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ManualBulkReport:
        classification = _validated(value)
        report = ManualBulkReport(value=classification)
        for project_id in project_ids:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.warning("Manual bulk set cancelled after %s units", report.success_count + report.error_count)
                break
            try:
                report.results.append(self.set_manual(project_id, classification, actor=actor, reason=reason))
            except Exception as exc:
                logger.exception("Manual bulk set failed project_id=%s", project_id)
                code = reason_code(exc)
                report.errors.append(unit_error(project_id, code, error_detail(exc)))
                if self.reconciler.metrics is not None:
                    self.reconciler.metrics.record_bulk_error(project_id=project_id, reason_code=code)
        return report

    def _pin_in_unit(
        self,
        unit: ClassificationUnit,
        project_id: str,
        classification: Classification,
        *,
        actor: str | None,
        reason: str,
    ) -> ClassificationChangeRecord:
        project = self.reconciler.load_locked(unit, project_id)
        now_utc = utc_now()
        unit.save_project_state(
            project_id=project_id,
            classification=classification,
            flags=project.flags.pinned(reason=reason),
            now_utc=now_utc,
        )
        return unit.append_change(
            project_id=project_id,
            old_value=project.classification,
            new_value=classification,
            reason=reason,
            rule_applied=RuleApplied.MANUAL_OVERRIDE,
            applied_by=actor,
            was_manual_override=True,
            applied_at_utc=now_utc,
        )

    def _unpin_in_unit(
        self,
        unit: ClassificationUnit,
        project_id: str,
        *,
        actor: str | None,
        reason: str,
    ) -> ClearManualResult:
        project = self.reconciler.load_locked(unit, project_id)
        removal = None
        if project.flags.is_manual:
            now_utc = utc_now()
            flags = project.flags.unpinned(reason=reason)
            unit.save_project_state(
                project_id=project_id,
                classification=project.classification,
                flags=flags,
                now_utc=now_utc,
            )
            removal = unit.append_change(
                project_id=project_id,
                old_value=project.classification,
                new_value=project.classification,
                reason=reason,
                rule_applied=RuleApplied.REMOVE_MANUAL_OVERRIDE,
                applied_by=actor,
                was_manual_override=True,
                applied_at_utc=now_utc,
            )
            project = replace(project, flags=flags)
        reconcile = self.reconciler.converge_in_unit(unit, project, actor=actor, respect_override=False)
        return ClearManualResult(project_id=project_id, removal=removal, reconcile=reconcile)


def _validated(value: Classification | str) -> Classification:
    try:
        return ensure_classification(value)
    except ClassificationTaxonomyError as exc:
        raise ClassificationValidationError(str(exc)) from exc
