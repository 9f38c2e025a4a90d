"""Bulk operator: retrospective apply (dry-run or commit) and impact analysis.

Every project is its own transactional unit. Nothing is locked across the
batch, so a cancelled or failed run leaves the units it already committed in
place and can simply be run again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Any

from .contracts import Project, ReconcileResult, batch_status, unit_error
from .errors import PartialBatchFailure, error_detail, reason_code
from .guard import should_reconcile
from .reconciler import ClassificationReconciler
from .taxonomy import Classification


logger = logging.getLogger("organising_universe.classification.bulk")

CHANGE_TYPE_NO_CHANGE = "NO_CHANGE"
CHANGE_TYPE_WOULD_CHANGE = "WOULD_CHANGE"
CHANGE_TYPE_NEW_ASSIGNMENT = "NEW_ASSIGNMENT"
CHANGE_TYPE_NO_TIER = "NO_TIER"


@dataclass(frozen=True)
class RetrospectiveChange:
    project_id: str
    old_value: Classification
    new_value: Classification
    reason: str

    @classmethod
    def from_result(cls, result: ReconcileResult) -> "RetrospectiveChange":
        if result.old_value is None or result.new_value is None:
            raise ValueError(f"reconcile result for {result.project_id} carries no classification change")
        return cls(
            project_id=result.project_id,
            old_value=result.old_value,
            new_value=result.new_value,
            reason=result.reason,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "old": self.old_value.value,
            "new": self.new_value.value,
            "reason": self.reason,
        }


@dataclass
class RetrospectiveReport:
    dry_run: bool
    total_projects: int = 0
    total_eligible: int = 0
    total_updated: int = 0
    changes: list[RetrospectiveChange] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def status(self) -> str:
        return batch_status(error_count=len(self.errors), cancelled=self.cancelled)

    def raise_for_failures(self) -> None:
        if self.errors:
            raise PartialBatchFailure(self)

    def as_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "status": self.status,
            "total_projects": self.total_projects,
            "total_eligible": self.total_eligible,
            "total_updated": self.total_updated,
            "changes": [item.as_dict() for item in self.changes],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class ImpactRow:
    project_id: str
    tier: str | None
    current: Classification
    calculated: Classification | None
    change_type: str
    is_manual: bool
    is_auto: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "tier": self.tier,
            "current": self.current.value,
            "calculated": self.calculated.value if self.calculated is not None else None,
            "change_type": self.change_type,
            "classification_is_manual": self.is_manual,
            "classification_is_auto": self.is_auto,
        }


@dataclass
class ImpactReport:
    rows: list[ImpactRow] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "total_projects": len(self.rows),
            "need_updates": sum(
                1
                for row in self.rows
                if not row.is_manual
                and row.change_type in (CHANGE_TYPE_WOULD_CHANGE, CHANGE_TYPE_NEW_ASSIGNMENT)
            ),
            "manual_overrides": sum(1 for row in self.rows if row.is_manual),
            "auto_assigned": sum(1 for row in self.rows if row.is_auto),
            "no_tier": sum(1 for row in self.rows if row.change_type == CHANGE_TYPE_NO_TIER),
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "rows": [row.as_dict() for row in self.rows],
            "errors": list(self.errors),
        }


class RetrospectiveApplier:
    def __init__(self, *, reconciler: ClassificationReconciler) -> None:
        self.reconciler = reconciler
        self.store = reconciler.store
        self.policy = reconciler.policy
        self.metrics = reconciler.metrics

    def apply_retrospectively(
        self,
        *,
        dry_run: bool,
        actor: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RetrospectiveReport:
        report = RetrospectiveReport(dry_run=dry_run)
        projects = self.store.list_projects()
        report.total_projects = len(projects)

        eligible: list[tuple[Project, RetrospectiveChange]] = []
        for project in projects:
            if _cancelled(cancel_event):
                report.cancelled = True
                break
            try:
                change = self._eligible_change(project)
            except Exception as exc:
                self._capture(report, project.project_id, exc)
                continue
            if change is not None:
                eligible.append((project, change))
        report.total_eligible = len(eligible)

        if dry_run:
            report.changes = [change for _, change in eligible]
            logger.info(
                "Retrospective dry run projects=%s eligible=%s errors=%s",
                report.total_projects,
                report.total_eligible,
                len(report.errors),
            )
            return report

        for project, _ in eligible:
            if report.cancelled or _cancelled(cancel_event):
                report.cancelled = True
                break
            try:
                result = self.reconciler.reconcile_respecting_override(project.project_id, actor=actor)
            except Exception as exc:
                self._capture(report, project.project_id, exc)
                continue
            if result.updated:
                report.total_updated += 1
                report.changes.append(RetrospectiveChange.from_result(result))

        log = logger.warning if report.errors or report.cancelled else logger.info
        log(
            "Retrospective apply status=%s eligible=%s updated=%s errors=%s",
            report.status,
            report.total_eligible,
            report.total_updated,
            len(report.errors),
        )
        return report

    def impact_analysis(self) -> ImpactReport:
        report = ImpactReport()
        for project in self.store.list_projects():
            try:
                signals, match = self.reconciler.preview(project)
            except Exception as exc:
                logger.exception("Impact analysis failed project_id=%s", project.project_id)
                report.errors.append(unit_error(project.project_id, reason_code(exc), error_detail(exc)))
                continue
            calculated = match.classification if match is not None else None
            report.rows.append(
                ImpactRow(
                    project_id=project.project_id,
                    tier=signals.tier.value if signals.tier is not None else None,
                    current=project.classification,
                    calculated=calculated,
                    change_type=_change_type(project, calculated),
                    is_manual=project.flags.is_manual,
                    is_auto=project.flags.is_auto,
                )
            )
        return report

    def _eligible_change(self, project: Project) -> RetrospectiveChange | None:
        if not should_reconcile(project):
            return None
        _, match = self.reconciler.preview(project)
        if match is None or match.classification == project.classification:
            return None
        return RetrospectiveChange(
            project_id=project.project_id,
            old_value=project.classification,
            new_value=match.classification,
            reason=self.policy.format_change_reason(
                old=project.classification,
                new=match.classification,
                basis=match.basis(),
            ),
        )

    def _capture(self, report: RetrospectiveReport, project_id: str, exc: Exception) -> None:
        logger.exception("Retrospective unit failed project_id=%s", project_id)
        code = reason_code(exc)
        report.errors.append(unit_error(project_id, code, error_detail(exc)))
        if self.metrics is not None:
            self.metrics.record_bulk_error(project_id=project_id, reason_code=code)


def _change_type(project: Project, calculated: Classification | None) -> str:
    if calculated is None:
        return CHANGE_TYPE_NO_TIER
    if calculated == project.classification:
        return CHANGE_TYPE_NO_CHANGE
    if not project.flags.is_manual and not project.flags.is_auto:
        return CHANGE_TYPE_NEW_ASSIGNMENT
    return CHANGE_TYPE_WOULD_CHANGE


def _cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()
