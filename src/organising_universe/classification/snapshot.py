"""Single-generation classification snapshot, rollback and the destructive automation reset."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from .contracts import SnapshotRow, batch_status, unit_error
from .errors import PreconditionError, ProjectNotFoundError, error_detail, reason_code
from .reconciler import ClassificationReconciler
from .storage import ClassificationUnit, deterministic_snapshot_id, utc_now
from .taxonomy import RuleApplied


logger = logging.getLogger("organising_universe.classification.snapshot")

ROLLBACK_REASON_TEMPLATE = "Rolled back to snapshot {snapshot_id} value {value}"


@dataclass(frozen=True)
class SnapshotReceipt:
    snapshot_id: str
    captured_at_utc: str
    project_count: int
    replaced_snapshot_id: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "captured_at_utc": self.captured_at_utc,
            "project_count": self.project_count,
            "replaced_snapshot_id": self.replaced_snapshot_id,
        }


@dataclass
class RollbackReport:
    snapshot_id: str
    snapshot_total: int
    restored_count: int = 0
    unchanged_count: int = 0
    restored_project_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def status(self) -> str:
        return batch_status(error_count=len(self.errors), cancelled=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "status": self.status,
            "snapshot_total": self.snapshot_total,
            "restored_count": self.restored_count,
            "unchanged_count": self.unchanged_count,
            "restored_project_ids": list(self.restored_project_ids),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class ResetReceipt:
    projects_reset: int
    records_purged: int
    applied_by: str | None
    applied_at_utc: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "projects_reset": self.projects_reset,
            "records_purged": self.records_purged,
            "applied_by": self.applied_by,
            "applied_at_utc": self.applied_at_utc,
        }


class SnapshotManager:
    def __init__(self, *, reconciler: ClassificationReconciler) -> None:
        self.reconciler = reconciler
        self.store = reconciler.store
        self.metrics = reconciler.metrics

    def snapshot(self) -> SnapshotReceipt:
        """Capture every project's classification, replacing any previous snapshot."""
        captured_at_utc = utc_now()
        with self.store.write_unit() as unit:
            previous = unit.current_snapshot_id()
            project_count = len(unit.list_project_ids())
            snapshot_id = deterministic_snapshot_id(
                captured_at_utc=captured_at_utc,
                project_count=project_count,
            )
            unit.replace_snapshot(snapshot_id=snapshot_id, captured_at_utc=captured_at_utc)
        if previous is not None:
            logger.warning("Classification snapshot %s discarded, replaced by %s", previous, snapshot_id)
        logger.info("Classification snapshot captured snapshot_id=%s projects=%s", snapshot_id, project_count)
        return SnapshotReceipt(
            snapshot_id=snapshot_id,
            captured_at_utc=captured_at_utc,
            project_count=project_count,
            replaced_snapshot_id=previous,
        )

    def rollback(self, *, confirmed: bool, actor: str | None = None) -> RollbackReport:
        """Restore snapshot values and freeze each restored row as manual.

        Each project restores in its own unit; a failure on one is reported and
        does not undo the others.
        """
        if confirmed is not True:
            raise PreconditionError("ROLLBACK_NOT_CONFIRMED", "rollback requires confirmed=True")
        rows = self.store.load_snapshot()
        if not rows:
            raise PreconditionError("NO_SNAPSHOT", "no classification snapshot has been captured")

        report = RollbackReport(snapshot_id=rows[0].snapshot_id, snapshot_total=len(rows))
        logger.warning(
            "Classification rollback started snapshot_id=%s rows=%s actor=%s",
            report.snapshot_id,
            report.snapshot_total,
            actor,
        )
        for row in rows:
            try:
                restored = self.reconciler.run_exclusive(
                    row.project_id,
                    lambda unit, row=row: self._restore_in_unit(unit, row, actor=actor),
                )
            except Exception as exc:
                logger.exception("Rollback unit failed project_id=%s", row.project_id)
                report.errors.append(unit_error(row.project_id, reason_code(exc), error_detail(exc)))
                continue
            if restored:
                report.restored_count += 1
                report.restored_project_ids.append(row.project_id)
            else:
                report.unchanged_count += 1

        if self.metrics is not None:
            self.metrics.record_rollback(restored=report.restored_count)
        logger.warning(
            "Classification rollback finished snapshot_id=%s restored=%s unchanged=%s errors=%s",
            report.snapshot_id,
            report.restored_count,
            report.unchanged_count,
            len(report.errors),
        )
        return report

    def clear_all_automation(self, *, confirmed: bool, actor: str | None = None) -> ResetReceipt:
        """Reset every ownership flag and purge the change log. Irreversible."""
        if confirmed is not True:
            raise PreconditionError("RESET_NOT_CONFIRMED", "clear_all_automation requires confirmed=True")
        now_utc = utc_now()
        with self.store.write_unit() as unit:
            projects_reset, records_purged = unit.clear_automation(now_utc=now_utc)
        logger.warning(
            "Classification automation cleared projects_reset=%s records_purged=%s actor=%s",
            projects_reset,
            records_purged,
            actor,
        )
        return ResetReceipt(
            projects_reset=projects_reset,
            records_purged=records_purged,
            applied_by=actor,
            applied_at_utc=now_utc,
        )

    def _restore_in_unit(self, unit: ClassificationUnit, row: SnapshotRow, *, actor: str | None) -> bool:
        project = unit.load_project(row.project_id, lock=True)
        if project is None:
            raise ProjectNotFoundError(row.project_id)
        if project.classification == row.classification:
            return False
        now_utc = utc_now()
        reason = ROLLBACK_REASON_TEMPLATE.format(snapshot_id=row.snapshot_id, value=row.classification.value)
        unit.save_project_state(
            project_id=row.project_id,
            classification=row.classification,
            flags=project.flags.frozen_by_rollback(reason=reason),
            now_utc=now_utc,
        )
        unit.append_change(
            project_id=row.project_id,
            old_value=project.classification,
            new_value=row.classification,
            reason=reason,
            rule_applied=RuleApplied.ROLLBACK_FUNCTION,
            applied_by=actor,
            was_manual_override=False,
            applied_at_utc=now_utc,
        )
        return True
