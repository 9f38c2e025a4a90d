"""Classification reconciler: guard, evaluate, compare, persist and audit as one unit."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .config import ClassificationPolicy, default_policy
from .contracts import (
    REASON_MANUAL_OVERRIDE,
    REASON_NO_CHANGE,
    REASON_NO_TIER,
    REASON_UPDATED,
    Project,
    ReconcileResult,
    skipped_result,
)
from .errors import AuditWriteFailure, ProjectNotFoundError
from .evaluator import RuleMatch, evaluate_with_basis
from .guard import should_reconcile
from .locks import ProjectLockRegistry
from .observability import ClassificationRunMetrics
from .signals import ProjectSignals, SignalProvider, resolve_signals
from .storage import TRANSIENT_STORE_ERRORS, ClassificationStore, ClassificationUnit, utc_now
from .taxonomy import RuleApplied


logger = logging.getLogger("organising_universe.classification.reconciler")

T = TypeVar("T")


class ClassificationReconciler:
    def __init__(
        self,
        *,
        store: ClassificationStore,
        signals: SignalProvider,
        policy: ClassificationPolicy | None = None,
        metrics: ClassificationRunMetrics | None = None,
        locks: ProjectLockRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.signals = signals
        self.policy = policy or default_policy()
        self.metrics = metrics
        self.locks = locks or ProjectLockRegistry()
        self._sleep = sleep

    def reconcile_respecting_override(self, project_id: str, *, actor: str | None = None) -> ReconcileResult:
        result = self.run_exclusive(
            project_id,
            lambda unit: self.converge_in_unit(
                unit,
                self.load_locked(unit, project_id),
                actor=actor,
                respect_override=True,
            ),
        )
        self.record_result(result)
        return result

    def force_reconcile(self, project_id: str, *, actor: str | None = None) -> ReconcileResult:
        """Reconcile without consulting the guard; a pinned project is handed back to automation."""
        result = self.run_exclusive(
            project_id,
            lambda unit: self.converge_in_unit(
                unit,
                self.load_locked(unit, project_id),
                actor=actor,
                respect_override=False,
            ),
        )
        self.record_result(result)
        return result

    def run_exclusive(self, project_id: str, func: Callable[[ClassificationUnit], T]) -> T:
        """Run ``func`` in one write unit while holding the project's exclusivity.

        Transient store failures roll the whole unit back and are retried; the
        classification write and its audit row therefore commit together or not at all.
        """
        attempts = self.policy.audit_write.max_attempts
        with self.locks.hold(project_id):
            attempt = 0
            while True:
                attempt += 1
                try:
                    with self.store.write_unit() as unit:
                        return func(unit)
                except TRANSIENT_STORE_ERRORS as exc:
                    if attempt >= attempts:
                        logger.critical(
                            "Classification unit abandoned after %s attempts project_id=%s error=%s",
                            attempt,
                            project_id,
                            str(exc)[:256],
                        )
                        raise AuditWriteFailure(project_id, str(exc)[:256]) from exc
                    logger.warning(
                        "Classification unit retry project_id=%s attempt=%s error=%s",
                        project_id,
                        attempt,
                        str(exc)[:256],
                    )
                    self._sleep(self.policy.audit_write.backoff_seconds * attempt)

    def converge_in_unit(
        self,
        unit: ClassificationUnit,
        project: Project,
        *,
        actor: str | None,
        respect_override: bool,
    ) -> ReconcileResult:
        signals = resolve_signals(self.signals, project.project_id)
        now_utc = utc_now()
        if signals.tier != project.tier:
            unit.set_tier(project_id=project.project_id, tier=signals.tier, now_utc=now_utc)
        if signals.tier is None:
            return skipped_result(project.project_id, REASON_NO_TIER, current=project.classification)
        if respect_override and not should_reconcile(project):
            return skipped_result(project.project_id, REASON_MANUAL_OVERRIDE, current=project.classification)

        match = evaluate_with_basis(
            signals.tier,
            signals.has_eba_primary_contractor,
            signals.has_patch_assignment,
        )
        if match.classification == project.classification:
            logger.debug(
                "Classification unchanged project_id=%s value=%s",
                project.project_id,
                project.classification.value,
            )
            return skipped_result(project.project_id, REASON_NO_CHANGE, current=project.classification)

        reason = self.policy.format_change_reason(
            old=project.classification,
            new=match.classification,
            basis=match.basis(),
        )
        flags = project.flags.auto_applied(at_utc=now_utc, reason=reason, override_pin=not respect_override)
        unit.save_project_state(
            project_id=project.project_id,
            classification=match.classification,
            flags=flags,
            now_utc=now_utc,
        )
        change = unit.append_change(
            project_id=project.project_id,
            old_value=project.classification,
            new_value=match.classification,
            reason=reason,
            rule_applied=RuleApplied.TIER_EBA_PATCH_RULES,
            applied_by=actor,
            was_manual_override=False,
            applied_at_utc=now_utc,
        )
        logger.info(
            "Classification updated project_id=%s %s -> %s (%s)",
            project.project_id,
            project.classification.value,
            match.classification.value,
            match.rule_id,
        )
        return ReconcileResult(
            project_id=project.project_id,
            updated=True,
            reason_code=REASON_UPDATED,
            reason=reason,
            old_value=project.classification,
            new_value=match.classification,
            change=change,
        )

    def candidate(self, signals: ProjectSignals) -> RuleMatch | None:
        if signals.tier is None:
            return None
        return evaluate_with_basis(
            signals.tier,
            signals.has_eba_primary_contractor,
            signals.has_patch_assignment,
        )

    def preview(self, project: Project) -> tuple[ProjectSignals, RuleMatch | None]:
        """Read-only view of what reconciliation would compute for ``project``."""
        signals = resolve_signals(self.signals, project.project_id)
        return signals, self.candidate(signals)

    def load_locked(self, unit: ClassificationUnit, project_id: str) -> Project:
        project = unit.load_project(project_id, lock=True)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def record_result(self, result: ReconcileResult) -> None:
        if self.metrics is not None:
            self.metrics.record_reconcile(result)
