"""Event router: domain mutations to per-project reconciliation."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
from typing import Any, Callable

from .config import ClassificationPolicy
from .contracts import REASON_UPDATED, AutomationFlags, ReconcileResult
from .events import (
    ContractorAssignmentChanged,
    DomainEvent,
    PatchAssignmentChanged,
    ProjectCreated,
    ProjectTierChanged,
)
from .evaluator import evaluate_with_basis
from .observability import ClassificationRunMetrics
from .reconciler import ClassificationReconciler
from .signals import resolve_signals
from .storage import ClassificationStorageError, ClassificationUnit, utc_now
from .taxonomy import RuleApplied


logger = logging.getLogger("organising_universe.classification.router")

SiteResolver = Callable[[str], "str | None"]


@dataclass(frozen=True)
class RouteOutcome:
    event_type: str
    project_id: str | None
    routed: bool
    detail: str
    result: ReconcileResult | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "routed": self.routed,
            "detail": self.detail,
            "result": self.result.as_dict() if self.result is not None else None,
        }


class EventRouter:
    """Resolves each event to one project id and reconciles it with override-respecting semantics.

    Repeated or duplicated events are harmless: the reconciler's no-op check
    keeps a second invocation from appending another audit row.
    """

    def __init__(
        self,
        *,
        reconciler: ClassificationReconciler,
        policy: ClassificationPolicy | None = None,
        site_resolver: SiteResolver | None = None,
        record_tier: bool = False,
        max_workers: int | None = None,
        metrics: ClassificationRunMetrics | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.store = reconciler.store
        self.policy = policy or reconciler.policy
        self.site_resolver = site_resolver
        self.record_tier = record_tier
        self.metrics = metrics if metrics is not None else reconciler.metrics
        self._max_workers = max_workers or self.policy.router_max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    def route(self, event: DomainEvent) -> RouteOutcome:
        if isinstance(event, ContractorAssignmentChanged):
            outcome = self._route_contractor(event)
        elif isinstance(event, PatchAssignmentChanged):
            outcome = self._route_patch(event)
        elif isinstance(event, ProjectTierChanged):
            outcome = self._route_tier(event)
        elif isinstance(event, ProjectCreated):
            outcome = self._route_created(event)
        else:
            raise TypeError(f"unsupported domain event: {type(event).__name__}")
        if self.metrics is not None:
            self.metrics.record_event(event_type=outcome.event_type, routed=outcome.routed)
        return outcome

    def submit(self, event: DomainEvent) -> "Future[RouteOutcome]":
        return self._pool().submit(self.route, event)

    def close(self) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self) -> "EventRouter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _route_contractor(self, event: ContractorAssignmentChanged) -> RouteOutcome:
        if not self.policy.is_primary_contractor_role(event.contractor_role):
            logger.debug(
                "Contractor event ignored project_id=%s role=%s",
                event.project_id,
                event.contractor_role,
            )
            return RouteOutcome(event.event_type, event.project_id, False, "non_primary_contractor_role")
        return self._reconcile(event.event_type, event.project_id)

    def _route_patch(self, event: PatchAssignmentChanged) -> RouteOutcome:
        project_id = event.project_id
        if project_id is None and self.site_resolver is not None:
            project_id = self.site_resolver(event.job_site_id)
        if not project_id:
            logger.warning("Patch event dropped: job_site_id=%s has no owning project", event.job_site_id)
            return RouteOutcome(event.event_type, None, False, "job_site_unresolved")
        return self._reconcile(event.event_type, project_id)

    def _route_tier(self, event: ProjectTierChanged) -> RouteOutcome:
        if event.old_tier == event.new_tier:
            return RouteOutcome(event.event_type, event.project_id, False, "tier_unchanged")
        if self.record_tier:
            self.store.set_project_tier(event.project_id, event.new_tier)
        return self._reconcile(event.event_type, event.project_id)

    def _route_created(self, event: ProjectCreated) -> RouteOutcome:
        result = self.reconciler.run_exclusive(
            event.project_id,
            lambda unit: self._create_in_unit(unit, event),
        )
        if result is None:
            return RouteOutcome(event.event_type, event.project_id, True, "created")
        self.reconciler.record_result(result)
        detail = "created_and_classified" if result.change is not None and result.old_value is None else "reconciled"
        return RouteOutcome(event.event_type, event.project_id, True, detail, result)

    def _create_in_unit(self, unit: ClassificationUnit, event: ProjectCreated) -> ReconcileResult | None:
        now_utc = utc_now()
        if unit.load_project(event.project_id, lock=True) is not None:
            return self._converge_existing(unit, event.project_id)

        if event.classification is not None or event.tier is None:
            inserted = unit.insert_project(
                project_id=event.project_id,
                tier=event.tier,
                classification=event.classification or self.policy.default_classification,
                flags=AutomationFlags.cleared(),
                now_utc=now_utc,
            )
            if not inserted:
                return self._converge_existing(unit, event.project_id)
            logger.info(
                "Project created project_id=%s tier=%s classification=%s",
                event.project_id,
                event.tier.value if event.tier is not None else None,
                (event.classification or self.policy.default_classification).value,
            )
            return None

        # The row does not exist yet, so the tier comes from the event rather than the provider.
        signals = resolve_signals(self.reconciler.signals, event.project_id, tier=event.tier)
        match = evaluate_with_basis(event.tier, signals.has_eba_primary_contractor, signals.has_patch_assignment)
        reason = self.policy.format_change_reason(old=None, new=match.classification, basis=match.basis())
        inserted = unit.insert_project(
            project_id=event.project_id,
            tier=event.tier,
            classification=match.classification,
            flags=AutomationFlags.cleared().auto_applied(at_utc=now_utc, reason=reason),
            now_utc=now_utc,
        )
        if not inserted:
            return self._converge_existing(unit, event.project_id)
        change = unit.append_change(
            project_id=event.project_id,
            old_value=None,
            new_value=match.classification,
            reason=reason,
            rule_applied=RuleApplied.TIER_EBA_PATCH_RULES,
            applied_by=None,
            was_manual_override=False,
            applied_at_utc=now_utc,
        )
        logger.info(
            "Project created project_id=%s classification=%s (%s)",
            event.project_id,
            match.classification.value,
            match.rule_id,
        )
        return ReconcileResult(
            project_id=event.project_id,
            updated=True,
            reason_code=REASON_UPDATED,
            reason=reason,
            old_value=None,
            new_value=match.classification,
            change=change,
        )

    def _converge_existing(self, unit: ClassificationUnit, project_id: str) -> ReconcileResult:
        # Creation raced with another writer, or the event is a replay.
        project = unit.load_project(project_id, lock=True)
        if project is None:
            raise ClassificationStorageError(f"project row vanished during create: {project_id}")
        return self.reconciler.converge_in_unit(unit, project, actor=None, respect_override=True)

    def _reconcile(self, event_type: str, project_id: str) -> RouteOutcome:
        result = self.reconciler.reconcile_respecting_override(project_id)
        return RouteOutcome(event_type, project_id, True, result.reason_code.lower(), result)

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="ou-router",
                )
            return self._executor
