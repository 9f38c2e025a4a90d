"""Organising universe classification service: the exposed administrative surface."""

from __future__ import annotations

from concurrent.futures import Future
from pathlib import Path
import threading
from typing import Any, Iterable

from .bulk import ImpactReport, RetrospectiveApplier, RetrospectiveReport
from .config import ClassificationPolicy, default_policy
from .contracts import ClassificationChangeRecord, Project, ReconcileResult
from .errors import ProjectNotFoundError
from .events import DomainEvent
from .locks import ProjectLockRegistry
from .observability import ClassificationRunMetrics
from .overrides import ClearManualResult, ManualBulkReport, ManualOverrideService
from .query import DEFAULT_RECENT_LIMIT, ChainBreak, ClassificationAuditQuery
from .reconciler import ClassificationReconciler
from .router import EventRouter, RouteOutcome, SiteResolver
from .signals import SignalProvider, StoreSignalProvider
from .snapshot import ResetReceipt, RollbackReport, SnapshotManager, SnapshotReceipt
from .storage import ClassificationStore
from .taxonomy import Classification


class ClassificationService:
    """Wires one store, one signal provider and one policy into every engine operation."""

    def __init__(
        self,
        *,
        store: ClassificationStore,
        signals: SignalProvider | None = None,
        policy: ClassificationPolicy | None = None,
        metrics: ClassificationRunMetrics | None = None,
        site_resolver: SiteResolver | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or default_policy()
        self.metrics = metrics if metrics is not None else ClassificationRunMetrics()
        store_backed = signals is None
        self.signals: SignalProvider = signals if signals is not None else StoreSignalProvider(store)
        self.reconciler = ClassificationReconciler(
            store=store,
            signals=self.signals,
            policy=self.policy,
            metrics=self.metrics,
            locks=ProjectLockRegistry(),
        )
        self.router = EventRouter(
            reconciler=self.reconciler,
            site_resolver=site_resolver,
            record_tier=store_backed,
        )
        self.overrides = ManualOverrideService(reconciler=self.reconciler)
        self.bulk = RetrospectiveApplier(reconciler=self.reconciler)
        self.snapshots = SnapshotManager(reconciler=self.reconciler)
        self.audit = ClassificationAuditQuery(store=store)

    @classmethod
    def from_locator(
        cls,
        locator: str | Path,
        *,
        signals: SignalProvider | None = None,
        policy: ClassificationPolicy | None = None,
    ) -> "ClassificationService":
        return cls(store=ClassificationStore(locator), signals=signals, policy=policy)

    def get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def reconcile(self, project_id: str, *, actor: str | None = None) -> ReconcileResult:
        return self.reconciler.reconcile_respecting_override(project_id, actor=actor)

    def force_reconcile(self, project_id: str, *, actor: str | None = None) -> ReconcileResult:
        return self.reconciler.force_reconcile(project_id, actor=actor)

    def route(self, event: DomainEvent) -> RouteOutcome:
        return self.router.route(event)

    def submit(self, event: DomainEvent) -> "Future[RouteOutcome]":
        return self.router.submit(event)

    def trigger_retrospective_apply(
        self,
        *,
        dry_run: bool,
        actor: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RetrospectiveReport:
        return self.bulk.apply_retrospectively(dry_run=dry_run, actor=actor, cancel_event=cancel_event)

    def impact_analysis(self) -> ImpactReport:
        return self.bulk.impact_analysis()

    def set_manual(
        self,
        project_id: str,
        value: Classification | str,
        *,
        actor: str | None,
        reason: str | None = None,
    ) -> ClassificationChangeRecord:
        return self.overrides.set_manual(project_id, value, actor=actor, reason=reason)

    def clear_manual(self, project_id: str, *, actor: str | None, reason: str | None = None) -> ClearManualResult:
        return self.overrides.clear_manual(project_id, actor=actor, reason=reason)

    def set_manual_bulk(
        self,
        project_ids: Iterable[str],
        value: Classification | str,
        *,
        actor: str | None,
        reason: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ManualBulkReport:
        return self.overrides.set_manual_bulk(
            project_ids,
            value,
            actor=actor,
            reason=reason,
            cancel_event=cancel_event,
        )

    def snapshot(self) -> SnapshotReceipt:
        return self.snapshots.snapshot()

    def rollback(self, *, confirmed: bool, actor: str | None = None) -> RollbackReport:
        return self.snapshots.rollback(confirmed=confirmed, actor=actor)

    def clear_all_automation(self, *, confirmed: bool, actor: str | None = None) -> ResetReceipt:
        return self.snapshots.clear_all_automation(confirmed=confirmed, actor=actor)

    def history(self, project_id: str) -> list[ClassificationChangeRecord]:
        return self.audit.history(project_id)

    def recent_changes(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[ClassificationChangeRecord]:
        return self.audit.recent_changes(limit)

    def verify_chain(self, project_id: str) -> list[ChainBreak]:
        return self.audit.verify_chain(project_id)

    def export_metrics(self, output_path: str | Path | None = None) -> dict[str, Any]:
        return self.metrics.export(output_path=output_path)

    def close(self) -> None:
        self.router.close()

    def __enter__(self) -> "ClassificationService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
