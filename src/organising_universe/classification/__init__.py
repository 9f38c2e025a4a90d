"""Organising universe classification engine surfaces."""

from .bulk import ImpactReport, RetrospectiveApplier, RetrospectiveReport
from .config import (
    ClassificationConfigError,
    ClassificationPolicy,
    default_policy,
    load_classification_policy,
)
from .contracts import (
    AutomationFlags,
    ClassificationChangeRecord,
    Project,
    ReconcileResult,
    SnapshotRow,
)
from .errors import (
    AuditWriteFailure,
    ClassificationError,
    ClassificationValidationError,
    PartialBatchFailure,
    PreconditionError,
    ProjectNotFoundError,
    reason_code,
)
from .evaluator import RuleMatch, evaluate, evaluate_with_basis
from .events import (
    ClassificationEventError,
    ContractorAssignmentChanged,
    PatchAssignmentChanged,
    ProjectCreated,
    ProjectTierChanged,
    event_from_envelope,
)
from .guard import should_reconcile
from .observability import ClassificationObservabilityError, ClassificationRunMetrics
from .overrides import ClearManualResult, ManualBulkReport, ManualOverrideService
from .query import ClassificationAuditQuery
from .reconciler import ClassificationReconciler
from .router import EventRouter, RouteOutcome
from .service import ClassificationService
from .signals import ProjectSignals, SignalProvider, StaticSignalProvider, StoreSignalProvider
from .snapshot import RollbackReport, SnapshotManager, SnapshotReceipt
from .storage import ClassificationStorageError, ClassificationStore
from .taxonomy import (
    Classification,
    ClassificationTaxonomyError,
    RuleApplied,
    Tier,
    ensure_classification,
    ensure_tier,
)

__all__ = [
    "AuditWriteFailure",
    "AutomationFlags",
    "Classification",
    "ClassificationAuditQuery",
    "ClassificationChangeRecord",
    "ClassificationConfigError",
    "ClassificationError",
    "ClassificationEventError",
    "ClassificationObservabilityError",
    "ClassificationPolicy",
    "ClassificationReconciler",
    "ClassificationRunMetrics",
    "ClassificationService",
    "ClassificationStorageError",
    "ClassificationStore",
    "ClassificationTaxonomyError",
    "ClassificationValidationError",
    "ClearManualResult",
    "ContractorAssignmentChanged",
    "EventRouter",
    "ImpactReport",
    "ManualBulkReport",
    "ManualOverrideService",
    "PartialBatchFailure",
    "PatchAssignmentChanged",
    "PreconditionError",
    "Project",
    "ProjectCreated",
    "ProjectNotFoundError",
    "ProjectSignals",
    "ProjectTierChanged",
    "ReconcileResult",
    "RetrospectiveApplier",
    "RetrospectiveReport",
    "RollbackReport",
    "RouteOutcome",
    "RuleApplied",
    "RuleMatch",
    "SignalProvider",
    "SnapshotManager",
    "SnapshotReceipt",
    "SnapshotRow",
    "StaticSignalProvider",
    "StoreSignalProvider",
    "Tier",
    "default_policy",
    "ensure_classification",
    "ensure_tier",
    "evaluate",
    "evaluate_with_basis",
    "event_from_envelope",
    "load_classification_policy",
    "reason_code",
    "should_reconcile",
]
