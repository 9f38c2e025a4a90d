from __future__ import annotations

from pathlib import Path

import pytest

from organising_universe.classification import (
    ClassificationEventError,
    ClassificationService,
    ClassificationStore,
    ContractorAssignmentChanged,
    PatchAssignmentChanged,
    ProjectCreated,
    ProjectNotFoundError,
    ProjectTierChanged,
    StaticSignalProvider,
    event_from_envelope,
)
from organising_universe.classification.taxonomy import Classification, RuleApplied, Tier


SITES = {"site-001": "p-001", "site-002": "p-002"}


def _service(tmp_path: Path, *, signals: StaticSignalProvider | None = None) -> ClassificationService:
    store = ClassificationStore(tmp_path / "ou_phase4.sqlite")
    return ClassificationService(store=store, signals=signals, site_resolver=SITES.get)


def test_project_created_with_known_tier_is_classified_in_the_same_write(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    signals.set_signals("p-001", tier="tier_1")
    service = _service(tmp_path, signals=signals)

    outcome = service.route(ProjectCreated(project_id="p-001", tier=Tier.TIER_1))
    assert outcome.routed is True
    assert outcome.detail == "created_and_classified"

    project = service.get_project("p-001")
    assert project.classification is Classification.ACTIVE
    assert project.classification_is_auto is True
    history = service.history("p-001")
    assert len(history) == 1
    assert history[0].old_value is None
    assert history[0].new_value is Classification.ACTIVE
    assert history[0].rule_applied is RuleApplied.TIER_EBA_PATCH_RULES


def test_project_created_with_explicit_classification_keeps_it(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    signals.set_signals("p-001", tier="tier_1")
    service = _service(tmp_path, signals=signals)

    outcome = service.route(
        ProjectCreated(project_id="p-001", tier=Tier.TIER_1, classification=Classification.EXCLUDED)
    )
    assert outcome.detail == "created"
    project = service.get_project("p-001")
    assert project.classification is Classification.EXCLUDED
    assert project.classification_is_auto is False
    assert service.history("p-001") == []


def test_project_created_without_tier_gets_default_and_no_audit(tmp_path: Path) -> None:
    service = _service(tmp_path, signals=StaticSignalProvider())
    service.route(ProjectCreated(project_id="p-001"))
    project = service.get_project("p-001")
    assert project.tier is None
    assert project.classification is Classification.POTENTIAL
    assert service.history("p-001") == []


def test_replayed_creation_reconciles_instead_of_duplicating(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    signals.set_signals("p-001", tier="tier_1")
    service = _service(tmp_path, signals=signals)
    service.route(ProjectCreated(project_id="p-001", tier=Tier.TIER_1))
    replay = service.route(ProjectCreated(project_id="p-001", tier=Tier.TIER_1))
    assert replay.detail == "reconciled"
    assert replay.result is not None and replay.result.updated is False
    assert len(service.history("p-001")) == 1


def test_patch_closure_drops_tier_2_project_to_potential(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    signals.set_signals("p-001", tier="tier_2", has_eba_primary_contractor=True, has_patch_assignment=True)
    service = _service(tmp_path, signals=signals)
    service.route(ProjectCreated(project_id="p-001", tier=Tier.TIER_2))
    assert service.get_project("p-001").classification is Classification.ACTIVE

    signals.update("p-001", has_patch_assignment=False)
    outcome = service.route(PatchAssignmentChanged(job_site_id="site-001", change_kind="closed"))
    assert outcome.project_id == "p-001"
    assert outcome.result is not None and outcome.result.updated is True
    assert service.get_project("p-001").classification is Classification.POTENTIAL

    history = service.history("p-001")
    assert len(history) == 2
    assert history[1].old_value is Classification.ACTIVE
    assert history[1].new_value is Classification.POTENTIAL
    assert "rule=default" in history[1].reason


def test_unresolved_job_site_is_dropped(tmp_path: Path) -> None:
    service = _service(tmp_path, signals=StaticSignalProvider())
    outcome = service.route(PatchAssignmentChanged(job_site_id="site-unknown", change_kind="opened"))
    assert outcome.routed is False
    assert outcome.detail == "job_site_unresolved"


def test_trade_only_contractor_assignments_are_ignored(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    service = _service(tmp_path, signals=signals)
    service.route(ProjectCreated(project_id="p-001"))
    signals.set_signals("p-001", tier="tier_1")

    ignored = service.route(
        ContractorAssignmentChanged(project_id="p-001", contractor_role="electrician", change_kind="created")
    )
    assert ignored.routed is False
    assert service.get_project("p-001").classification is Classification.POTENTIAL

    routed = service.route(
        ContractorAssignmentChanged(project_id="p-001", contractor_role="builder", change_kind="created")
    )
    assert routed.routed is True
    assert service.get_project("p-001").classification is Classification.ACTIVE


def test_duplicate_listeners_do_not_double_log(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    service = _service(tmp_path, signals=signals)
    service.route(ProjectCreated(project_id="p-001"))
    signals.set_signals("p-001", tier="tier_3")
    event = ContractorAssignmentChanged(project_id="p-001", contractor_role="head_contractor", change_kind="deleted")
    first = service.route(event)
    second = service.route(event)
    assert first.detail == "updated"
    assert second.detail == "no_change"
    assert len(service.history("p-001")) == 1


def test_tier_change_with_same_value_is_ignored(tmp_path: Path) -> None:
    service = _service(tmp_path, signals=StaticSignalProvider())
    outcome = service.route(ProjectTierChanged(project_id="p-001", old_tier=Tier.TIER_2, new_tier=Tier.TIER_2))
    assert outcome.routed is False
    assert outcome.detail == "tier_unchanged"


def test_store_backed_signals_follow_tier_events_and_published_facts(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.route(ProjectCreated(project_id="p-001"))

    outcome = service.route(ProjectTierChanged(project_id="p-001", old_tier=None, new_tier=Tier.TIER_3))
    assert outcome.result is not None
    assert service.get_project("p-001").tier is Tier.TIER_3
    assert service.get_project("p-001").classification is Classification.EXCLUDED

    service.store.record_signal_facts("p-001", has_eba_primary_contractor=True, has_patch_assignment=True)
    service.route(PatchAssignmentChanged(job_site_id="site-001", change_kind="opened"))
    assert service.get_project("p-001").classification is Classification.ACTIVE
    assert len(service.history("p-001")) == 2


def test_worker_pool_dispatch_keeps_one_write_per_project(tmp_path: Path) -> None:
    signals = StaticSignalProvider()
    service = _service(tmp_path, signals=signals)
    project_ids = [f"p-{index:03d}" for index in range(5)]
    for project_id in project_ids:
        service.route(ProjectCreated(project_id=project_id))
        signals.set_signals(project_id, tier="tier_1")

    with service:
        futures = [
            service.submit(
                ContractorAssignmentChanged(project_id=project_id, contractor_role="builder", change_kind="updated")
            )
            for project_id in project_ids
            for _ in range(4)
        ]
        outcomes = [future.result() for future in futures]

    assert sum(1 for item in outcomes if item.result is not None and item.result.updated) == len(project_ids)
    for project_id in project_ids:
        assert len(service.history(project_id)) == 1
    metrics = service.metrics.snapshot()["metrics"]
    assert metrics["reconcile_updated"] == len(project_ids)
    assert metrics["reconcile_no_change"] == 3 * len(project_ids)


def test_event_envelopes_parse_into_typed_events() -> None:
    created = event_from_envelope({"event_type": "project_created", "project_id": "p-1", "tier": "tier_2"})
    assert created == ProjectCreated(project_id="p-1", tier=Tier.TIER_2)

    tier = event_from_envelope(
        {"event_type": "PROJECT_TIER_CHANGED", "project_id": "p-1", "old_tier": None, "new_tier": "tier_1"}
    )
    assert tier == ProjectTierChanged(project_id="p-1", old_tier=None, new_tier=Tier.TIER_1)

    patch = event_from_envelope({"event_type": "patch_assignment_changed", "job_site_id": "s-1", "change_kind": "Closed"})
    assert patch.change_kind == "closed" and patch.project_id is None

    contractor = event_from_envelope(
        {
            "event_type": "contractor_assignment_changed",
            "project_id": "p-1",
            "contractor_role": "Builder",
            "change_kind": "deleted",
        }
    )
    assert contractor.contractor_role == "builder"
    assert contractor.as_dict()["event_type"] == "contractor_assignment_changed"


@pytest.mark.parametrize(
    "payload",
    [
        {"event_type": "site_renamed", "project_id": "p-1"},
        {"event_type": "project_created"},
        {"event_type": "project_created", "project_id": "p-1", "tier": "tier_9"},
        {"event_type": "patch_assignment_changed", "job_site_id": "s-1", "change_kind": "moved"},
        {"event_type": "contractor_assignment_changed", "project_id": "p-1", "change_kind": "created"},
    ],
)
def test_event_envelopes_reject_malformed_payloads(payload: dict[str, object]) -> None:
    with pytest.raises(ClassificationEventError):
        event_from_envelope(payload)


def test_tier_event_for_unknown_project_is_not_found(tmp_path: Path) -> None:
    service = _service(tmp_path)
    with pytest.raises(ProjectNotFoundError) as exc_info:
        service.route(ProjectTierChanged(project_id="p-404", old_tier=None, new_tier=Tier.TIER_1))
    assert exc_info.value.code == "PROJECT_NOT_FOUND"
    assert service.store.list_projects() == []
