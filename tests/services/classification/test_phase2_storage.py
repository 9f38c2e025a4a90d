from __future__ import annotations

from pathlib import Path

import pytest

from organising_universe.classification.contracts import AutomationFlags
from organising_universe.classification.storage import (
    ClassificationStorageError,
    ClassificationStore,
    deterministic_change_id,
    is_postgres_dsn,
    utc_now,
)
from organising_universe.classification.taxonomy import Classification, RuleApplied, Tier


def _store(tmp_path: Path) -> ClassificationStore:
    return ClassificationStore(tmp_path / "ou_phase2.sqlite")


def _seed(store: ClassificationStore, project_id: str, *, tier: Tier | None = Tier.TIER_2) -> None:
    with store.write_unit() as unit:
        assert unit.insert_project(
            project_id=project_id,
            tier=tier,
            classification=Classification.POTENTIAL,
            flags=AutomationFlags(),
            now_utc=utc_now(),
        )


def _append(unit, project_id: str, old: Classification | None, new: Classification):
    return unit.append_change(
        project_id=project_id,
        old_value=old,
        new_value=new,
        reason="test",
        rule_applied=RuleApplied.TIER_EBA_PATCH_RULES,
        applied_by="HUMAN::tester",
        was_manual_override=False,
        applied_at_utc=utc_now(),
    )


def test_store_locator_selects_backend(tmp_path: Path) -> None:
    assert is_postgres_dsn("postgresql://ou@localhost/ou")
    assert not is_postgres_dsn(str(tmp_path / "x.sqlite"))
    store = ClassificationStore(f"sqlite:///{tmp_path / 'nested' / 'ou.sqlite'}")
    assert store.backend == "sqlite"
    assert (tmp_path / "nested").is_dir()


def test_schema_init_is_idempotent_and_insert_is_unique(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    again = _store(tmp_path)
    with again.write_unit() as unit:
        inserted = unit.insert_project(
            project_id="p-001",
            tier=Tier.TIER_1,
            classification=Classification.ACTIVE,
            flags=AutomationFlags(),
            now_utc=utc_now(),
        )
    assert inserted is False
    project = again.get_project("p-001")
    assert project is not None
    assert project.tier is Tier.TIER_2
    assert project.classification is Classification.POTENTIAL


def test_change_log_sequence_is_per_project_and_ids_are_deterministic(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    _seed(store, "p-002")
    with store.write_unit() as unit:
        first = _append(unit, "p-001", Classification.POTENTIAL, Classification.ACTIVE)
        second = _append(unit, "p-001", Classification.ACTIVE, Classification.EXCLUDED)
        other = _append(unit, "p-002", None, Classification.ACTIVE)

    assert (first.change_seq, second.change_seq, other.change_seq) == (1, 2, 1)
    assert first.change_id == deterministic_change_id(project_id="p-001", change_seq=1)
    assert first.change_id != other.change_id

    history = store.list_changes(project_id="p-001")
    assert [item.change_seq for item in history] == [1, 2]
    assert history[0].old_value is Classification.POTENTIAL
    assert history[1].new_value is Classification.EXCLUDED
    assert store.list_changes(project_id="p-002")[0].old_value is None

    newest = store.list_changes(limit=1, newest_first=True)
    assert len(newest) == 1


def test_write_unit_rolls_back_every_write_on_failure(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    with pytest.raises(RuntimeError, match="boom"):
        with store.write_unit() as unit:
            unit.save_project_state(
                project_id="p-001",
                classification=Classification.ACTIVE,
                flags=AutomationFlags(is_auto=True, last_auto_update=utc_now(), change_reason="x"),
                now_utc=utc_now(),
            )
            _append(unit, "p-001", Classification.POTENTIAL, Classification.ACTIVE)
            raise RuntimeError("boom")

    project = store.get_project("p-001")
    assert project is not None
    assert project.classification is Classification.POTENTIAL
    assert project.flags == AutomationFlags()
    assert store.list_changes(project_id="p-001") == []


def test_read_unit_refuses_writes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    with store.read_unit() as unit:
        with pytest.raises(ClassificationStorageError):
            unit.set_tier(project_id="p-001", tier=Tier.TIER_1, now_utc=utc_now())


def test_save_project_state_requires_existing_row(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ClassificationStorageError):
        with store.write_unit() as unit:
            unit.save_project_state(
                project_id="missing",
                classification=Classification.ACTIVE,
                flags=AutomationFlags(),
                now_utc=utc_now(),
            )


def test_snapshot_table_holds_a_single_generation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    _seed(store, "p-002")
    with store.write_unit() as unit:
        assert unit.current_snapshot_id() is None
        assert unit.replace_snapshot(snapshot_id="snap-a", captured_at_utc=utc_now()) == 2
    _seed(store, "p-003")
    with store.write_unit() as unit:
        assert unit.replace_snapshot(snapshot_id="snap-b", captured_at_utc=utc_now()) == 3
        assert unit.current_snapshot_id() == "snap-b"
    rows = store.load_snapshot()
    assert [row.project_id for row in rows] == ["p-001", "p-002", "p-003"]
    assert {row.snapshot_id for row in rows} == {"snap-b"}


def test_signal_facts_merge_partial_updates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    assert store.get_signal_facts("p-001") is None
    store.record_signal_facts("p-001", has_eba_primary_contractor=True)
    store.record_signal_facts("p-001", has_patch_assignment=True)
    facts = store.get_signal_facts("p-001")
    assert facts is not None
    assert facts["has_eba_primary_contractor"] is True
    assert facts["has_patch_assignment"] is True

    assert store.set_project_tier("p-001", Tier.TIER_3) is Tier.TIER_2
    assert store.get_project("p-001").tier is Tier.TIER_3
    with pytest.raises(ClassificationStorageError):
        store.set_project_tier("missing", Tier.TIER_1)


def test_clear_automation_resets_flags_and_purges_log(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "p-001")
    with store.write_unit() as unit:
        unit.save_project_state(
            project_id="p-001",
            classification=Classification.EXCLUDED,
            flags=AutomationFlags(is_manual=True, change_reason="pinned"),
            now_utc=utc_now(),
        )
        _append(unit, "p-001", Classification.POTENTIAL, Classification.EXCLUDED)
    with store.write_unit() as unit:
        assert unit.clear_automation(now_utc=utc_now()) == (1, 1)
        assert unit.count_changes() == 0
    project = store.get_project("p-001")
    assert project.flags == AutomationFlags()
    assert project.classification is Classification.EXCLUDED
