from __future__ import annotations

from dataclasses import replace

import pytest

from organising_universe.classification.contracts import AutomationFlags, Project
from organising_universe.classification.evaluator import (
    RULE_DEFAULT,
    RULE_EBA_AND_PATCH,
    RULE_PATCH_WITHOUT_EBA,
    RULE_TIER_1,
    RULE_TIER_3_UNSUPPORTED,
    evaluate,
    evaluate_with_basis,
)
from organising_universe.classification.guard import should_reconcile
from organising_universe.classification.taxonomy import (
    SUPPORTED_CLASSIFICATIONS,
    SUPPORTED_RULES_APPLIED,
    Classification,
    ClassificationTaxonomyError,
    RuleApplied,
    Tier,
    ensure_classification,
    ensure_rule_applied,
    ensure_tier,
    optional_tier,
)


def test_taxonomy_values_are_closed_and_stable() -> None:
    assert SUPPORTED_CLASSIFICATIONS == ("active", "potential", "excluded")
    assert SUPPORTED_RULES_APPLIED == (
        "tier_eba_patch_rules",
        "manual_override",
        "remove_manual_override",
        "rollback_function",
    )
    assert ensure_classification(" Active ") is Classification.ACTIVE
    assert ensure_tier("TIER_3") is Tier.TIER_3
    assert ensure_rule_applied("rollback_function") is RuleApplied.ROLLBACK_FUNCTION


@pytest.mark.parametrize("value", ["", None, "archived", "activ"])
def test_taxonomy_rejects_values_outside_closed_set(value: object) -> None:
    with pytest.raises(ClassificationTaxonomyError):
        ensure_classification(value)


def test_optional_tier_treats_blank_as_unknown() -> None:
    assert optional_tier(None) is None
    assert optional_tier("") is None
    assert optional_tier("tier_2") is Tier.TIER_2
    with pytest.raises(ClassificationTaxonomyError):
        optional_tier("tier_4")


@pytest.mark.parametrize(
    ("tier", "has_eba", "has_patch", "expected", "rule_id"),
    [
        (Tier.TIER_1, False, False, Classification.ACTIVE, RULE_TIER_1),
        (Tier.TIER_1, True, False, Classification.ACTIVE, RULE_TIER_1),
        (Tier.TIER_1, False, True, Classification.ACTIVE, RULE_TIER_1),
        (Tier.TIER_1, True, True, Classification.ACTIVE, RULE_TIER_1),
        (Tier.TIER_2, True, True, Classification.ACTIVE, RULE_EBA_AND_PATCH),
        (Tier.TIER_2, False, True, Classification.POTENTIAL, RULE_PATCH_WITHOUT_EBA),
        (Tier.TIER_2, True, False, Classification.POTENTIAL, RULE_DEFAULT),
        (Tier.TIER_2, False, False, Classification.POTENTIAL, RULE_DEFAULT),
        (Tier.TIER_3, True, True, Classification.ACTIVE, RULE_EBA_AND_PATCH),
        (Tier.TIER_3, False, True, Classification.POTENTIAL, RULE_PATCH_WITHOUT_EBA),
        (Tier.TIER_3, True, False, Classification.POTENTIAL, RULE_DEFAULT),
        (Tier.TIER_3, False, False, Classification.EXCLUDED, RULE_TIER_3_UNSUPPORTED),
    ],
)
def test_rule_table_covers_the_typed_domain(
    tier: Tier,
    has_eba: bool,
    has_patch: bool,
    expected: Classification,
    rule_id: str,
) -> None:
    match = evaluate_with_basis(tier, has_eba, has_patch)
    assert match.classification is expected
    assert match.rule_id == rule_id
    assert evaluate(tier, has_eba, has_patch) is expected


def test_rule_basis_text_is_human_readable() -> None:
    match = evaluate_with_basis(Tier.TIER_3, False, False)
    assert match.basis() == "rule=tier_3_no_eba_no_patch, tier=tier_3, eba_primary_contractor=no, patch=no"


def test_automation_flags_never_hold_both_owners() -> None:
    with pytest.raises(ValueError):
        AutomationFlags(is_manual=True, is_auto=True)

    pinned = AutomationFlags().pinned(reason="board decision")
    assert pinned.is_manual and not pinned.is_auto
    with pytest.raises(ValueError):
        pinned.auto_applied(at_utc="2026-01-01T00:00:00+00:00", reason="auto")

    forced = pinned.auto_applied(at_utc="2026-01-01T00:00:00+00:00", reason="auto", override_pin=True)
    assert forced.is_auto and not forced.is_manual
    assert forced.last_auto_update == "2026-01-01T00:00:00+00:00"

    unpinned = pinned.unpinned(reason="cleared")
    assert not unpinned.is_manual and not unpinned.is_auto
    assert AutomationFlags.cleared() == AutomationFlags()


def test_guard_only_blocks_pinned_projects() -> None:
    base = Project(
        project_id="p-guard",
        tier=Tier.TIER_1,
        classification=Classification.POTENTIAL,
        flags=AutomationFlags(),
    )
    assert should_reconcile(base) is True
    assert should_reconcile(replace(base, flags=AutomationFlags(is_auto=True))) is True
    assert should_reconcile(replace(base, flags=AutomationFlags(is_manual=True))) is False
