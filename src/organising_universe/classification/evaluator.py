"""Tier/EBA/patch rule table for the organising universe classification."""

from __future__ import annotations

from dataclasses import dataclass

from .taxonomy import Classification, Tier


RULE_TIER_1 = "tier_1"
RULE_EBA_AND_PATCH = "tier_2_3_eba_and_patch"
RULE_PATCH_WITHOUT_EBA = "tier_2_3_patch_without_eba"
RULE_TIER_3_UNSUPPORTED = "tier_3_no_eba_no_patch"
RULE_DEFAULT = "default"

_TIERS_2_3 = frozenset({Tier.TIER_2, Tier.TIER_3})


@dataclass(frozen=True)
class RuleMatch:
    classification: Classification
    rule_id: str
    tier: Tier
    has_eba_primary_contractor: bool
    has_patch_assignment: bool

    def basis(self) -> str:
        return (
            f"rule={self.rule_id}, tier={self.tier.value}, "
            f"eba_primary_contractor={_yes_no(self.has_eba_primary_contractor)}, "
            f"patch={_yes_no(self.has_patch_assignment)}"
        )


def evaluate_with_basis(
    tier: Tier,
    has_certified_eba_primary_contractor: bool,
    has_spatial_patch_assignment: bool,
) -> RuleMatch:
    """Evaluate the rule table in order and report which rule fired.

    Callers resolve an unknown tier before getting here; ``tier`` is always set.
    """
    has_eba = bool(has_certified_eba_primary_contractor)
    has_patch = bool(has_spatial_patch_assignment)
    if tier == Tier.TIER_1:
        classification, rule_id = Classification.ACTIVE, RULE_TIER_1
    elif tier in _TIERS_2_3 and has_eba and has_patch:
        classification, rule_id = Classification.ACTIVE, RULE_EBA_AND_PATCH
    elif tier in _TIERS_2_3 and has_patch and not has_eba:
        classification, rule_id = Classification.POTENTIAL, RULE_PATCH_WITHOUT_EBA
    elif tier == Tier.TIER_3 and not has_eba and not has_patch:
        classification, rule_id = Classification.EXCLUDED, RULE_TIER_3_UNSUPPORTED
    else:
        # Tier 2 without a patch lands here regardless of EBA status.
        classification, rule_id = Classification.POTENTIAL, RULE_DEFAULT
    return RuleMatch(
        classification=classification,
        rule_id=rule_id,
        tier=tier,
        has_eba_primary_contractor=has_eba,
        has_patch_assignment=has_patch,
    )


def evaluate(
    tier: Tier,
    has_certified_eba_primary_contractor: bool,
    has_spatial_patch_assignment: bool,
) -> Classification:
    return evaluate_with_basis(
        tier,
        has_certified_eba_primary_contractor,
        has_spatial_patch_assignment,
    ).classification


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"
