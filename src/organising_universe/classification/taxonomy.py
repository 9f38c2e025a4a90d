"""Organising universe classification taxonomy guards."""

from __future__ import annotations

from enum import Enum
from typing import Any


class Classification(str, Enum):
    ACTIVE = "active"
    POTENTIAL = "potential"
    EXCLUDED = "excluded"


class Tier(str, Enum):
    TIER_1 = "tier_1"
    TIER_2 = "tier_2"
    TIER_3 = "tier_3"


class RuleApplied(str, Enum):
    TIER_EBA_PATCH_RULES = "tier_eba_patch_rules"
    MANUAL_OVERRIDE = "manual_override"
    REMOVE_MANUAL_OVERRIDE = "remove_manual_override"
    ROLLBACK_FUNCTION = "rollback_function"


SUPPORTED_CLASSIFICATIONS: tuple[str, ...] = tuple(item.value for item in Classification)
SUPPORTED_TIERS: tuple[str, ...] = tuple(item.value for item in Tier)
SUPPORTED_RULES_APPLIED: tuple[str, ...] = tuple(item.value for item in RuleApplied)

MANUAL_RULES: frozenset[RuleApplied] = frozenset(
    {RuleApplied.MANUAL_OVERRIDE, RuleApplied.REMOVE_MANUAL_OVERRIDE}
)


class ClassificationTaxonomyError(ValueError):
    """Raised when a value falls outside the closed classification taxonomy."""


def ensure_classification(value: Any) -> Classification:
    if isinstance(value, Classification):
        return value
    normalized = str(value or "").strip().lower()
    if normalized not in SUPPORTED_CLASSIFICATIONS:
        raise ClassificationTaxonomyError(
            "classification not allowed: "
            f"{value!r}; allowed={list(SUPPORTED_CLASSIFICATIONS)!r}"
        )
    return Classification(normalized)


def ensure_tier(value: Any) -> Tier:
    if isinstance(value, Tier):
        return value
    normalized = str(value or "").strip().lower()
    if normalized not in SUPPORTED_TIERS:
        raise ClassificationTaxonomyError(
            f"tier not allowed: {value!r}; allowed={list(SUPPORTED_TIERS)!r}"
        )
    return Tier(normalized)


def optional_tier(value: Any) -> Tier | None:
    """Parse a nullable tier column; blanks mean the tier is not known yet."""
    if value in (None, ""):
        return None
    return ensure_tier(value)


def ensure_rule_applied(value: Any) -> RuleApplied:
    if isinstance(value, RuleApplied):
        return value
    normalized = str(value or "").strip().lower()
    if normalized not in SUPPORTED_RULES_APPLIED:
        raise ClassificationTaxonomyError(
            "rule_applied not allowed: "
            f"{value!r}; allowed={list(SUPPORTED_RULES_APPLIED)!r}"
        )
    return RuleApplied(normalized)
