"""Signal provider surfaces consumed by the classification reconciler.

Tier, EBA and patch facts are owned by other collaborators. The reconciler
only sees already-resolved values through ``SignalProvider``.
"""

from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import TYPE_CHECKING, Any, Protocol

from .taxonomy import Tier, optional_tier

if TYPE_CHECKING:
    from .storage import ClassificationStore


class SignalProvider(Protocol):
    def get_tier(self, project_id: str) -> Tier | None:
        ...

    def has_certified_eba_primary_contractor(self, project_id: str) -> bool:
        ...

    def has_spatial_patch_assignment(self, project_id: str) -> bool:
        ...


@dataclass(frozen=True)
class ProjectSignals:
    tier: Tier | None
    has_eba_primary_contractor: bool = False
    has_patch_assignment: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value if self.tier is not None else None,
            "has_eba_primary_contractor": self.has_eba_primary_contractor,
            "has_patch_assignment": self.has_patch_assignment,
        }


def resolve_signals(provider: SignalProvider, project_id: str, *, tier: Tier | None = None) -> ProjectSignals:
    """Resolve all signals for one project; EBA and patch lookups are skipped when tier is unknown."""
    resolved_tier = tier if tier is not None else provider.get_tier(project_id)
    if resolved_tier is None:
        return ProjectSignals(tier=None)
    return ProjectSignals(
        tier=resolved_tier,
        has_eba_primary_contractor=bool(provider.has_certified_eba_primary_contractor(project_id)),
        has_patch_assignment=bool(provider.has_spatial_patch_assignment(project_id)),
    )


class StaticSignalProvider:
    """In-memory provider for tests, replays and offline dry runs."""

    def __init__(self, signals: dict[str, ProjectSignals] | None = None) -> None:
        self._signals: dict[str, ProjectSignals] = dict(signals or {})
        self._lock = threading.Lock()

    def set_signals(
        self,
        project_id: str,
        *,
        tier: Tier | str | None = None,
        has_eba_primary_contractor: bool = False,
        has_patch_assignment: bool = False,
    ) -> None:
        with self._lock:
            self._signals[project_id] = ProjectSignals(
                tier=optional_tier(tier),
                has_eba_primary_contractor=has_eba_primary_contractor,
                has_patch_assignment=has_patch_assignment,
            )

    def update(self, project_id: str, **changes: Any) -> None:
        with self._lock:
            current = self._signals.get(project_id, ProjectSignals(tier=None))
            values = current.as_dict()
            values.update(changes)
            self._signals[project_id] = ProjectSignals(
                tier=optional_tier(values.get("tier")),
                has_eba_primary_contractor=bool(values.get("has_eba_primary_contractor")),
                has_patch_assignment=bool(values.get("has_patch_assignment")),
            )

    def get_tier(self, project_id: str) -> Tier | None:
        return self._get(project_id).tier

    def has_certified_eba_primary_contractor(self, project_id: str) -> bool:
        return self._get(project_id).has_eba_primary_contractor

    def has_spatial_patch_assignment(self, project_id: str) -> bool:
        return self._get(project_id).has_patch_assignment

    def _get(self, project_id: str) -> ProjectSignals:
        with self._lock:
            return self._signals.get(project_id, ProjectSignals(tier=None))


class StoreSignalProvider:
    """Reads tier from the project row and EBA/patch facts published into ``ou_project_signals``."""

    def __init__(self, store: "ClassificationStore") -> None:
        self.store = store

    def get_tier(self, project_id: str) -> Tier | None:
        project = self.store.get_project(project_id)
        return project.tier if project is not None else None

    def has_certified_eba_primary_contractor(self, project_id: str) -> bool:
        facts = self.store.get_signal_facts(project_id)
        return bool(facts and facts.get("has_eba_primary_contractor"))

    def has_spatial_patch_assignment(self, project_id: str) -> bool:
        facts = self.store.get_signal_facts(project_id)
        return bool(facts and facts.get("has_patch_assignment"))
