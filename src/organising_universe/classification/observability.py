"""Classification run metrics and export helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import threading
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .contracts import ReconcileResult


DEFAULT_METRICS_PATH = Path("runs/organising_universe/classification/metrics/last_metrics.json")

_REQUIRED_COUNTERS: tuple[str, ...] = (
    "reconcile_updated",
    "reconcile_no_change",
    "reconcile_manual_skipped",
    "reconcile_no_tier",
    "manual_set",
    "manual_cleared",
    "bulk_errors",
    "rollback_restored",
    "events_routed",
    "events_ignored",
)

_RECONCILE_COUNTERS: dict[str, str] = {
    "UPDATED": "reconcile_updated",
    "NO_CHANGE": "reconcile_no_change",
    "MANUAL_OVERRIDE": "reconcile_manual_skipped",
    "NO_TIER": "reconcile_no_tier",
}


class ClassificationObservabilityError(ValueError):
    """Raised when classification metrics inputs are invalid."""


@dataclass
class ClassificationRunMetrics:
    run_label: str = "organising_universe"
    counters: dict[str, int] = field(default_factory=dict)
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    max_recent_events: int = 50
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.run_label = str(self.run_label or "").strip()
        if not self.run_label:
            raise ClassificationObservabilityError("run_label is required")
        if self.max_recent_events <= 0:
            raise ClassificationObservabilityError("max_recent_events must be > 0")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def record_reconcile(self, result: "ReconcileResult") -> None:
        counter = _RECONCILE_COUNTERS.get(result.reason_code)
        if counter is None:
            raise ClassificationObservabilityError(f"unsupported reconcile reason: {result.reason_code!r}")
        with self._lock:
            self.counters[counter] += 1
            if result.updated:
                self._append_event("reconcile_updated", result.as_dict())

    def record_manual(self, *, project_id: str, cleared: bool) -> None:
        with self._lock:
            self.counters["manual_cleared" if cleared else "manual_set"] += 1
            self._append_event("manual_cleared" if cleared else "manual_set", {"project_id": project_id})

    def record_bulk_error(self, *, project_id: str, reason_code: str) -> None:
        with self._lock:
            self.counters["bulk_errors"] += 1
            self._append_event("bulk_error", {"project_id": project_id, "reason_code": reason_code})

    def record_rollback(self, *, restored: int) -> None:
        with self._lock:
            self.counters["rollback_restored"] += int(restored)
            self._append_event("rollback", {"restored": int(restored)})

    def record_event(self, *, event_type: str, routed: bool) -> None:
        with self._lock:
            self.counters["events_routed" if routed else "events_ignored"] += 1

    def snapshot(self, *, generated_at_utc: str | None = None) -> dict[str, Any]:
        with self._lock:
            return {
                "generated_at_utc": generated_at_utc or _utc_now(),
                "run_label": self.run_label,
                "metrics": dict(self.counters),
                "recent_events": list(self.recent_events),
            }

    def export(self, *, output_path: str | Path | None = None, generated_at_utc: str | None = None) -> dict[str, Any]:
        payload = self.snapshot(generated_at_utc=generated_at_utc)
        path = Path(output_path) if output_path else DEFAULT_METRICS_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        return payload

    def _append_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        self.recent_events.append(
            {
                "event_type": str(event_type),
                "ts_utc": _utc_now(),
                "payload": dict(payload),
            }
        )
        if len(self.recent_events) > self.max_recent_events:
            self.recent_events = self.recent_events[-self.max_recent_events :]


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
