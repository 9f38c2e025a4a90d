"""Read-only audit surfaces over the classification change log."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .contracts import ClassificationChangeRecord
from .errors import ProjectNotFoundError
from .storage import ClassificationStore


DEFAULT_RECENT_LIMIT = 10


@dataclass(frozen=True)
class ChainBreak:
    project_id: str
    change_seq: int
    expected_old_value: str | None
    actual_old_value: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "change_seq": self.change_seq,
            "expected_old_value": self.expected_old_value,
            "actual_old_value": self.actual_old_value,
        }


class ClassificationAuditQuery:
    def __init__(self, *, store: ClassificationStore) -> None:
        self.store = store

    def history(self, project_id: str) -> list[ClassificationChangeRecord]:
        with self.store.read_unit() as unit:
            if unit.load_project(project_id) is None:
                raise ProjectNotFoundError(project_id)
            return unit.list_changes(project_id=project_id)

    def recent_changes(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[ClassificationChangeRecord]:
        return self.store.list_changes(limit=limit, newest_first=True)

    def verify_chain(self, project_id: str) -> list[ChainBreak]:
        """Positions where a record's old value does not continue the previous record's new value."""
        breaks: list[ChainBreak] = []
        records = self.history(project_id)
        for previous, current in zip(records, records[1:]):
            if previous.new_value != current.old_value:
                breaks.append(
                    ChainBreak(
                        project_id=project_id,
                        change_seq=current.change_seq,
                        expected_old_value=previous.new_value.value,
                        actual_old_value=current.old_value.value if current.old_value is not None else None,
                    )
                )
        return breaks
