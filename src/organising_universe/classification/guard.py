"""Override guard for automatic classification writes."""

from __future__ import annotations

from .contracts import Project


def should_reconcile(project: Project) -> bool:
    """Automation may write unless a human has pinned the classification."""
    return not project.flags.is_manual
