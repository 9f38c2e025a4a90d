"""Classification error taxonomy and helpers."""

from __future__ import annotations

from typing import Any


class ClassificationError(RuntimeError):
    """Stable, policy-safe error surfaced as a reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class ClassificationValidationError(ClassificationError, ValueError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__("INVALID_CLASSIFICATION", detail)


class ProjectNotFoundError(ClassificationError, LookupError):
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__("PROJECT_NOT_FOUND", f"project_id={project_id}")


class PreconditionError(ClassificationError):
    """Raised for guarded admin operations whose preconditions are not met."""


class AuditWriteFailure(ClassificationError):
    """The classification write and its audit row could not be committed together."""

    def __init__(self, project_id: str, detail: str | None = None) -> None:
        self.project_id = project_id
        scope = f"project_id={project_id}"
        super().__init__("AUDIT_WRITE_FAILURE", f"{scope}; {detail}" if detail else scope)


class PartialBatchFailure(ClassificationError):
    def __init__(self, report: Any) -> None:
        self.report = report
        errors = getattr(report, "errors", ()) or ()
        super().__init__("PARTIAL_BATCH_FAILURE", f"failed_units={len(errors)}")


def reason_code(exc: Exception) -> str:
    if isinstance(exc, ClassificationError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"


def error_detail(exc: Exception) -> str:
    if isinstance(exc, ClassificationError):
        return str(exc.detail or exc.code)
    return f"{exc.__class__.__name__}: {str(exc)[:256]}"
