"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    org_id: str | None = None,
    enrollment_id: str | None = None,
    sequence_id: str | None = None,
    step_id: str | None = None,
    task_type: str | None = None,
    job: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for ``extra=``."""
    context: dict[str, Any] = {}
    if org_id:
        context["org_id"] = str(org_id)
    if enrollment_id:
        context["enrollment_id"] = str(enrollment_id)
    if sequence_id:
        context["sequence_id"] = str(sequence_id)
    if step_id:
        context["step_id"] = str(step_id)
    if task_type:
        context["task_type"] = task_type
    if job:
        context["job"] = job
    return context
