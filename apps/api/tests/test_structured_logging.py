"""Tests for structured logging helpers."""

import uuid

from dojoflow.core.structured_logging import build_log_context


def test_build_log_context_includes_only_provided_fields():
    context = build_log_context(
        org_id="org-1",
        enrollment_id="enr-1",
        sequence_id="seq-1",
        step_id="step-1",
        task_type="ai_sms",
        job="automation",
    )

    assert context == {
        "org_id": "org-1",
        "enrollment_id": "enr-1",
        "sequence_id": "seq-1",
        "step_id": "step-1",
        "task_type": "ai_sms",
        "job": "automation",
    }


def test_build_log_context_ignores_empty_fields():
    context = build_log_context(
        org_id="",
        enrollment_id=None,
        job="credit_reset",
    )

    assert context == {"job": "credit_reset"}


def test_build_log_context_stringifies_ids():
    org_id = uuid.uuid4()

    assert build_log_context(org_id=org_id) == {"org_id": str(org_id)}
