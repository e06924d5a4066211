"""Tests for the action dispatcher (charge, send, refund)."""

import pytest

from dojoflow.db.enums import CreditTransactionType, EntityType
from dojoflow.services import automation_sequence_service as seq_service
from dojoflow.services import credit_service, enrollment_service
from dojoflow.services.action_dispatcher import (
    ActionDispatcher,
    CreditsBlockedError,
    FatalDispatchError,
    RefundPendingError,
    RetryableDispatchError,
)
from dojoflow.services.messaging_errors import FatalSendError, RetryableSendError


def _enrolled_step(db, org, lead, step: dict):
    seq_service.create_sequence(
        db, org.id, name="Dispatch test", trigger_key="new_lead", steps=[step]
    )
    [enrollment_id] = enrollment_service.enroll(
        db, org.id, EntityType.LEAD, lead.id, "new_lead"
    )
    enrollment = enrollment_service.get_enrollment(db, enrollment_id)
    return enrollment.current_step, enrollment


def _dispatcher(sender, notifier):
    return ActionDispatcher(
        sms_sender=sender,
        email_sender=sender,
        call_sender=sender,
        low_credit_notifier=notifier,
    )


@pytest.mark.asyncio
async def test_sms_step_charges_and_sends(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    step, enrollment = _enrolled_step(
        db,
        test_org,
        test_lead,
        {"action_type": "send_sms", "message": "Hi {{firstName}}, this is {{businessName}}!"},
    )

    result = await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert result.success is True
    assert result.credits_charged == 1
    assert result.external_id == "fake-1"
    assert fake_sender.sent == [
        {"channel": "sms", "to": "+15551234567", "body": "Hi Maya, this is Tiger Martial Arts!"}
    ]
    assert credit_service.get_balance(db, test_org.id).balance == 299

    [tx] = credit_service.list_transactions(db, test_org.id, tx_type=CreditTransactionType.DEDUCTION)
    assert tx.id == result.transaction_id
    assert tx.task_type == "ai_sms"
    assert tx.related_entity_id == str(enrollment.id)
    assert tx.extra_metadata["step_id"] == str(step.id)
    assert notifier.calls == [(test_org.id, 299)]


@pytest.mark.asyncio
async def test_email_step_renders_subject(db, test_org, test_lead, fake_sender, notifier):
    step, enrollment = _enrolled_step(
        db,
        test_org,
        test_lead,
        {"action_type": "send_email", "subject": "Welcome {{firstName}}", "message": "See you!"},
    )

    result = await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert result.credits_charged == 2
    assert fake_sender.sent == [
        {"channel": "email", "to": "maya@example.com", "subject": "Welcome Maya", "text": "See you!"}
    ]


@pytest.mark.asyncio
async def test_phone_call_step_uses_duration_cost(db, test_org, test_lead, fake_sender, notifier):
    step, enrollment = _enrolled_step(
        db,
        test_org,
        test_lead,
        {
            "action_type": "ai_phone_call",
            "message": "Hello {{firstName}}",
            "call_duration_seconds": 600,
        },
    )

    result = await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert result.credits_charged == 15
    assert fake_sender.sent[0]["channel"] == "voice"
    assert credit_service.get_balance(db, test_org.id).balance == 285


@pytest.mark.asyncio
async def test_wait_step_is_free(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "wait", "delay_minutes": 60}
    )

    result = await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert result.success is True
    assert result.credits_charged == 0
    assert fake_sender.sent == []
    assert credit_service.get_balance(db, test_org.id).balance == 300
    assert credit_service.list_transactions(db, test_org.id, tx_type=CreditTransactionType.DEDUCTION) == []


@pytest.mark.asyncio
async def test_missing_phone_is_fatal_without_charge(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    test_lead.phone = "12"
    db.commit()
    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "send_sms", "message": "Hi"}
    )

    with pytest.raises(FatalDispatchError, match="phone"):
        await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert fake_sender.sent == []
    assert credit_service.get_balance(db, test_org.id).balance == 300


@pytest.mark.asyncio
async def test_opted_out_recipient_is_fatal(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "send_sms", "message": "Hi"}
    )
    test_lead.opted_out = True
    db.commit()

    with pytest.raises(FatalDispatchError, match="opted out"):
        await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert credit_service.get_balance(db, test_org.id).balance == 300


@pytest.mark.asyncio
async def test_deleted_entity_is_fatal(db, test_org, test_lead, fake_sender, notifier):
    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "send_sms", "message": "Hi"}
    )

    with pytest.raises(FatalDispatchError, match="no longer exists"):
        await _dispatcher(fake_sender, notifier).dispatch(db, step, None, enrollment)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,expected",
    [
        (RetryableSendError("sms provider timeout", channel="sms"), RetryableDispatchError),
        (FatalSendError("sms provider error: 400", channel="sms", status_code=400), FatalDispatchError),
        (RuntimeError("boom"), RetryableDispatchError),
    ],
)
async def test_send_failure_refunds_charge(
    db, test_org, test_lead, fake_sender, notifier, error, expected
):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "send_sms", "message": "Hi"}
    )

    fake_sender.error = error
    with pytest.raises(expected):
        await _dispatcher(fake_sender, notifier).dispatch(
            db, step, test_lead, enrollment
        )

    assert credit_service.get_balance(db, test_org.id).balance == 300
    [deduction] = credit_service.list_transactions(
        db, test_org.id, tx_type=CreditTransactionType.DEDUCTION
    )
    [refund] = credit_service.list_transactions(db, test_org.id, tx_type=CreditTransactionType.REFUND)
    assert refund.amount == 1
    assert refund.related_transaction_id == deduction.id
    assert credit_service.reconcile_balance(db, test_org.id).is_consistent


@pytest.mark.asyncio
async def test_insufficient_credits_blocks_and_alerts(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=1)
    step, enrollment = _enrolled_step(
        db,
        test_org,
        test_lead,
        {"action_type": "send_email", "subject": "Hi", "message": "Hello"},
    )

    with pytest.raises(CreditsBlockedError) as exc_info:
        await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    assert exc_info.value.required == 2
    assert exc_info.value.available == 1
    assert fake_sender.sent == []
    assert notifier.calls == [(test_org.id, 1)]
    assert credit_service.get_balance(db, test_org.id).balance == 1


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_dispatch(db, test_org, test_lead, fake_sender):
    class BrokenNotifier:
        async def notify(self, db, org_id, balance):
            raise RuntimeError("mail down")

    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "send_sms", "message": "Hi"}
    )

    result = await _dispatcher(fake_sender, BrokenNotifier()).dispatch(
        db, step, test_lead, enrollment
    )

    assert result.success is True


@pytest.mark.asyncio
async def test_send_now_without_enrollment(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    sequence = seq_service.create_sequence(
        db,
        test_org.id,
        name="Manual",
        trigger_key="new_lead",
        steps=[
            {"action_type": "send_sms", "message": "Hi"},
            {"action_type": "wait", "delay_minutes": 60},
            {"action_type": "send_sms", "message": "Still there?"},
        ],
    )
    steps = seq_service.get_ordered_steps(db, sequence.id)

    result = await _dispatcher(fake_sender, notifier).send_now(db, steps, test_lead)

    assert result.sent_count == 2
    assert result.credits_charged == 2
    assert result.errors == []
    deductions = credit_service.list_transactions(
        db, test_org.id, tx_type=CreditTransactionType.DEDUCTION
    )
    assert len(deductions) == 2
    assert all(tx.related_entity_id is None for tx in deductions)
    assert all(tx.extra_metadata["sequence_id"] == str(sequence.id) for tx in deductions)
    assert "enrollment_id" not in deductions[0].extra_metadata


@pytest.mark.asyncio
async def test_send_now_stops_when_out_of_credits(db, test_org, test_lead, fake_sender, notifier):
    credit_service.provision_balance(db, test_org.id, period_allowance=1)
    sequence = seq_service.create_sequence(
        db,
        test_org.id,
        name="Manual",
        trigger_key="new_lead",
        steps=[
            {"action_type": "send_email", "subject": "Hi", "message": "Hello"},
            {"action_type": "send_sms", "message": "Hi"},
        ],
    )
    steps = seq_service.get_ordered_steps(db, sequence.id)

    result = await _dispatcher(fake_sender, notifier).send_now(db, steps, test_lead)

    assert result.sent_count == 0
    assert result.errors == ["Step 1: Insufficient credits. Required: 2, Available: 1"]
    assert fake_sender.sent == []
    assert credit_service.get_balance(db, test_org.id).balance == 1


@pytest.mark.asyncio
async def test_refund_failure_reports_pending_refund(
    db, test_org, test_lead, fake_sender, notifier, monkeypatch
):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    step, enrollment = _enrolled_step(
        db, test_org, test_lead, {"action_type": "send_sms", "message": "Hi"}
    )
    fake_sender.error = RetryableSendError("sms provider timeout", channel="sms")

    def broken_refund(*args, **kwargs):
        raise credit_service.LedgerUnavailableError("connection refused")

    monkeypatch.setattr(credit_service, "refund", broken_refund)

    with pytest.raises(RefundPendingError) as exc_info:
        await _dispatcher(fake_sender, notifier).dispatch(db, step, test_lead, enrollment)

    [deduction] = credit_service.list_transactions(
        db, test_org.id, tx_type=CreditTransactionType.DEDUCTION
    )
    assert exc_info.value.transaction_id == deduction.id
    assert exc_info.value.amount == 1
    assert isinstance(exc_info.value, RetryableDispatchError)
