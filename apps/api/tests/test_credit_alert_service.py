"""Tests for low-credit alert emails."""

import pytest

from dojoflow.db.models import OrganizationCreditBalance
from dojoflow.services import credit_service
from dojoflow.services.credit_alert_service import LowCreditNotifier
from dojoflow.services.messaging_errors import RetryableSendError


def _alert_flag(db, org_id) -> bool:
    db.expire_all()
    row = (
        db.query(OrganizationCreditBalance)
        .filter(OrganizationCreditBalance.organization_id == org_id)
        .one()
    )
    return row.low_credit_alert_sent


@pytest.mark.asyncio
async def test_alert_sent_once_per_low_period(db, test_org, fake_sender):
    credit_service.provision_balance(db, test_org.id, period_allowance=40)
    notifier = LowCreditNotifier(email_sender=fake_sender)

    assert await notifier.notify(db, test_org.id, 40) is True
    assert await notifier.notify(db, test_org.id, 39) is False

    [email] = fake_sender.sent
    assert email["to"] == "billing@tiger.test"
    assert "running low" in email["subject"]
    assert "Tiger Martial Arts has 40 AI credits left" in email["text"]
    assert "/billing" in email["text"]
    assert _alert_flag(db, test_org.id) is True


@pytest.mark.asyncio
async def test_no_alert_above_threshold(db, test_org, fake_sender):
    credit_service.provision_balance(db, test_org.id, period_allowance=300)
    notifier = LowCreditNotifier(email_sender=fake_sender)

    assert await notifier.notify(db, test_org.id, 300) is False
    assert fake_sender.sent == []
    assert _alert_flag(db, test_org.id) is False


@pytest.mark.asyncio
async def test_top_up_rearms_alert(db, test_org, fake_sender):
    credit_service.provision_balance(db, test_org.id, period_allowance=40)
    notifier = LowCreditNotifier(email_sender=fake_sender)
    await notifier.notify(db, test_org.id, 40)

    credit_service.purchase_top_up(db, test_org.id, 100)
    assert _alert_flag(db, test_org.id) is False

    credit_service.deduct(db, test_org.id, 120, "ai_phone_call", "Calls")
    assert await notifier.notify(db, test_org.id, 20) is True
    assert len(fake_sender.sent) == 2


@pytest.mark.asyncio
async def test_send_failure_rearms_alert(db, test_org, fake_sender):
    credit_service.provision_balance(db, test_org.id, period_allowance=10)
    fake_sender.error = RetryableSendError("email provider timeout", channel="email")
    notifier = LowCreditNotifier(email_sender=fake_sender)

    assert await notifier.notify(db, test_org.id, 10) is False
    assert _alert_flag(db, test_org.id) is False

    fake_sender.error = None
    assert await notifier.notify(db, test_org.id, 10) is True


@pytest.mark.asyncio
async def test_falls_back_to_business_email(db, test_org, fake_sender):
    test_org.billing_email = None
    db.commit()
    credit_service.provision_balance(db, test_org.id, period_allowance=10)

    await LowCreditNotifier(email_sender=fake_sender).notify(db, test_org.id, 10)

    assert fake_sender.sent[0]["to"] == "front@tiger.test"


@pytest.mark.asyncio
async def test_no_email_on_file(db, other_org, fake_sender):
    credit_service.provision_balance(db, other_org.id, period_allowance=10)

    assert await LowCreditNotifier(email_sender=fake_sender).notify(db, other_org.id, 10) is False
    assert fake_sender.sent == []


@pytest.mark.asyncio
async def test_unprovisioned_org_is_ignored(db, test_org, fake_sender):
    assert await LowCreditNotifier(email_sender=fake_sender).notify(db, test_org.id, 0) is False
    assert fake_sender.sent == []
