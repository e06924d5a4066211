"""Low-credit alerts to the organization's billing contact."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dojoflow.core.config import settings
from dojoflow.core.structured_logging import build_log_context
from dojoflow.db.models import Organization, OrganizationCreditBalance
from dojoflow.jobs.utils import mask_email
from dojoflow.services.email_service import SendGridEmailSender
from dojoflow.services.messaging_errors import SendError

logger = logging.getLogger(__name__)


def _alert_body(org: Organization, balance: int) -> str:
    name = org.business_name or org.name
    return (
        f"Hi,\n\n"
        f"{name} has {balance} AI credits left. Automations that send messages or place "
        f"calls pause when credits run out, and resume on their own once you top up.\n\n"
        f"Top up here: {settings.APP_BASE_URL.rstrip('/')}/billing\n\n"
        f"- DojoFlow"
    )


class LowCreditNotifier:
    """
    Emails the billing contact once per low-balance period.

    The low_credit_alert_sent flag is claimed with a conditional update, so
    concurrent callers send at most one email. The ledger clears the flag
    when an allocation or purchase lifts the balance back over the threshold.
    """

    def __init__(self, email_sender: SendGridEmailSender | None = None) -> None:
        self.email_sender = email_sender or SendGridEmailSender()

    def _set_flag(self, db: Session, org_id: UUID, sent: bool) -> bool:
        stmt = update(OrganizationCreditBalance).where(
            OrganizationCreditBalance.organization_id == org_id,
            OrganizationCreditBalance.low_credit_alert_sent.is_(not sent),
        )
        if sent:
            stmt = stmt.where(
                OrganizationCreditBalance.balance < OrganizationCreditBalance.low_credit_threshold
            )
        result = db.execute(
            stmt.values(low_credit_alert_sent=sent).execution_options(synchronize_session=False)
        )
        db.commit()
        return bool(result.rowcount)

    async def notify(self, db: Session, org_id: UUID, balance: int) -> bool:
        """Send the alert if one is due. Returns True when an email went out."""
        log_context = build_log_context(org_id=org_id, job="low_credit_alert")
        try:
            if not self._set_flag(db, org_id, sent=True):
                return False
            org = db.get(Organization, org_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Low-credit alert skipped: database error", extra=log_context)
            return False

        recipient = (org.billing_email or org.business_email) if org else None
        if not recipient:
            logger.warning(
                "Low credit balance (%s) but no billing email on file", balance, extra=log_context
            )
            return False

        try:
            await self.email_sender.send_email(
                recipient,
                "Your DojoFlow AI credits are running low",
                _alert_body(org, balance),
            )
        except SendError as exc:
            logger.warning(
                "Low-credit alert to %s failed: %s", mask_email(recipient), exc, extra=log_context
            )
            try:
                self._set_flag(db, org_id, sent=False)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Could not re-arm low-credit alert", extra=log_context)
            return False

        logger.info(
            "Low-credit alert sent to %s (balance %s)",
            mask_email(recipient),
            balance,
            extra=log_context,
        )
        return True
