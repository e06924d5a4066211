"""Action dispatcher - executes one automation step against one entity.

Charge first, then send; refund if the send fails. A dispatch therefore
leaves either exactly one deduction (success) or a deduction plus its
compensating refund (failure), never a charge for work that did not happen.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from dojoflow.core.structured_logging import build_log_context
from dojoflow.db.enums import AutomationActionType
from dojoflow.db.models import (
    AutomationEnrollment,
    AutomationStep,
    Lead,
    Organization,
    Student,
)
from dojoflow.services import credit_costs, credit_service
from dojoflow.services.automation_variables import render_template
from dojoflow.services.credit_alert_service import LowCreditNotifier
from dojoflow.services.email_service import SendGridEmailSender, is_valid_email
from dojoflow.services.messaging_errors import SendError
from dojoflow.services.sms_service import TwilioSmsSender, normalize_phone
from dojoflow.services.voice_call_service import TwilioCallSender

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_SUBJECT = "Message from {{businessName}}"


class DispatchError(Exception):
    """Step could not be executed."""


class RetryableDispatchError(DispatchError):
    """Try the same step again later."""


class FatalDispatchError(DispatchError):
    """The step can never succeed for this entity."""


class CreditsBlockedError(RetryableDispatchError):
    """Organization is out of credits. Automation pauses until it tops up."""

    def __init__(self, message: str, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(message)


class RefundPendingError(RetryableDispatchError):
    """The send failed and its charge could not be refunded yet."""

    def __init__(self, amount: int, transaction_id: UUID, send_error: Exception) -> None:
        self.amount = amount
        self.transaction_id = transaction_id
        super().__init__(
            f"Refund pending: {amount} credits for transaction {transaction_id} "
            f"(send failed: {send_error})"
        )


class SmsSender(Protocol):
    async def send_sms(self, to: str, body: str) -> str: ...


class EmailSender(Protocol):
    async def send_email(
        self, to: str, subject: str, text: str, html_body: str | None = None
    ) -> str: ...


class CallSender(Protocol):
    async def place_call(self, to: str, script: str) -> str: ...


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    credits_charged: int = 0
    transaction_id: UUID | None = None
    external_id: str | None = None


@dataclass
class SendNowResult:
    sent_count: int = 0
    credits_charged: int = 0
    errors: list[str] = field(default_factory=list)


class ActionDispatcher:
    def __init__(
        self,
        sms_sender: SmsSender | None = None,
        email_sender: EmailSender | None = None,
        call_sender: CallSender | None = None,
        low_credit_notifier: LowCreditNotifier | None = None,
    ) -> None:
        self.sms_sender = sms_sender or TwilioSmsSender()
        self.email_sender = email_sender or SendGridEmailSender()
        self.call_sender = call_sender or TwilioCallSender()
        self.low_credit_notifier = low_credit_notifier or LowCreditNotifier(self.email_sender)

    async def dispatch(
        self,
        db: Session,
        step: AutomationStep,
        entity: Lead | Student | None,
        enrollment: AutomationEnrollment | None = None,
    ) -> DispatchResult:
        """
        Execute ``step`` for ``entity``.

        ``enrollment`` is None when staff run a sequence by hand; the charge
        is then tied to the step and sequence only.

        Raises:
            FatalDispatchError: entity gone, opted out or unreachable (no charge).
            CreditsBlockedError: out of credits (no charge, low-credit alert fired).
            RetryableDispatchError: transient send failure (charge refunded).
            LedgerUnavailableError: ledger storage failure (no charge).
        """
        try:
            action = AutomationActionType(step.action_type)
        except ValueError as exc:
            raise FatalDispatchError(f"Unknown action type: {step.action_type}") from exc

        if action == AutomationActionType.WAIT:
            return DispatchResult(success=True)

        if entity is None:
            raise FatalDispatchError("Enrolled entity no longer exists")
        if entity.opted_out:
            raise FatalDispatchError("Recipient opted out")

        org_id = enrollment.organization_id if enrollment else entity.organization_id
        enrollment_id = enrollment.id if enrollment else None
        log_context = build_log_context(
            org_id=org_id,
            enrollment_id=enrollment_id,
            sequence_id=step.sequence_id,
            step_id=step.id,
        )
        metadata = {"sequence_id": str(step.sequence_id), "step_id": str(step.id)}
        if enrollment_id:
            metadata["enrollment_id"] = str(enrollment_id)
        organization = db.get(Organization, org_id)
        recipient = self._resolve_recipient(action, entity)
        body = render_template(step.message, entity, organization)

        task_type, cost = credit_costs.cost_for_action(
            action, call_duration_seconds=step.call_duration_seconds
        )
        try:
            deduction = credit_service.deduct(
                db,
                org_id,
                cost,
                task_type,
                description=f"Automation step: {step.name or action.value}",
                related_id=str(enrollment_id) if enrollment_id else None,
                metadata=metadata,
            )
        except credit_service.InsufficientCreditsError as exc:
            await self._notify_low_credit(db, org_id, exc.available)
            raise CreditsBlockedError(
                str(exc), required=exc.required, available=exc.available
            ) from exc

        try:
            external_id = await self._send(action, recipient, step, body, entity, organization)
        except asyncio.CancelledError as exc:
            with contextlib.suppress(RefundPendingError):
                self._refund(db, org_id, cost, deduction.transaction_id, exc, log_context)
            raise
        except Exception as exc:
            self._refund(db, org_id, cost, deduction.transaction_id, exc, log_context)
            if isinstance(exc, SendError) and not exc.retryable:
                raise FatalDispatchError(str(exc)) from exc
            raise RetryableDispatchError(str(exc) or exc.__class__.__name__) from exc

        logger.info(
            "Dispatched %s (%s credits)",
            action.value,
            cost,
            extra={**log_context, "task_type": task_type.value},
        )
        await self._notify_low_credit(db, org_id, deduction.new_balance)
        return DispatchResult(
            success=True,
            credits_charged=cost,
            transaction_id=deduction.transaction_id,
            external_id=external_id,
        )

    async def send_now(
        self,
        db: Session,
        steps: list[AutomationStep],
        entity: Lead | Student,
    ) -> SendNowResult:
        """
        Run every message step of a sequence immediately, skipping waits.

        Each step is charged and refunded exactly like a scheduled one. A
        failed step is reported and the rest still run, except that running
        out of credits stops the run.
        """
        result = SendNowResult()
        for step in steps:
            if step.action_type == AutomationActionType.WAIT.value:
                continue
            try:
                dispatched = await self.dispatch(db, step, entity)
            except CreditsBlockedError as exc:
                result.errors.append(f"Step {step.step_order}: {exc}")
                break
            except DispatchError as exc:
                result.errors.append(f"Step {step.step_order}: {exc}")
                continue
            result.sent_count += 1
            result.credits_charged += dispatched.credits_charged
        return result

    def _resolve_recipient(self, action: AutomationActionType, entity: Lead | Student) -> str:
        if action == AutomationActionType.SEND_EMAIL:
            if not is_valid_email(entity.email):
                raise FatalDispatchError("Recipient has no valid email address")
            return entity.email.strip()

        phone = normalize_phone(entity.phone)
        if not phone:
            raise FatalDispatchError("Recipient has no valid phone number")
        return phone

    async def _send(
        self,
        action: AutomationActionType,
        recipient: str,
        step: AutomationStep,
        body: str,
        entity: Lead | Student,
        organization: Organization | None,
    ) -> str:
        if action == AutomationActionType.SEND_SMS:
            return await self.sms_sender.send_sms(recipient, body)
        if action == AutomationActionType.SEND_EMAIL:
            subject = render_template(step.subject or DEFAULT_EMAIL_SUBJECT, entity, organization)
            return await self.email_sender.send_email(recipient, subject, body)
        return await self.call_sender.place_call(recipient, body)

    def _refund(
        self,
        db: Session,
        org_id: UUID,
        amount: int,
        transaction_id: UUID,
        error: Exception,
        log_context: dict,
    ) -> None:
        try:
            credit_service.refund(
                db, org_id, amount, transaction_id, reason=f"Send failed: {error}"[:500]
            )
        except credit_service.LedgerUnavailableError as exc:
            logger.critical(
                "Refund of %s credits for transaction %s failed after send error",
                amount,
                transaction_id,
                extra=log_context,
            )
            raise RefundPendingError(amount, transaction_id, error) from exc

    async def _notify_low_credit(self, db: Session, org_id: UUID, balance: int) -> None:
        try:
            await self.low_credit_notifier.notify(db, org_id, balance)
        except Exception:
            logger.exception(
                "Low-credit notification failed", extra=build_log_context(org_id=org_id)
            )
