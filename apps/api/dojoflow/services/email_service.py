"""SendGrid v3 email sender."""

from __future__ import annotations

import html
import logging
import re
import uuid

import httpx

from dojoflow.core.config import settings
from dojoflow.jobs.utils import mask_email
from dojoflow.services.http_service import send_provider_request

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
SENDGRID_MAX_ATTEMPTS = 3
SENDGRID_RETRY_BASE_DELAY = 0.5
SENDGRID_RETRY_MAX_DELAY = 4.0

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str | None) -> bool:
    return bool(email) and _EMAIL_PATTERN.match(email.strip()) is not None


def text_to_html(text: str) -> str:
    """Plain-text message body to minimal HTML (escaped, line breaks kept)."""
    return html.escape(text).replace("\n", "<br>").replace("  ", "&nbsp;&nbsp;")


class SendGridEmailSender:
    key = "sendgrid"

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
        *,
        timeout: float | None = None,
        retry_base_delay: float = SENDGRID_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.SENDGRID_API_KEY if api_key is None else api_key
        self.from_email = from_email or settings.SENDGRID_FROM_EMAIL
        self.from_name = from_name or settings.SENDGRID_FROM_NAME
        self.timeout = timeout or settings.OUTBOUND_TIMEOUT_SECONDS
        self.retry_base_delay = retry_base_delay
        self._transport = transport

    @property
    def dry_run(self) -> bool:
        return not self.api_key

    async def send_email(
        self,
        to: str,
        subject: str,
        text: str,
        html_body: str | None = None,
    ) -> str:
        """
        Send one email.

        Returns:
            SendGrid message id (synthetic in dry-run mode).

        Raises:
            RetryableSendError / FatalSendError
        """
        if self.dry_run:
            logger.info("[dry-run] Email to %s, subject=%r", mask_email(to), subject)
            return f"dryrun-email-{uuid.uuid4().hex[:12]}"

        payload = {
            "personalizations": [{"to": [{"email": to}], "subject": subject}],
            "from": {"email": self.from_email, "name": self.from_name},
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html_body or text_to_html(text)},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            async def request_fn() -> httpx.Response:
                return await client.post(SENDGRID_SEND_URL, headers=headers, json=payload)

            response = await send_provider_request(
                "email",
                request_fn,
                max_attempts=SENDGRID_MAX_ATTEMPTS,
                base_delay=self.retry_base_delay,
                max_delay=SENDGRID_RETRY_MAX_DELAY,
            )

        # SendGrid answers 202 with an empty body; the id comes back as a header.
        message_id = response.headers.get("X-Message-Id") or f"sendgrid-{uuid.uuid4().hex[:12]}"
        logger.info("Email sent to %s, message_id=%s", mask_email(to), message_id)
        return message_id
