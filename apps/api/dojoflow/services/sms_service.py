"""Twilio SMS sender.

Talks to the Twilio REST API directly over httpx. With credentials unset the
sender runs in dry-run mode: it logs the message and returns a synthetic id.
"""

from __future__ import annotations

import logging
import re
import uuid

import httpx

from dojoflow.core.config import settings
from dojoflow.jobs.utils import mask_phone
from dojoflow.services.http_service import send_provider_request

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
TWILIO_MAX_ATTEMPTS = 3
TWILIO_RETRY_BASE_DELAY = 0.5
TWILIO_RETRY_MAX_DELAY = 4.0

_E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")
_PHONE_STRIP = re.compile(r"[\s\-().]")


def normalize_phone(phone: str | None) -> str | None:
    """Return the number in E.164 form, or None if it cannot be a valid number.

    Bare 10-digit numbers are treated as North American (+1).
    """
    if not phone:
        return None
    cleaned = _PHONE_STRIP.sub("", phone)
    if not cleaned.startswith("+"):
        if len(cleaned) == 10 and cleaned.isdigit():
            cleaned = f"+1{cleaned}"
        elif len(cleaned) == 11 and cleaned.startswith("1") and cleaned.isdigit():
            cleaned = f"+{cleaned}"
        else:
            return None
    return cleaned if _E164_PATTERN.match(cleaned) else None


class TwilioClient:
    """Minimal Twilio REST client shared by the SMS and voice senders."""

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        *,
        timeout: float | None = None,
        retry_base_delay: float = TWILIO_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.account_sid = settings.TWILIO_ACCOUNT_SID if account_sid is None else account_sid
        self.auth_token = settings.TWILIO_AUTH_TOKEN if auth_token is None else auth_token
        self.from_number = settings.TWILIO_PHONE_NUMBER if from_number is None else from_number
        self.timeout = timeout or settings.OUTBOUND_TIMEOUT_SECONDS
        self.retry_base_delay = retry_base_delay
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def create(self, channel: str, resource: str, data: dict[str, str]) -> str:
        """POST to an account resource (Messages, Calls) and return the created sid."""
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/{resource}.json"
        payload = {"From": self.from_number, **data}

        async with httpx.AsyncClient(
            timeout=self.timeout,
            auth=(self.account_sid, self.auth_token),
            transport=self._transport,
        ) as client:

            async def request_fn() -> httpx.Response:
                return await client.post(url, data=payload)

            response = await send_provider_request(
                channel,
                request_fn,
                max_attempts=TWILIO_MAX_ATTEMPTS,
                base_delay=self.retry_base_delay,
                max_delay=TWILIO_RETRY_MAX_DELAY,
            )
        return response.json().get("sid", "")


class TwilioSmsSender:
    key = "twilio_sms"

    def __init__(self, client: TwilioClient | None = None) -> None:
        self.client = client or TwilioClient()

    @property
    def dry_run(self) -> bool:
        return not self.client.is_configured()

    async def send_sms(self, to: str, body: str) -> str:
        """
        Send one SMS.

        Returns:
            Twilio message sid (synthetic in dry-run mode).

        Raises:
            RetryableSendError / FatalSendError
        """
        if self.dry_run:
            message_id = f"dryrun-sms-{uuid.uuid4().hex[:12]}"
            logger.info("[dry-run] SMS to %s (%s chars)", mask_phone(to), len(body))
            return message_id

        message_id = await self.client.create("sms", "Messages", {"To": to, "Body": body})
        logger.info("SMS sent to %s, sid=%s", mask_phone(to), message_id)
        return message_id
