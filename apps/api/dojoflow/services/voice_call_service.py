"""AI phone calls through Twilio's Calls API with inline TwiML."""

from __future__ import annotations

import logging
import uuid
from xml.sax.saxutils import escape

from dojoflow.jobs.utils import mask_phone
from dojoflow.services.sms_service import TwilioClient

logger = logging.getLogger(__name__)

DEFAULT_VOICE = "Polly.Joanna"
_ATTR_ENTITIES = {'"': "&quot;"}


def build_twiml(script: str, voice: str = DEFAULT_VOICE) -> str:
    voice_attr = escape(voice, _ATTR_ENTITIES)
    return f'<Response><Say voice="{voice_attr}">{escape(script)}</Say></Response>'


class TwilioCallSender:
    key = "twilio_voice"

    def __init__(self, client: TwilioClient | None = None, voice: str = DEFAULT_VOICE) -> None:
        self.client = client or TwilioClient()
        self.voice = voice

    @property
    def dry_run(self) -> bool:
        return not self.client.is_configured()

    async def place_call(self, to: str, script: str) -> str:
        """Start an outbound call that speaks ``script``. Returns the call sid."""
        if self.dry_run:
            logger.info("[dry-run] Call to %s (%s chars)", mask_phone(to), len(script))
            return f"dryrun-call-{uuid.uuid4().hex[:12]}"

        call_id = await self.client.create(
            "voice", "Calls", {"To": to, "Twiml": build_twiml(script, self.voice)}
        )
        logger.info("Call started to %s, sid=%s", mask_phone(to), call_id)
        return call_id
